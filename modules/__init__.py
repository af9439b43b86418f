"""Modules package for the Booking Conversions Bridge"""
from .classifier import BookingClassifier
from .delivery import ConversionsApiClient
from .event_builder import EventBuilder
from .pipeline import ConversionPipeline, PipelineContext, PipelineResult
from .stores import (
    AttributionStore,
    DedupStore,
    InMemoryAttributionStore,
    InMemoryDedupStore
)

__all__ = [
    'BookingClassifier',
    'ConversionsApiClient',
    'EventBuilder',
    'ConversionPipeline',
    'PipelineContext',
    'PipelineResult',
    'AttributionStore',
    'DedupStore',
    'InMemoryAttributionStore',
    'InMemoryDedupStore'
]
