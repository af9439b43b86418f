"""Tests for correlation-aware logging helpers."""

import contextvars

import pytest

from modules.logging_utils import get_correlation_id, set_correlation_id, with_correlation_id


@with_correlation_id
def current_id():
    return get_correlation_id()


@with_correlation_id
def failing():
    raise ValueError("boom")


class TestWithCorrelationId:
    def test_keeps_request_id(self):
        def run():
            set_correlation_id("req-1")
            return current_id()

        assert contextvars.copy_context().run(run) == "req-1"

    def test_starts_id_for_background_work(self):
        cid = contextvars.Context().run(current_id)
        assert cid
        assert len(cid) == 12

    def test_exceptions_propagate(self):
        with pytest.raises(ValueError):
            contextvars.Context().run(failing)
