"""
Custom Exception Classes for the Booking Conversions Bridge

This module defines custom exceptions for better error handling and debugging.
"""
from typing import Optional


class BridgeError(Exception):
    """Base exception for all bridge errors"""
    pass


class DeliveryError(BridgeError):
    """Raised when the Conversions API rejects an event or retries run out"""
    def __init__(self, status_code: Optional[int], body: str = ""):
        self.status_code = status_code
        self.body = body
        status = status_code if status_code is not None else "no response"
        super().__init__(f"Conversions API error {status}: {body}")


class TransientDeliveryError(DeliveryError):
    """Raised for 5xx, 429, timeouts and connection failures (retryable)"""
    pass


class AuthenticationError(BridgeError):
    """Raised when the inbound shared secret is missing or wrong"""
    def __init__(self, source: str, message: str = "Authentication failed"):
        self.source = source
        super().__init__(f"{source}: {message}")


class PayloadError(BridgeError):
    """Raised when an inbound webhook body cannot be parsed"""
    def __init__(self, message: str):
        super().__init__(f"Malformed payload: {message}")


class ConfigurationError(BridgeError):
    """Raised when configuration is invalid or missing"""
    def __init__(self, message: str):
        super().__init__(f"Configuration error: {message}")
