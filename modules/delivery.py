"""
Conversions API Delivery Module

Sends built events to the Meta Conversions API:
- bearer-token authenticated POST with a bounded timeout
- bounded retry (5xx, 429, timeouts, connection errors) with linear backoff
- terminal failure on any other non-2xx response
"""
from typing import Any, Callable, Dict, Optional
import time

import requests
from loguru import logger
from tenacity import (
    Retrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from config import Settings
from modules.exceptions import ConfigurationError, DeliveryError, TransientDeliveryError
from modules.logging_utils import with_correlation_id, log_with_context

RETRYABLE_STATUS = 429


def is_retryable_status(status_code: int) -> bool:
    return status_code == RETRYABLE_STATUS or 500 <= status_code < 600


class ConversionsApiClient:
    """Meta Conversions API client with bounded retries"""

    GRAPH_URL = "https://graph.facebook.com"

    def __init__(
        self,
        pixel_id: str,
        access_token: str,
        api_version: str = "v19.0",
        timeout: float = 10.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.api_version = api_version
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.session = session or requests.Session()
        self._sleep = sleep
        self.enabled = bool(pixel_id and access_token)

        if self.enabled:
            logger.info("Conversions API client initialized and enabled")
        else:
            logger.warning("Conversions API client initialized but disabled (missing pixel id or token)")

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> 'ConversionsApiClient':
        return cls(
            pixel_id=settings.meta_pixel_id,
            access_token=settings.meta_access_token,
            api_version=settings.meta_api_version,
            timeout=settings.delivery_timeout_seconds,
            max_attempts=settings.delivery_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            **kwargs
        )

    @property
    def endpoint(self) -> str:
        return f"{self.GRAPH_URL}/{self.api_version}/{self.pixel_id}/events"

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        log_with_context(
            "warning",
            f"Conversions API attempt {retry_state.attempt_number} failed ({error}); "
            f"retrying in {delay:.1f}s"
        )

    def _post_once(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.post(
                self.endpoint,
                json=payload,
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise TransientDeliveryError(None, f"timeout: {e}")
        except requests.exceptions.ConnectionError as e:
            raise TransientDeliveryError(None, f"connection error: {e}")
        except requests.exceptions.RequestException as e:
            raise TransientDeliveryError(None, f"request failed: {e}")

        body = response.text
        logger.info(f"Conversions API response status: {response.status_code}")

        if 200 <= response.status_code < 300:
            try:
                return response.json()
            except ValueError:
                return {"raw": body}

        if is_retryable_status(response.status_code):
            raise TransientDeliveryError(response.status_code, body)
        raise DeliveryError(response.status_code, body)

    @with_correlation_id
    def deliver(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Send one Conversions API request body

        Args:
            payload: {"data": [...], "test_event_code"?: str}

        Returns:
            Parsed JSON response body

        Raises:
            ConfigurationError: If pixel id or access token are missing
            DeliveryError: On a terminal response or once retries are exhausted
        """
        if not self.enabled:
            raise ConfigurationError("META_PIXEL_ID and META_ACCESS_TOKEN are required for delivery")

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.base_delay, increment=self.base_delay),
            retry=retry_if_exception_type(TransientDeliveryError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        result = retrying(self._post_once, payload)

        event_ids = [event.get("event_id") for event in payload.get("data", [])]
        log_with_context(
            "info",
            f"Conversions API accepted {result.get('events_received', 0)} event(s): {event_ids}"
        )
        return result
