"""
Fonnte WhatsApp gateway client
Sends messages through the Fonnte HTTP API
"""
import re
import time
from typing import Any, Callable, Dict, Optional, Protocol

import httpx
import structlog

from ..config import settings
from ..errors import DeliveryFailed, InvalidPhoneNumber


logger = structlog.get_logger(__name__)

PHONE_PATTERN = re.compile(r"^(\+62|62|0)8[1-9][0-9]{6,11}$")


class MessagingGateway(Protocol):
    def send(self, phone: str, message: str) -> Dict[str, Any]: ...


def format_phone(phone: str) -> str:
    """Normalize an Indonesian mobile number to +62 format."""
    cleaned = re.sub(r"[^\d+]", "", phone or "")
    if not PHONE_PATTERN.match(cleaned):
        raise InvalidPhoneNumber(f"Invalid Indonesian phone number format: {cleaned}")
    return re.sub(r"^(\+62|62|0)", "+62", cleaned)


class FonnteClient:
    """Client for the Fonnte send endpoint"""

    def __init__(
        self,
        api_token: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_token = api_token or settings.fonnte_api_token
        self.endpoint = endpoint or settings.fonnte_endpoint
        self.timeout = timeout or settings.fonnte_timeout_seconds
        self.max_retries = max_retries or settings.fonnte_max_retries
        self.retry_delay_ms = settings.fonnte_retry_delay_ms if retry_delay_ms is None else retry_delay_ms
        self.transport = transport
        self._sleep = sleep

        if not self.api_token:
            raise ValueError("Fonnte API token not configured")

    def _backoff(self, attempts: int) -> None:
        self._sleep(self.retry_delay_ms * attempts / 1000.0)

    @staticmethod
    def _decode(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"status": False, "reason": response.text or f"HTTP {response.status_code}"}
        if not isinstance(body, dict):
            return {"status": False, "reason": str(body)}
        return body

    def send(self, target: str, message: str) -> Dict[str, Any]:
        """
        Send a WhatsApp message.

        Connection errors and non-auth API errors are retried in-process with a
        growing delay; 401 and 429 responses fail immediately.

        Returns:
            Decoded Fonnte response

        Raises:
            DeliveryFailed: when the message could not be delivered
        """
        phone = format_phone(target)
        attempts = 0
        last_error: Optional[Exception] = None

        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            while attempts < self.max_retries:
                try:
                    response = client.post(
                        self.endpoint,
                        headers={"Authorization": self.api_token},
                        data={"target": phone, "message": message},
                    )
                except httpx.TransportError as exc:
                    last_error = exc
                    attempts += 1
                    logger.warning("fonnte_connection_error", attempt=attempts, error=str(exc))
                    if attempts < self.max_retries:
                        self._backoff(attempts)
                    continue

                result = self._decode(response)
                if result.get("status"):
                    return result

                error = result.get("reason") or result.get("message") or "Unknown API error"
                if response.status_code in (401, 429):
                    raise DeliveryFailed(f"Fonnte API error: {error}")

                attempts += 1
                last_error = DeliveryFailed(f"Fonnte API error: {error}")
                logger.warning("fonnte_api_error", attempt=attempts, status_code=response.status_code, error=error)
                if attempts >= self.max_retries:
                    raise last_error
                self._backoff(attempts)

        raise DeliveryFailed(f"Fonnte connection failed: {last_error}") from last_error
