"""
Service for dispatching order-status webhooks with HMAC-SHA256 signatures.

Security features:
- HMAC-SHA256 signature over ``timestamp.payload``
- Timestamp header so receivers can reject replays
- Retry logic with exponential backoff
"""
import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Optional
from uuid import uuid4

import httpx

from courier_dispatch.core.config import settings
from courier_dispatch.models.base import utcnow

logger = logging.getLogger(__name__)


class WebhookDeliveryResult:
    """Result of a webhook delivery attempt."""

    def __init__(
        self,
        url: str,
        success: bool,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
        attempts: int = 1,
        duration_ms: float = 0,
    ):
        self.url = url
        self.success = success
        self.status_code = status_code
        self.error = error
        self.attempts = attempts
        self.duration_ms = duration_ms


class WebhookService:
    """
    Posts events to the configured notification endpoints.

    Every URL in ``WEBHOOK_URLS`` receives every event; delivery to
    several endpoints runs concurrently.
    """

    MAX_RETRIES = 3
    RETRY_DELAYS = [1, 2, 4]  # seconds
    TIMEOUT_SECONDS = 10.0

    def __init__(
        self,
        urls: Optional[list[str]] = None,
        secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.urls = list(settings.WEBHOOK_URLS if urls is None else urls)
        self.secret = secret if secret is not None else settings.WEBHOOK_SECRET_KEY
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.urls)

    @staticmethod
    def generate_signature(secret: str, payload: str, timestamp: int) -> str:
        """
        Generate HMAC-SHA256 signature of ``timestamp.payload``.

        Returns:
            Hex-encoded signature
        """
        message = f"{timestamp}.{payload}"
        return hmac.new(
            secret.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    @staticmethod
    def verify_signature(
        secret: str,
        payload: str,
        timestamp: int,
        signature: str,
        tolerance_seconds: int = 300,
    ) -> bool:
        """
        Verify a signature produced by ``generate_signature``.

        Args:
            secret: The webhook secret key
            payload: Raw request body
            timestamp: Value of the X-Webhook-Timestamp header
            signature: Hex signature (without the ``sha256=`` prefix)
            tolerance_seconds: Max age of the request
        """
        now = int(time.time())
        if abs(now - timestamp) > tolerance_seconds:
            logger.warning(f"Webhook timestamp too old: {timestamp}, now: {now}")
            return False

        expected = WebhookService.generate_signature(secret, payload, timestamp)
        return hmac.compare_digest(expected, signature)

    async def dispatch_event(
        self,
        event_type: str,
        data: dict[str, Any],
        event_id: Optional[str] = None,
    ) -> list[WebhookDeliveryResult]:
        """
        Send one event to every configured endpoint.

        Args:
            event_type: Event type (e.g. "assignment.accepted")
            data: Event payload data
            event_id: Delivery id; receivers use it to drop duplicates

        Returns:
            One delivery result per endpoint
        """
        if not self.urls:
            logger.debug(f"No webhook endpoints configured for event: {event_type}")
            return []

        timestamp = int(time.time())
        payload = {
            "id": event_id or str(uuid4()),
            "event": event_type,
            "timestamp": utcnow().isoformat() + "Z",
            "data": data,
        }
        payload_json = json.dumps(payload, default=str)

        results = await asyncio.gather(
            *(self._deliver(url, payload_json, timestamp, event_type) for url in self.urls),
            return_exceptions=True,
        )

        delivery_results = []
        for url, result in zip(self.urls, results):
            if isinstance(result, Exception):
                delivery_results.append(WebhookDeliveryResult(url=url, success=False, error=str(result)))
            else:
                delivery_results.append(result)

        success_count = sum(1 for r in delivery_results if r.success)
        logger.info(
            f"Webhook dispatch: event={event_type}, "
            f"total={len(delivery_results)}, success={success_count}"
        )
        return delivery_results

    async def _deliver(
        self,
        url: str,
        payload_json: str,
        timestamp: int,
        event_type: str,
    ) -> WebhookDeliveryResult:
        """Deliver to a single endpoint with retry logic."""
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": event_type,
            "X-Webhook-Timestamp": str(timestamp),
            "User-Agent": "Courier-Dispatch-Webhook/1.0",
        }
        if self.secret:
            signature = self.generate_signature(self.secret, payload_json, timestamp)
            headers["X-Webhook-Signature"] = f"sha256={signature}"
        else:
            logger.warning(f"No webhook secret configured, sending unsigned event to {url}")

        start_time = time.time()
        last_error = None
        attempts = 0

        async with httpx.AsyncClient(timeout=self.TIMEOUT_SECONDS, transport=self._transport) as client:
            for attempt in range(self.MAX_RETRIES):
                attempts = attempt + 1
                try:
                    response = await client.post(url, content=payload_json, headers=headers)
                    if response.status_code < 400:
                        logger.debug(
                            f"Webhook delivered: url={url}, "
                            f"status={response.status_code}, attempts={attempts}"
                        )
                        return WebhookDeliveryResult(
                            url=url,
                            success=True,
                            status_code=response.status_code,
                            attempts=attempts,
                            duration_ms=(time.time() - start_time) * 1000,
                        )
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        f"Webhook failed: url={url}, status={response.status_code}, "
                        f"attempt={attempts}/{self.MAX_RETRIES}"
                    )
                except httpx.TimeoutException:
                    last_error = "Timeout"
                    logger.warning(f"Webhook timeout: url={url}, attempt={attempts}/{self.MAX_RETRIES}")
                except httpx.RequestError as e:
                    last_error = str(e)
                    logger.warning(
                        f"Webhook request error: url={url}, error={e}, "
                        f"attempt={attempts}/{self.MAX_RETRIES}"
                    )

                if attempt < self.MAX_RETRIES - 1:
                    await asyncio.sleep(self.RETRY_DELAYS[attempt])

        logger.error(
            f"Webhook delivery failed after {attempts} attempts: url={url}, error={last_error}"
        )
        return WebhookDeliveryResult(
            url=url,
            success=False,
            error=last_error,
            attempts=attempts,
            duration_ms=(time.time() - start_time) * 1000,
        )
