# /convoflow/services/webhook_service.py

import httpx
import logging
from typing import Optional, Dict, Any

from convoflow.config.settings import settings
from convoflow.utils.metrics import webhook_calls_counter
from convoflow.workflows.errors import CapabilityError

logger = logging.getLogger(__name__)

ALLOWED_METHODS = {"POST", "PUT", "PATCH"}


class WebhookService:
    """
    Calls tenant-configured webhooks from ACTION steps. A single attempt per
    call; receivers deduplicate on the Idempotency-Key header.
    """

    def __init__(self, timeout: float):
        self.http_client = httpx.AsyncClient(timeout=timeout)

    async def invoke(
        self,
        url: str,
        payload: Dict[str, Any],
        idempotency_key: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        method = (method or "POST").upper()
        if method not in ALLOWED_METHODS:
            raise CapabilityError(f"Unsupported webhook method '{method}'")

        request_headers = {**(headers or {}), "Idempotency-Key": idempotency_key}
        try:
            response = await self.http_client.request(method, url, json=payload, headers=request_headers)
        except httpx.HTTPError as e:
            webhook_calls_counter.labels(status="error").inc()
            logger.error(f"webhook_call_error to {url}: {e}")
            raise CapabilityError(f"Webhook call to {url} failed: {e}") from e

        if response.status_code >= 400:
            webhook_calls_counter.labels(status="rejected").inc()
            logger.error(f"webhook_call_rejected to {url}: {response.status_code}")
            raise CapabilityError(f"Webhook {url} responded with {response.status_code}")

        webhook_calls_counter.labels(status="success").inc()
        try:
            body = response.json()
        except ValueError:
            body = response.text
        return {"status_code": response.status_code, "body": body}

    async def cleanup(self):
        await self.http_client.aclose()

# Globally accessible instance
webhook_service = WebhookService(settings.webhook_timeout_seconds)
