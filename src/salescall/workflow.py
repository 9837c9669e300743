import logging
from datetime import datetime, timezone

import httpx

from salescall.errors import classify_http_error

logger = logging.getLogger(__name__)


class WorkflowClient:
    """Posts call events to the external workflow endpoint.

    One attempt per call; the dispatcher owns retries.  Every event carries
    the call id in its body and as the ``Idempotency-Key`` header so the
    workflow side can drop repeats.
    """

    def __init__(
        self,
        *,
        url: str,
        webhook_secret: str = "",
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.secret = webhook_secret
        self.timeout = timeout
        self._client = client

    def _headers(self, call_id: str, event: str) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": f"{call_id}:{event}",
        }
        if self.secret:
            headers["X-Webhook-Secret"] = self.secret
        return headers

    @staticmethod
    def envelope(event: str, data: dict) -> dict:
        return {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }

    async def send_event(self, event: str, call_id: str, data: dict) -> dict:
        """POST ``{event, timestamp, data}``.

        Raises TransientProviderError for timeouts, network errors, 429 and
        5xx; PermanentProviderError for any other 4xx.
        """
        payload = self.envelope(event, {**data, "call_id": call_id})
        headers = self._headers(call_id, event)
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, json=payload, headers=headers)
            resp.raise_for_status()
        except Exception as e:
            raise classify_http_error("workflow", e) from e

        logger.info("Workflow %s sent for %s (HTTP %d)", event, call_id, resp.status_code)
        try:
            return resp.json()
        except ValueError:
            return {}
