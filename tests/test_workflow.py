import json

import httpx
import pytest
import respx

from salescall.errors import PermanentProviderError, TransientProviderError
from salescall.workflow import WorkflowClient

WEBHOOK_URL = "https://hooks.example.com/sales-call"


class TestSendEvent:
    @respx.mock
    @pytest.mark.asyncio
    async def test_posts_envelope_with_call_id(self):
        route = respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(200, json={"ok": True}))
        client = WorkflowClient(url=WEBHOOK_URL, webhook_secret="s3cret")

        result = await client.send_event("appointment_booked", "CA_1", {"outcome": "appointment_scheduled"})

        assert result == {"ok": True}
        request = route.calls[0].request
        body = json.loads(request.content)
        assert body["event"] == "appointment_booked"
        assert body["timestamp"]
        assert body["data"] == {"outcome": "appointment_scheduled", "call_id": "CA_1"}
        assert request.headers["idempotency-key"] == "CA_1:appointment_booked"
        assert request.headers["x-webhook-secret"] == "s3cret"

    @respx.mock
    @pytest.mark.asyncio
    async def test_no_secret_header_when_unset(self):
        route = respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(204))
        result = await WorkflowClient(url=WEBHOOK_URL).send_event("call_completed", "CA_1", {})
        assert result == {}
        assert "x-webhook-secret" not in route.calls[0].request.headers

    @respx.mock
    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(502))
        with pytest.raises(TransientProviderError):
            await WorkflowClient(url=WEBHOOK_URL).send_event("call_completed", "CA_1", {})

    @respx.mock
    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self):
        respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(400, json={"error": "bad payload"}))
        with pytest.raises(PermanentProviderError):
            await WorkflowClient(url=WEBHOOK_URL).send_event("call_completed", "CA_1", {})

    @respx.mock
    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        respx.post(WEBHOOK_URL).mock(side_effect=httpx.ReadTimeout("timed out"))
        with pytest.raises(TransientProviderError):
            await WorkflowClient(url=WEBHOOK_URL).send_event("call_completed", "CA_1", {})
