import asyncio
import logging

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from salescall.errors import PermanentProviderError, TransientProviderError

logger = logging.getLogger(__name__)

STATUS_EVENTS = ["initiated", "ringing", "answered", "completed"]


class OutboundDialer:
    """Asks Twilio to ring a customer and point the answered call at ``/voice``."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        public_base_url: str,
        client: Client | None = None,
    ):
        self.from_number = from_number
        self.public_base_url = public_base_url.rstrip("/")
        self.client = client or Client(account_sid, auth_token)

    def _create(self, to_number: str):
        return self.client.calls.create(
            to=to_number,
            from_=self.from_number,
            url=f"{self.public_base_url}/voice",
            method="POST",
            timeout=30,
            status_callback=f"{self.public_base_url}/status",
            status_callback_method="POST",
            status_callback_event=STATUS_EVENTS,
        )

    async def dial(self, to_number: str) -> str:
        """Start the call and return its call id.

        The REST client is blocking, so the request runs in a worker thread.
        """
        if not self.from_number:
            raise PermanentProviderError("twilio", "TWILIO_PHONE_NUMBER is not configured")
        try:
            call = await asyncio.to_thread(self._create, to_number)
        except TwilioRestException as e:
            status = e.status or 0
            logger.error("Twilio call to %s rejected (%s): %s", to_number, status, e.msg)
            if status >= 500 or status == 429:
                raise TransientProviderError("twilio", e.msg, status) from e
            raise PermanentProviderError("twilio", e.msg, status) from e
        except TwilioException as e:
            raise TransientProviderError("twilio", str(e)) from e

        logger.info("Outbound call %s started to %s", call.sid, to_number)
        return call.sid
