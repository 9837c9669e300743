import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, PlainTextResponse, Response
from pydantic import BaseModel
from twilio.request_validator import RequestValidator

from salescall.audio_store import AudioStore
from salescall.circuit_breaker import CircuitBreaker
from salescall.config import Settings, configure_logging, validate_config
from salescall.dispatcher import NotificationDispatcher, RetryPolicy
from salescall.engine import FINAL_CALL_STATUSES, ConversationEngine
from salescall.errors import PermanentProviderError, ProviderError
from salescall.extraction import Extractor, LanguageModelClassifier
from salescall.prompts import Script
from salescall.record_store import GoogleSheetsRecordStore, InMemoryRecordStore
from salescall.session_store import SessionStore
from salescall.speech import ProviderSlot, SpeechAdapter
from salescall.speech_providers import DeepgramSTT, DeepgramTTS, ElevenLabsTTS, OpenAIWhisperSTT
from salescall.state_machine import StateMachine
from salescall.telephony import OutboundDialer
from salescall.twiml import Reply, render
from salescall.workflow import WorkflowClient

logger = logging.getLogger(__name__)


def _breaker(settings: Settings, label: str) -> CircuitBreaker:
    return CircuitBreaker(
        failure_threshold=settings.breaker_failure_threshold,
        cooldown_seconds=settings.breaker_cooldown_seconds,
        window_seconds=settings.breaker_window_seconds,
        label=label,
    )


def build_speech(settings: Settings) -> SpeechAdapter:
    tts, stt = [], []
    if settings.elevenlabs_api_key:
        tts.append(ProviderSlot(
            ElevenLabsTTS(settings.elevenlabs_api_key, model_id=settings.elevenlabs_model_id),
            voice=settings.elevenlabs_voice_id,
            breaker=_breaker(settings, "elevenlabs"),
        ))
    if settings.deepgram_api_key:
        tts.append(ProviderSlot(
            DeepgramTTS(settings.deepgram_api_key),
            voice=settings.deepgram_tts_voice,
            breaker=_breaker(settings, "deepgram-tts"),
        ))
        stt.append(ProviderSlot(
            DeepgramSTT(settings.deepgram_api_key, model=settings.deepgram_stt_model),
            breaker=_breaker(settings, "deepgram-stt"),
        ))
    if settings.openai_api_key:
        stt.append(ProviderSlot(
            OpenAIWhisperSTT(
                settings.openai_api_key,
                recording_auth=(settings.twilio_account_sid, settings.twilio_auth_token),
            ),
            breaker=_breaker(settings, "openai-stt"),
        ))
    return SpeechAdapter(
        tts,
        stt,
        audio_store=AudioStore(settings.audio_dir, settings.public_base_url),
        timeout=settings.speech_timeout,
        degraded_prompt_url=settings.degraded_prompt_url,
    )


def build_record_store(settings: Settings):
    if settings.google_sheets_id:
        return GoogleSheetsRecordStore(
            settings.google_sheets_id,
            credentials_path=settings.google_sheets_credentials_path,
            credentials_json=settings.google_sheets_credentials_json,
            tab_name=settings.google_sheets_tab,
            timeout=settings.record_store_timeout,
        )
    logger.warning("GOOGLE_SHEETS_ID not set, customer records are kept in memory only")
    return InMemoryRecordStore()


def build_engine(settings: Settings) -> ConversationEngine:
    script = Script(agent_name=settings.agent_name, dealership_name=settings.dealership_name)
    classifier = None
    if settings.openai_api_key:
        classifier = LanguageModelClassifier(
            settings.openai_api_key, model=settings.openai_model, timeout=settings.extractor_timeout
        )
    record_store = build_record_store(settings)
    dispatcher = NotificationDispatcher(
        record_store,
        WorkflowClient(
            url=settings.workflow_webhook_url,
            webhook_secret=settings.workflow_webhook_secret,
            timeout=settings.workflow_timeout,
        ),
        policy=RetryPolicy(settings.retry_base_delay, settings.retry_factor, settings.retry_max_attempts),
        workers=settings.dispatch_workers,
        queue_size=settings.dispatch_queue_size,
    )
    return ConversationEngine(
        SessionStore(ttl_seconds=settings.session_ttl_seconds),
        StateMachine(
            script,
            confidence_threshold=settings.confidence_threshold,
            max_reprompts=settings.max_reprompts,
            max_consecutive_failures=settings.max_consecutive_failures,
        ),
        Extractor(classifier, question_for=script.question_text, timezone=settings.timezone),
        build_speech(settings),
        dispatcher,
        record_store,
        extractor_timeout=settings.extractor_timeout,
        lookup_timeout=settings.record_store_timeout,
        sweep_interval=settings.sweep_interval_seconds,
    )


def build_dialer(settings: Settings) -> OutboundDialer | None:
    if not (settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_phone_number):
        return None
    return OutboundDialer(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        settings.twilio_phone_number,
        settings.public_base_url,
    )


def _customer_phone(form: dict) -> str:
    """The customer's number: the callee on outbound calls, the caller otherwise."""
    direction = form.get("Direction", "inbound")
    return form.get("To", "") if direction.startswith("outbound") else form.get("From", "")


class CallRequest(BaseModel):
    phone: str


def create_app(
    settings: Settings | None = None,
    engine: ConversationEngine | None = None,
    dialer: OutboundDialer | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.settings is None:
            validate_config()
            app.state.settings = Settings.from_env()
            configure_logging(app.state.settings.log_level)
        if app.state.engine is None:
            app.state.engine = build_engine(app.state.settings)
        if app.state.dialer is None:
            app.state.dialer = build_dialer(app.state.settings)
        app.state.engine.start()
        logger.info("Sales call engine ready at %s", app.state.settings.public_base_url)
        yield
        await app.state.engine.stop()

    app = FastAPI(title="Sales Call Engine", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.dialer = dialer

    async def _form(request: Request) -> dict:
        """Read the webhook form and check Twilio's signature when enabled."""
        form = {k: v for k, v in (await request.form()).items()}
        settings: Settings = request.app.state.settings
        if settings.validate_signatures:
            url = settings.public_base_url + request.url.path
            if request.url.query:
                url += "?" + request.url.query
            signature = request.headers.get("X-Twilio-Signature", "")
            validator = RequestValidator(settings.twilio_auth_token)
            if not signature or not validator.validate(url, form, signature):
                logger.warning("Rejected webhook with bad signature on %s", request.url.path)
                raise HTTPException(status_code=403, detail="Invalid Twilio signature")
        return form

    def _twiml(request: Request, call_id: str, reply: Reply) -> Response:
        settings: Settings = request.app.state.settings
        action_url = f"{settings.public_base_url}/gather/{call_id}?turn={reply.turn}"
        xml = render(reply, action_url=action_url, capture=settings.capture_mode)
        return Response(content=xml, media_type="application/xml")

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post("/voice")
    async def voice(request: Request):
        """Call answered."""
        form = await _form(request)
        call_id = form.get("CallSid", "")
        if not call_id:
            raise HTTPException(status_code=400, detail="CallSid missing")
        phone = _customer_phone(form)
        logger.info("Call %s answered (%s, customer %s)", call_id, form.get("Direction", "inbound"), phone)
        reply = await request.app.state.engine.handle_answered(call_id, phone)
        return _twiml(request, call_id, reply)

    @app.post("/gather/{call_id}")
    async def gather(call_id: str, request: Request, turn: int | None = None):
        """Customer speech turn."""
        form = await _form(request)
        speech = form.get("SpeechResult", "") or ""
        raw_confidence = form.get("Confidence", "")
        try:
            confidence = float(raw_confidence) if raw_confidence else (1.0 if speech.strip() else 0.0)
        except ValueError:
            confidence = 0.0
        reply = await request.app.state.engine.handle_gather(
            call_id,
            speech_result=speech,
            confidence=confidence,
            recording_url=form.get("RecordingUrl", ""),
            turn=turn,
        )
        return _twiml(request, call_id, reply)

    async def _status(request: Request, call_id: str = "") -> PlainTextResponse:
        form = await _form(request)
        call_id = call_id or form.get("CallSid", "")
        status = form.get("CallStatus", "")
        if call_id and status in FINAL_CALL_STATUSES:
            await request.app.state.engine.handle_call_ended(call_id, status, _customer_phone(form))
        else:
            logger.debug("Call %s status %s", call_id, status)
        return PlainTextResponse("ok")

    @app.post("/status/{call_id}")
    async def status_for_call(call_id: str, request: Request):
        return await _status(request, call_id)

    @app.post("/status")
    async def status(request: Request):
        return await _status(request)

    @app.get("/audio/{name}")
    async def audio(name: str, request: Request):
        store = request.app.state.engine.speech.audio_store
        path = store.path_for(name) if store is not None else None
        if path is None:
            raise HTTPException(status_code=404, detail="Not found")
        return FileResponse(path, media_type="audio/mpeg")

    @app.post("/calls")
    async def start_call(body: CallRequest, request: Request):
        """Ring a customer."""
        dialer: OutboundDialer | None = request.app.state.dialer
        if dialer is None:
            raise HTTPException(status_code=503, detail="Outbound calling is not configured")
        try:
            call_id = await dialer.dial(body.phone)
        except PermanentProviderError as e:
            raise HTTPException(status_code=400, detail=e.message)
        except ProviderError as e:
            raise HTTPException(status_code=502, detail=e.message)
        return {"call_id": call_id, "phone": body.phone}

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run("salescall.bot:app", host="0.0.0.0", port=port)
