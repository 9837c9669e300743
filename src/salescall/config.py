"""Process-wide configuration.

Loaded once at startup from environment variables (``.env`` is honoured via
python-dotenv) into an immutable ``Settings`` object that is passed by
reference.  There is no hot reload.
"""

import logging
import os
import sys
from dataclasses import dataclass

from dotenv import load_dotenv

from salescall.errors import ConfigurationError

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "PUBLIC_BASE_URL",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "WORKFLOW_WEBHOOK_URL",
]

CAPTURE_MODES = ("speech", "record")

OPTIONAL_VARS = [
    "TWILIO_PHONE_NUMBER",
    "ELEVENLABS_API_KEY",
    "ELEVENLABS_VOICE_ID",
    "DEEPGRAM_API_KEY",
    "DEEPGRAM_TTS_VOICE",
    "OPENAI_API_KEY",
    "GOOGLE_SHEETS_ID",
    "GOOGLE_SHEETS_CREDENTIALS_PATH",
    "DEGRADED_PROMPT_URL",
    "WORKFLOW_WEBHOOK_SECRET",
    "LOG_LEVEL",
]


def _number(name: str, default, kind):
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return kind(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be {kind.__name__}, got {raw!r}") from e


def _float(name: str, default: float) -> float:
    return _number(name, default, float)


def _int(name: str, default: int) -> int:
    return _number(name, default, int)


@dataclass(frozen=True)
class Settings:
    public_base_url: str = "http://localhost:8765"

    # Telephony
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    validate_signatures: bool = True
    # "speech": provider-side recognition, "record": our own speech-to-text
    capture_mode: str = "speech"

    # Script personalisation
    agent_name: str = "Sarah"
    dealership_name: str = "Premier Auto"

    # Speech providers
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = "EXAVITQu4vr4xnSDxMaL"
    elevenlabs_model_id: str = "eleven_turbo_v2"
    deepgram_api_key: str = ""
    deepgram_tts_voice: str = "aura-2-helena-en"
    deepgram_stt_model: str = "nova-2"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    speech_timeout: float = 3.0
    breaker_failure_threshold: int = 3
    breaker_window_seconds: float = 60.0
    breaker_cooldown_seconds: float = 60.0
    degraded_prompt_url: str = ""
    audio_dir: str = "/tmp/salescall-audio"

    # Conversation policy
    confidence_threshold: float = 0.5
    max_reprompts: int = 1
    max_consecutive_failures: int = 3
    extractor_timeout: float = 4.0
    session_ttl_seconds: float = 600.0
    sweep_interval_seconds: float = 30.0
    timezone: str = "UTC"

    # Record store
    google_sheets_id: str = ""
    google_sheets_credentials_path: str = ""
    google_sheets_credentials_json: str = ""
    google_sheets_tab: str = "Customers"
    record_store_timeout: float = 10.0

    # Workflow notification
    workflow_webhook_url: str = ""
    workflow_webhook_secret: str = ""
    workflow_timeout: float = 15.0

    # Dispatcher
    retry_base_delay: float = 1.0
    retry_factor: float = 2.0
    retry_max_attempts: int = 5
    dispatch_workers: int = 4
    dispatch_queue_size: int = 100

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        capture_mode = os.getenv("SPEECH_CAPTURE", cls.capture_mode).lower()
        if capture_mode not in CAPTURE_MODES:
            logger.warning("Unknown SPEECH_CAPTURE %r, using %r", capture_mode, cls.capture_mode)
            capture_mode = cls.capture_mode
        return cls(
            public_base_url=os.getenv("PUBLIC_BASE_URL", cls.public_base_url).rstrip("/"),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
            twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
            validate_signatures=os.getenv("VALIDATE_TWILIO_SIGNATURE", "true").lower() not in ("0", "false", "no"),
            capture_mode=capture_mode,
            agent_name=os.getenv("AGENT_NAME", cls.agent_name),
            dealership_name=os.getenv("DEALERSHIP_NAME", cls.dealership_name),
            elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
            elevenlabs_voice_id=os.getenv("ELEVENLABS_VOICE_ID", cls.elevenlabs_voice_id),
            elevenlabs_model_id=os.getenv("ELEVENLABS_MODEL_ID", cls.elevenlabs_model_id),
            deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
            deepgram_tts_voice=os.getenv("DEEPGRAM_TTS_VOICE", cls.deepgram_tts_voice),
            deepgram_stt_model=os.getenv("DEEPGRAM_MODEL", cls.deepgram_stt_model),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_model=os.getenv("OPENAI_MODEL", cls.openai_model),
            speech_timeout=_float("SPEECH_TIMEOUT_S", cls.speech_timeout),
            breaker_failure_threshold=_int("BREAKER_FAILURE_THRESHOLD", cls.breaker_failure_threshold),
            breaker_window_seconds=_float("BREAKER_WINDOW_S", cls.breaker_window_seconds),
            breaker_cooldown_seconds=_float("BREAKER_COOLDOWN_S", cls.breaker_cooldown_seconds),
            degraded_prompt_url=os.getenv("DEGRADED_PROMPT_URL", ""),
            audio_dir=os.getenv("AUDIO_DIR", cls.audio_dir),
            confidence_threshold=_float("CONFIDENCE_THRESHOLD", cls.confidence_threshold),
            max_reprompts=_int("MAX_REPROMPTS", cls.max_reprompts),
            max_consecutive_failures=_int("MAX_CONSECUTIVE_FAILURES", cls.max_consecutive_failures),
            extractor_timeout=_float("EXTRACTOR_TIMEOUT_S", cls.extractor_timeout),
            session_ttl_seconds=_float("SESSION_TTL_S", cls.session_ttl_seconds),
            sweep_interval_seconds=_float("SWEEP_INTERVAL_S", cls.sweep_interval_seconds),
            timezone=os.getenv("APPOINTMENT_TIMEZONE", cls.timezone),
            google_sheets_id=os.getenv("GOOGLE_SHEETS_ID", ""),
            google_sheets_credentials_path=os.getenv("GOOGLE_SHEETS_CREDENTIALS_PATH", ""),
            google_sheets_credentials_json=os.getenv("GOOGLE_SHEETS_CREDENTIALS_JSON", ""),
            google_sheets_tab=os.getenv("GOOGLE_SHEETS_TAB", cls.google_sheets_tab),
            record_store_timeout=_float("RECORD_STORE_TIMEOUT_S", cls.record_store_timeout),
            workflow_webhook_url=os.getenv("WORKFLOW_WEBHOOK_URL", ""),
            workflow_webhook_secret=os.getenv("WORKFLOW_WEBHOOK_SECRET", ""),
            workflow_timeout=_float("WORKFLOW_TIMEOUT_S", cls.workflow_timeout),
            retry_base_delay=_float("RETRY_BASE_DELAY_S", cls.retry_base_delay),
            retry_factor=_float("RETRY_FACTOR", cls.retry_factor),
            retry_max_attempts=_int("RETRY_MAX_ATTEMPTS", cls.retry_max_attempts),
            dispatch_workers=_int("DISPATCH_WORKERS", cls.dispatch_workers),
            dispatch_queue_size=_int("DISPATCH_QUEUE_SIZE", cls.dispatch_queue_size),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
        )


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty.  Logs warnings for missing optional variables.
    """
    load_dotenv()
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or in the deployment secrets.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)

    if not os.getenv("ELEVENLABS_API_KEY") and not os.getenv("DEEPGRAM_API_KEY"):
        logger.warning("No TTS provider configured; every prompt will use the degraded fallback")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
