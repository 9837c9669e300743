"""Speech adapter with provider fallback and circuit breaking.

Wraps an ordered list of text-to-speech providers and an ordered list of
speech-to-text providers.  Each request tries the providers in order, each
attempt bounded by a timeout, and skips any provider whose circuit breaker
is open.  When every provider fails the caller still gets a usable result:

  - synthesis returns the pre-recorded degraded prompt (or, when none is
    configured, the text itself so the telephony provider can read it out);
  - transcription returns an empty transcript with confidence 0, which the
    state machine treats like any other low-confidence turn.

Neither method raises for provider trouble.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from salescall.audio_store import AudioStore
from salescall.circuit_breaker import CircuitBreaker
from salescall.errors import ProviderError, TransientProviderError, classify_http_error

logger = logging.getLogger(__name__)


@dataclass
class SynthesisResult:
    # URL the telephony provider plays.  Empty means "read ``text`` aloud".
    audio_ref: str = ""
    text: str = ""
    degraded: bool = False
    provider: str = ""
    error: ProviderError | None = None


@dataclass
class TranscriptionResult:
    text: str = ""
    confidence: float = 0.0
    provider: str = ""
    error: ProviderError | None = None

    @property
    def degraded(self) -> bool:
        return self.error is not None


@dataclass
class ProviderSlot:
    """A provider plus the voice it speaks with and its own breaker."""

    provider: object
    voice: str = ""
    breaker: CircuitBreaker = field(default_factory=CircuitBreaker)

    @property
    def name(self) -> str:
        return getattr(self.provider, "name", type(self.provider).__name__)


class SpeechAdapter:
    def __init__(
        self,
        tts: list[ProviderSlot],
        stt: list[ProviderSlot],
        audio_store: AudioStore | None = None,
        timeout: float = 3.0,
        degraded_prompt_url: str = "",
    ):
        self.tts = tts
        self.stt = stt
        self.audio_store = audio_store
        self.timeout = timeout
        self.degraded_prompt_url = degraded_prompt_url

    async def synthesize(self, text: str, voice_profile: dict | None = None) -> SynthesisResult:
        """Turn ``text`` into a playable audio reference.

        ``voice_profile`` optionally maps provider name to voice id, overriding
        the voice each provider was configured with.
        """
        voice_profile = voice_profile or {}
        last_error: ProviderError | None = None

        for slot in self.tts:
            voice = voice_profile.get(slot.name, slot.voice)
            if self.audio_store is not None:
                cached = self.audio_store.lookup(text, voice)
                if cached:
                    return SynthesisResult(audio_ref=cached, text=text, provider=slot.name)

            if not slot.breaker.should_try():
                logger.info("Circuit breaker open, skipping %s", slot.name)
                continue

            try:
                audio = await self._attempt(slot, slot.provider.synthesize(text, voice))
            except ProviderError as e:
                last_error = e
                logger.warning("TTS via %s failed: %s", slot.name, e)
                continue

            slot.breaker.record_success()
            audio_ref = ""
            if self.audio_store is not None:
                try:
                    audio_ref = await self.audio_store.save(text, voice, audio)
                except OSError as e:
                    # Empty audio_ref: the prompt is read out by the telephony provider.
                    logger.error("Could not store audio from %s, reading prompt aloud: %s", slot.name, e)
            if slot is not self.tts[0]:
                logger.info("FALLBACK TTS served by %s", slot.name)
            return SynthesisResult(audio_ref=audio_ref, text=text, provider=slot.name)

        if last_error is None:
            last_error = TransientProviderError("tts", "no provider available")
        logger.error("All TTS providers failed, using degraded prompt: %s", last_error)
        return SynthesisResult(
            audio_ref=self.degraded_prompt_url, text=text, degraded=True, error=last_error
        )

    async def transcribe(self, audio_ref: str) -> TranscriptionResult:
        if not audio_ref:
            return TranscriptionResult()

        last_error: ProviderError | None = None
        for slot in self.stt:
            if not slot.breaker.should_try():
                logger.info("Circuit breaker open, skipping %s", slot.name)
                continue
            try:
                text, confidence = await self._attempt(slot, slot.provider.transcribe(audio_ref))
            except ProviderError as e:
                last_error = e
                logger.warning("STT via %s failed: %s", slot.name, e)
                continue
            slot.breaker.record_success()
            return TranscriptionResult(text=text or "", confidence=confidence, provider=slot.name)

        if last_error is None:
            last_error = TransientProviderError("stt", "no provider available")
        logger.error("All STT providers failed: %s", last_error)
        return TranscriptionResult(error=last_error)

    async def _attempt(self, slot: ProviderSlot, call):
        """Await one provider call under the timeout; record failures on its breaker."""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError:
            slot.breaker.record_failure()
            raise TransientProviderError(slot.name, f"timed out after {self.timeout:.1f}s")
        except Exception as e:
            slot.breaker.record_failure()
            raise classify_http_error(slot.name, e) from e
