"""Tests for SpeechAdapter fallback, timeouts and circuit breaking."""

import asyncio

import pytest

from salescall.audio_store import AudioStore
from salescall.circuit_breaker import CircuitBreaker
from salescall.errors import PermanentProviderError, TransientProviderError
from salescall.speech import ProviderSlot, SpeechAdapter


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class MockTTS:
    def __init__(self, name, audio=b"ID3audio", raise_exc=None, delay=0.0):
        self.name = name
        self.audio = audio
        self.raise_exc = raise_exc
        self.delay = delay
        self.calls = []

    async def synthesize(self, text, voice):
        self.calls.append((text, voice))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raise_exc:
            raise self.raise_exc
        return self.audio


class MockSTT:
    def __init__(self, name, result=("yes", 0.92), raise_exc=None):
        self.name = name
        self.result = result
        self.raise_exc = raise_exc
        self.calls = 0

    async def transcribe(self, audio_url):
        self.calls += 1
        if self.raise_exc:
            raise self.raise_exc
        return self.result


@pytest.fixture
def audio_store(tmp_path):
    return AudioStore(str(tmp_path / "audio"), "https://calls.example.com")


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_primary_provider_serves_audio(audio_store):
    primary = MockTTS("elevenlabs")
    adapter = SpeechAdapter([ProviderSlot(primary, voice="v1")], [], audio_store=audio_store)

    result = await adapter.synthesize("Hello there")

    assert result.degraded is False
    assert result.provider == "elevenlabs"
    assert result.audio_ref.startswith("https://calls.example.com/audio/")
    assert primary.calls == [("Hello there", "v1")]


@pytest.mark.asyncio
async def test_falls_back_to_secondary(audio_store):
    primary = MockTTS("elevenlabs", raise_exc=TransientProviderError("elevenlabs", "HTTP 503"))
    secondary = MockTTS("deepgram-tts")
    adapter = SpeechAdapter(
        [ProviderSlot(primary, voice="v1"), ProviderSlot(secondary, voice="aura")], [], audio_store=audio_store
    )

    result = await adapter.synthesize("Hello there")

    assert result.provider == "deepgram-tts"
    assert result.degraded is False
    assert secondary.calls == [("Hello there", "aura")]


@pytest.mark.asyncio
async def test_all_providers_fail_returns_degraded_prompt():
    failing = MockTTS("elevenlabs", raise_exc=PermanentProviderError("elevenlabs", "HTTP 401"))
    adapter = SpeechAdapter(
        [ProviderSlot(failing)], [], degraded_prompt_url="https://cdn.example.com/sorry.mp3"
    )

    result = await adapter.synthesize("Hello there")

    assert result.degraded is True
    assert result.audio_ref == "https://cdn.example.com/sorry.mp3"
    assert result.text == "Hello there"
    assert isinstance(result.error, PermanentProviderError)


@pytest.mark.asyncio
async def test_timeout_counts_as_transient_failure():
    slow = MockTTS("elevenlabs", delay=1.0)
    slot = ProviderSlot(slow, breaker=CircuitBreaker(failure_threshold=1))
    adapter = SpeechAdapter([slot], [], timeout=0.05)

    result = await adapter.synthesize("Hello")

    assert result.degraded is True
    assert isinstance(result.error, TransientProviderError)
    assert slot.breaker.is_open


@pytest.mark.asyncio
async def test_open_breaker_skips_provider():
    primary = MockTTS("elevenlabs")
    secondary = MockTTS("deepgram-tts")
    breaker = CircuitBreaker(failure_threshold=1)
    breaker.record_failure()
    adapter = SpeechAdapter([ProviderSlot(primary, breaker=breaker), ProviderSlot(secondary)], [])

    result = await adapter.synthesize("Hello")

    assert result.provider == "deepgram-tts"
    assert primary.calls == []


@pytest.mark.asyncio
async def test_raw_exception_is_classified():
    primary = MockTTS("elevenlabs", raise_exc=ConnectionError("reset"))
    adapter = SpeechAdapter([ProviderSlot(primary)], [])

    result = await adapter.synthesize("Hello")

    assert result.degraded is True
    assert isinstance(result.error, TransientProviderError)


@pytest.mark.asyncio
async def test_cached_prompt_is_not_resynthesized(audio_store):
    primary = MockTTS("elevenlabs")
    adapter = SpeechAdapter([ProviderSlot(primary, voice="v1")], [], audio_store=audio_store)

    first = await adapter.synthesize("Same sentence")
    second = await adapter.synthesize("Same sentence")

    assert first.audio_ref == second.audio_ref
    assert len(primary.calls) == 1


class FullDiskAudioStore(AudioStore):
    async def save(self, text, voice, audio):
        raise OSError(28, "No space left on device")


@pytest.mark.asyncio
async def test_audio_store_failure_reads_prompt_aloud(tmp_path):
    store = FullDiskAudioStore(str(tmp_path / "audio"), "https://calls.example.com")
    adapter = SpeechAdapter([ProviderSlot(MockTTS("elevenlabs"), voice="v1")], [], audio_store=store)

    result = await adapter.synthesize("Hello")

    assert result.audio_ref == ""
    assert result.text == "Hello"
    assert result.provider == "elevenlabs"
    assert result.degraded is False


@pytest.mark.asyncio
async def test_voice_profile_overrides_slot_voice():
    primary = MockTTS("elevenlabs")
    adapter = SpeechAdapter([ProviderSlot(primary, voice="default")], [])

    await adapter.synthesize("Hi", voice_profile={"elevenlabs": "custom"})

    assert primary.calls == [("Hi", "custom")]


# ---------------------------------------------------------------------------
# Transcription
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_transcribe_uses_first_healthy_provider():
    primary = MockSTT("deepgram-stt", raise_exc=TransientProviderError("deepgram-stt", "HTTP 502"))
    secondary = MockSTT("openai-stt", result=("no thanks", 0.81))
    adapter = SpeechAdapter([], [ProviderSlot(primary), ProviderSlot(secondary)])

    result = await adapter.transcribe("https://api.twilio.com/rec/RE1")

    assert result.text == "no thanks"
    assert result.confidence == 0.81
    assert result.provider == "openai-stt"
    assert result.degraded is False


@pytest.mark.asyncio
async def test_transcribe_all_fail_returns_empty_low_confidence():
    failing = MockSTT("deepgram-stt", raise_exc=TransientProviderError("deepgram-stt", "HTTP 502"))
    adapter = SpeechAdapter([], [ProviderSlot(failing)])

    result = await adapter.transcribe("https://api.twilio.com/rec/RE1")

    assert result.text == ""
    assert result.confidence == 0.0
    assert result.degraded is True


@pytest.mark.asyncio
async def test_transcribe_without_audio_is_empty():
    stt = MockSTT("deepgram-stt")
    adapter = SpeechAdapter([], [ProviderSlot(stt)])

    result = await adapter.transcribe("")

    assert result.text == ""
    assert result.degraded is False
    assert stt.calls == 0
