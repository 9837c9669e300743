import json

import httpx
import pytest
import respx

from salescall.errors import PermanentProviderError, TransientProviderError
from salescall.speech_providers import DeepgramSTT, DeepgramTTS, ElevenLabsTTS, OpenAIWhisperSTT

RECORDING_URL = "https://api.twilio.com/2010-04-01/Accounts/AC1/Recordings/RE1"


class TestElevenLabs:
    @respx.mock
    @pytest.mark.asyncio
    async def test_returns_audio_bytes(self):
        route = respx.post("https://api.elevenlabs.io/v1/text-to-speech/voice-1").mock(
            return_value=httpx.Response(200, content=b"ID3mp3")
        )
        audio = await ElevenLabsTTS("el-key").synthesize("Hello Jonas", "voice-1")
        assert audio == b"ID3mp3"
        request = route.calls[0].request
        assert request.headers["xi-api-key"] == "el-key"
        assert request.url.params["output_format"] == "mp3_44100_128"
        assert json.loads(request.content)["text"] == "Hello Jonas"

    @respx.mock
    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self):
        respx.post("https://api.elevenlabs.io/v1/text-to-speech/voice-1").mock(
            return_value=httpx.Response(429, text="slow down")
        )
        with pytest.raises(TransientProviderError) as exc:
            await ElevenLabsTTS("el-key").synthesize("Hello", "voice-1")
        assert exc.value.status_code == 429

    @respx.mock
    @pytest.mark.asyncio
    async def test_empty_body_is_permanent(self):
        respx.post("https://api.elevenlabs.io/v1/text-to-speech/voice-1").mock(
            return_value=httpx.Response(200, content=b"")
        )
        with pytest.raises(PermanentProviderError):
            await ElevenLabsTTS("el-key").synthesize("Hello", "voice-1")


class TestDeepgramTTS:
    @respx.mock
    @pytest.mark.asyncio
    async def test_uses_voice_as_model(self):
        route = respx.post("https://api.deepgram.com/v1/speak").mock(
            return_value=httpx.Response(200, content=b"ID3mp3")
        )
        audio = await DeepgramTTS("dg-key").synthesize("Hello", "aura-2-helena-en")
        assert audio == b"ID3mp3"
        request = route.calls[0].request
        assert request.url.params["model"] == "aura-2-helena-en"
        assert request.headers["authorization"] == "Token dg-key"

    @respx.mock
    @pytest.mark.asyncio
    async def test_unauthorized_is_permanent(self):
        respx.post("https://api.deepgram.com/v1/speak").mock(return_value=httpx.Response(401))
        with pytest.raises(PermanentProviderError):
            await DeepgramTTS("bad").synthesize("Hello", "aura-2-helena-en")


class TestDeepgramSTT:
    @respx.mock
    @pytest.mark.asyncio
    async def test_parses_first_alternative(self):
        route = respx.post("https://api.deepgram.com/v1/listen").mock(
            return_value=httpx.Response(200, json={
                "results": {"channels": [{"alternatives": [{"transcript": "yes please", "confidence": 0.94}]}]},
            })
        )
        text, confidence = await DeepgramSTT("dg-key").transcribe(RECORDING_URL)
        assert text == "yes please"
        assert confidence == 0.94
        assert json.loads(route.calls[0].request.content) == {"url": RECORDING_URL}

    @respx.mock
    @pytest.mark.asyncio
    async def test_malformed_body_is_permanent(self):
        respx.post("https://api.deepgram.com/v1/listen").mock(
            return_value=httpx.Response(200, json={"results": {}})
        )
        with pytest.raises(PermanentProviderError):
            await DeepgramSTT("dg-key").transcribe(RECORDING_URL)

    @respx.mock
    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        respx.post("https://api.deepgram.com/v1/listen").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(TransientProviderError):
            await DeepgramSTT("dg-key").transcribe(RECORDING_URL)


class TestWhisperSTT:
    @respx.mock
    @pytest.mark.asyncio
    async def test_downloads_recording_then_transcribes(self):
        download = respx.get(RECORDING_URL).mock(
            return_value=httpx.Response(200, content=b"RIFFwav", headers={"content-type": "audio/wav"})
        )
        transcribe = respx.post("https://api.openai.com/v1/audio/transcriptions").mock(
            return_value=httpx.Response(200, json={
                "text": " No thanks. ",
                "segments": [{"avg_logprob": 0.0}, {"avg_logprob": 0.0}],
            })
        )
        text, confidence = await OpenAIWhisperSTT("oa-key").transcribe(RECORDING_URL)
        assert text == "No thanks."
        assert confidence == 1.0
        assert download.called
        assert transcribe.calls[0].request.headers["authorization"] == "Bearer oa-key"

    @respx.mock
    @pytest.mark.asyncio
    async def test_low_logprob_lowers_confidence(self):
        respx.get(RECORDING_URL).mock(return_value=httpx.Response(200, content=b"RIFFwav"))
        respx.post("https://api.openai.com/v1/audio/transcriptions").mock(
            return_value=httpx.Response(200, json={"text": "maybe", "segments": [{"avg_logprob": -1.5}]})
        )
        _, confidence = await OpenAIWhisperSTT("oa-key").transcribe(RECORDING_URL)
        assert confidence == pytest.approx(0.223, abs=0.001)

    @respx.mock
    @pytest.mark.asyncio
    async def test_silence_returns_zero_confidence(self):
        respx.get(RECORDING_URL).mock(return_value=httpx.Response(200, content=b"RIFFwav"))
        respx.post("https://api.openai.com/v1/audio/transcriptions").mock(
            return_value=httpx.Response(200, json={"text": "", "segments": []})
        )
        assert await OpenAIWhisperSTT("oa-key").transcribe(RECORDING_URL) == ("", 0.0)

    @respx.mock
    @pytest.mark.asyncio
    async def test_recording_not_found_is_permanent(self):
        respx.get(RECORDING_URL).mock(return_value=httpx.Response(404))
        with pytest.raises(PermanentProviderError):
            await OpenAIWhisperSTT("oa-key").transcribe(RECORDING_URL)
