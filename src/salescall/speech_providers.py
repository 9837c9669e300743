"""HTTP clients for the speech vendors.

Each client does one request per call and translates every failure into a
``TransientProviderError`` or ``PermanentProviderError``.  Fallback, timeouts
and circuit breaking live one level up in ``salescall.speech``.
"""

import logging
import math

import httpx

from salescall.errors import classify_http_error

logger = logging.getLogger(__name__)


class _HttpProvider:
    name = "provider"

    def __init__(self, api_key: str, timeout: float = 10.0, client: httpx.AsyncClient | None = None):
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            if self._client is not None:
                resp = await self._client.request(method, url, timeout=self.timeout, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.request(method, url, **kwargs)
            resp.raise_for_status()
            return resp
        except Exception as e:
            raise classify_http_error(self.name, e) from e


# ── Text to speech ──


class ElevenLabsTTS(_HttpProvider):
    name = "elevenlabs"
    base_url = "https://api.elevenlabs.io/v1"

    def __init__(self, api_key: str, model_id: str = "eleven_turbo_v2", **kwargs):
        super().__init__(api_key, **kwargs)
        self.model_id = model_id

    async def synthesize(self, text: str, voice: str) -> bytes:
        resp = await self._send(
            "POST",
            f"{self.base_url}/text-to-speech/{voice}",
            params={"output_format": "mp3_44100_128"},
            headers={"xi-api-key": self.api_key, "Accept": "audio/mpeg"},
            json={
                "text": text,
                "model_id": self.model_id,
                "voice_settings": {"stability": 0.5, "similarity_boost": 0.8},
            },
        )
        if not resp.content:
            raise classify_http_error(self.name, ValueError("empty audio body"))
        return resp.content


class DeepgramTTS(_HttpProvider):
    """Deepgram Aura.  ``voice`` is the Aura model name, e.g. ``aura-2-helena-en``."""

    name = "deepgram-tts"
    base_url = "https://api.deepgram.com/v1"

    async def synthesize(self, text: str, voice: str) -> bytes:
        resp = await self._send(
            "POST",
            f"{self.base_url}/speak",
            params={"model": voice, "encoding": "mp3"},
            headers={"Authorization": f"Token {self.api_key}"},
            json={"text": text},
        )
        if not resp.content:
            raise classify_http_error(self.name, ValueError("empty audio body"))
        return resp.content


# ── Speech to text ──


class DeepgramSTT(_HttpProvider):
    """Pre-recorded transcription of a hosted recording (Deepgram fetches the URL)."""

    name = "deepgram-stt"
    base_url = "https://api.deepgram.com/v1"

    def __init__(self, api_key: str, model: str = "nova-2", **kwargs):
        super().__init__(api_key, **kwargs)
        self.model = model

    async def transcribe(self, audio_url: str) -> tuple[str, float]:
        resp = await self._send(
            "POST",
            f"{self.base_url}/listen",
            params={"model": self.model, "smart_format": "true", "punctuate": "true"},
            headers={"Authorization": f"Token {self.api_key}"},
            json={"url": audio_url},
        )
        try:
            alternative = resp.json()["results"]["channels"][0]["alternatives"][0]
            return alternative.get("transcript", ""), float(alternative.get("confidence", 0.0))
        except Exception as e:
            raise classify_http_error(self.name, e) from e


class OpenAIWhisperSTT(_HttpProvider):
    """Downloads the recording, then posts it to the Whisper transcription endpoint.

    Whisper reports no overall confidence; it is approximated from the mean
    segment log-probability.
    """

    name = "openai-stt"
    base_url = "https://api.openai.com/v1"

    def __init__(self, api_key: str, model: str = "whisper-1", recording_auth: tuple[str, str] | None = None, **kwargs):
        super().__init__(api_key, **kwargs)
        self.model = model
        self.recording_auth = recording_auth

    async def transcribe(self, audio_url: str) -> tuple[str, float]:
        download = await self._send("GET", audio_url, auth=self.recording_auth)
        resp = await self._send(
            "POST",
            f"{self.base_url}/audio/transcriptions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            data={"model": self.model, "response_format": "verbose_json", "language": "en"},
            files={"file": ("turn.wav", download.content, download.headers.get("content-type", "audio/wav"))},
        )
        try:
            body = resp.json()
            text = body.get("text", "").strip()
            segments = body.get("segments") or []
        except Exception as e:
            raise classify_http_error(self.name, e) from e

        if not text:
            return "", 0.0
        if not segments:
            return text, 1.0
        mean_logprob = sum(s.get("avg_logprob", 0.0) for s in segments) / len(segments)
        return text, round(min(1.0, math.exp(mean_logprob)), 3)
