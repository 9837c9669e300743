import asyncio
import hashlib
import logging
import re
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[0-9a-f]{24}\.mp3$")


class AudioStore:
    """Synthesized prompts on local disk, addressed by a hash of (voice, text).

    The same sentence in the same voice is only synthesized once; the
    telephony provider fetches it from ``{public_base_url}/audio/{name}``.
    """

    def __init__(self, directory: str, public_base_url: str):
        self.directory = Path(directory)
        self.public_base_url = public_base_url.rstrip("/")
        self.directory.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def name_for(text: str, voice: str) -> str:
        digest = hashlib.sha256(f"{voice}\n{text}".encode("utf-8")).hexdigest()[:24]
        return f"{digest}.mp3"

    def url_for(self, name: str) -> str:
        return f"{self.public_base_url}/audio/{name}"

    def path_for(self, name: str) -> Path | None:
        """Resolve a served file name to its path.  None for anything not ours."""
        if not _NAME_RE.match(name):
            return None
        path = self.directory / name
        return path if path.is_file() else None

    def lookup(self, text: str, voice: str) -> str | None:
        name = self.name_for(text, voice)
        if (self.directory / name).is_file():
            return self.url_for(name)
        return None

    async def save(self, text: str, voice: str, audio: bytes) -> str:
        name = self.name_for(text, voice)
        path = self.directory / name
        tmp = path.with_name(f"{name}.{uuid.uuid4().hex}.tmp")

        def _write():
            tmp.write_bytes(audio)
            tmp.replace(path)

        await asyncio.to_thread(_write)
        logger.debug("Stored %d bytes of audio as %s", len(audio), name)
        return self.url_for(name)
