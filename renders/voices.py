"""
Voice Adapter: script text + voice selection -> stereo speech asset.

Providers implement ``VoiceProvider.synthesize`` and are looked up by name in
a fixed registry; an unknown name fails with ``UnsupportedProviderError``.
Whatever a provider returns (mp3, wav, ...) is decoded to the same stereo
PCM WAV the rest of the pipeline works with.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import httpx
from django.conf import settings

from .audio import AudioAsset, FFmpeg, to_stereo_wav
from .errors import ProviderError, ResourceLimitError, UnsupportedProviderError
from .jobdata import VoiceSelection

logger = logging.getLogger(__name__)

SUFFIXES = {
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/wave": ".wav",
    "audio/ogg": ".ogg",
    "audio/webm": ".webm",
    "audio/aac": ".aac",
}

_SENTENCE = re.compile(r"[^.!?]+(?:[.!?]+|$)")


@dataclass(frozen=True)
class ProviderAudio:
    content: bytes
    content_type: str = "audio/mpeg"


class VoiceProvider:
    name = ""
    # Longest text accepted in one request; None means the provider ignores text.
    max_chars: Optional[int] = None

    def synthesize(self, text: str, voice_id: str, options: Mapping) -> ProviderAudio:
        raise NotImplementedError


class HttpVoiceProvider(VoiceProvider):
    """Shared request/response handling for HTTP TTS APIs."""

    def __init__(self, api_key: Optional[str], *, url: str, timeout: float = 120,
                 http_client: Optional[httpx.Client] = None):
        self.api_key = api_key
        self.url = url
        self.timeout = timeout
        self.http_client = http_client

    def _post(self, url: str, headers: dict, payload: dict) -> ProviderAudio:
        if not self.api_key:
            raise ProviderError(self.name, "API key is not configured")

        try:
            if self.http_client is not None:
                r = self.http_client.post(url, headers=headers, json=payload)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    r = client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, f"request failed: {exc}") from exc

        if not r.is_success:
            raise ProviderError(
                self.name,
                f"TTS request failed with status {r.status_code}: {r.text[:300]}",
                status_code=r.status_code,
            )
        if not r.content:
            raise ProviderError(self.name, "TTS response contained no audio", status_code=r.status_code)

        content_type = r.headers.get("content-type", "audio/mpeg").split(";")[0].strip()
        return ProviderAudio(content=r.content, content_type=content_type)


class OpenAIProvider(HttpVoiceProvider):
    name = "openai"
    max_chars = 4096

    def __init__(self, api_key, *, model: str = "tts-1-hd",
                 url: str = "https://api.openai.com/v1/audio/speech", **kwargs):
        super().__init__(api_key, url=url, **kwargs)
        self.model = model

    def synthesize(self, text, voice_id, options):
        speed = options.get("speed", 1.0)
        payload = {
            "model": options.get("model", self.model),
            "input": text,
            "voice": voice_id,
            "response_format": "mp3",
            "speed": speed,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        logger.info("OpenAI TTS: voice=%s model=%s speed=%s chars=%d", voice_id, payload["model"], speed, len(text))
        return self._post(self.url, headers, payload)


class ElevenLabsProvider(HttpVoiceProvider):
    name = "elevenlabs"
    max_chars = 5000

    def __init__(self, api_key, *, model_id: str = "eleven_monolingual_v1",
                 url: str = "https://api.elevenlabs.io/v1/text-to-speech", **kwargs):
        super().__init__(api_key, url=url, **kwargs)
        self.model_id = model_id

    def synthesize(self, text, voice_id, options):
        payload = {
            "text": text,
            "model_id": options.get("model_id", self.model_id),
            "voice_settings": {
                "stability": options.get("stability", 0.5),
                "similarity_boost": options.get("similarity_boost", 0.5),
            },
        }
        headers = {
            "xi-api-key": self.api_key or "",
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
        }
        logger.info("ElevenLabs TTS: voice=%s model=%s chars=%d", voice_id, payload["model_id"], len(text))
        return self._post(f"{self.url.rstrip('/')}/{voice_id}", headers, payload)


class UploadedVoiceProvider(VoiceProvider):
    """A pre-recorded narration stored as an asset; the script is not spoken."""

    name = "uploaded"

    def __init__(self, fetcher):
        self.fetcher = fetcher

    def synthesize(self, text, voice_id, options):
        content, content_type = self.fetcher.read(voice_id)
        return ProviderAudio(content=content, content_type=content_type)


def default_providers(voice_fetcher, http_client: Optional[httpx.Client] = None) -> dict[str, VoiceProvider]:
    """The provider registry built from Django settings."""
    timeout = settings.TTS_TIMEOUT_SECONDS
    return {
        OpenAIProvider.name: OpenAIProvider(
            settings.OPENAI_API_KEY,
            model=settings.OPENAI_TTS_MODEL,
            url=settings.OPENAI_TTS_URL,
            timeout=timeout,
            http_client=http_client,
        ),
        ElevenLabsProvider.name: ElevenLabsProvider(
            settings.ELEVENLABS_API_KEY,
            model_id=settings.ELEVENLABS_MODEL_ID,
            url=settings.ELEVENLABS_TTS_URL,
            timeout=timeout,
            http_client=http_client,
        ),
        UploadedVoiceProvider.name: UploadedVoiceProvider(voice_fetcher),
    }


def _split_words(sentence: str, max_chars: int) -> list[str]:
    out, current = [], ""
    for word in sentence.split():
        while len(word) > max_chars:
            if current:
                out.append(current)
                current = ""
            out.append(word[:max_chars])
            word = word[max_chars:]
        if not word:
            continue
        if current and len(current) + 1 + len(word) > max_chars:
            out.append(current)
            current = word
        else:
            current = f"{current} {word}" if current else word
    if current:
        out.append(current)
    return out


def chunk_text(text: str, max_chars: int) -> list[str]:
    """Split ``text`` into request-sized pieces at sentence, then word, boundaries."""
    text = text.strip()
    if len(text) <= max_chars:
        return [text]

    chunks, current = [], ""
    for sentence in (s.strip() for s in _SENTENCE.findall(text)):
        if not sentence:
            continue
        pieces = [sentence] if len(sentence) <= max_chars else _split_words(sentence, max_chars)
        for piece in pieces:
            if current and len(current) + 1 + len(piece) > max_chars:
                chunks.append(current)
                current = piece
            else:
                current = f"{current} {piece}" if current else piece
    if current:
        chunks.append(current)
    return chunks


class VoiceAdapter:
    def __init__(self, providers: Mapping[str, VoiceProvider], ffmpeg: FFmpeg, max_bytes: int):
        self.providers = dict(providers)
        self.ffmpeg = ffmpeg
        self.max_bytes = max_bytes

    def get_provider(self, name: str) -> VoiceProvider:
        try:
            return self.providers[name]
        except KeyError:
            raise UnsupportedProviderError(name, self.providers) from None

    def synthesize(self, script: str, voice: VoiceSelection, work_dir: Path) -> AudioAsset:
        provider = self.get_provider(voice.provider)
        chunks = chunk_text(script, provider.max_chars) if provider.max_chars else [script]
        if len(chunks) > 1:
            logger.info("Script split into %d chunks for %s", len(chunks), provider.name)

        total = 0
        paths = []
        for i, chunk in enumerate(chunks):
            audio = provider.synthesize(chunk, voice.voice_id, voice.settings)
            total += len(audio.content)
            if total > self.max_bytes:
                raise ResourceLimitError("synthesized voice audio", total, self.max_bytes)
            path = Path(work_dir) / f"voice_{i:03d}{SUFFIXES.get(audio.content_type, '.bin')}"
            path.write_bytes(audio.content)
            paths.append(path)

        return to_stereo_wav(self.ffmpeg, paths, Path(work_dir) / "voice.wav")
