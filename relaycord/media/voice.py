from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx
import openai
from openai import AsyncOpenAI

from relaycord.relay.models import Attachment

from .attachments import AttachmentError, download_bounded

WHISPER_MODEL = "whisper-1"
MAX_AUDIO_BYTES = 25 * 1024 * 1024  # Whisper upload limit
DOWNLOAD_TIMEOUT_SECONDS = 30.0
TRANSCRIBE_TIMEOUT_SECONDS = 60.0

AUDIO_EXTENSIONS = {
    "ogg": "audio/ogg",
    "webm": "audio/webm",
    "mp3": "audio/mpeg",
    "mpeg": "audio/mpeg",
    "mpga": "audio/mpeg",
    "m4a": "audio/mp4",
    "mp4": "audio/mp4",
    "wav": "audio/wav",
    "flac": "audio/flac",
}


def _extension(file_name: str) -> str:
    return file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""


def is_supported_audio_file(file_name: str) -> bool:
    return _extension(file_name) in AUDIO_EXTENSIONS


def audio_content_type(file_name: str) -> str:
    return AUDIO_EXTENSIONS.get(_extension(file_name), "audio/mpeg")


def first_audio_attachment(attachments: Sequence[Attachment]) -> Optional[Attachment]:
    for att in attachments:
        if att.is_audio or is_supported_audio_file(att.name):
            return att
    return None


@dataclass
class TranscriptionResult:
    success: bool
    text: str = ""
    error: str = ""
    language: Optional[str] = None
    duration_ms: int = 0


class VoiceTranscriber:
    """Voice-note transcription through OpenAI Whisper."""

    def __init__(
        self,
        api_key: str,
        http_client: httpx.AsyncClient | None = None,
        openai_client: AsyncOpenAI | None = None,
        model: str = WHISPER_MODEL,
        max_bytes: int = MAX_AUDIO_BYTES,
    ):
        if not api_key and openai_client is None:
            raise ValueError("OpenAI API key is required for voice transcription")
        self._openai = openai_client or AsyncOpenAI(api_key=api_key, timeout=TRANSCRIBE_TIMEOUT_SECONDS)
        self._owns_openai = openai_client is None
        self._http = http_client or httpx.AsyncClient(follow_redirects=True)
        self._owns_http = http_client is None
        self.model = model
        self.max_bytes = max_bytes

    async def transcribe(self, att: Attachment, language: Optional[str] = None) -> TranscriptionResult:
        started = time.perf_counter()

        def _elapsed() -> int:
            return round((time.perf_counter() - started) * 1000)

        logging.info("🎤 Transcribing audio: %s", att.name)
        try:
            data, _ = await download_bounded(self._http, att.url, self.max_bytes, DOWNLOAD_TIMEOUT_SECONDS)
            logging.info("📥 Downloaded audio: %.2fMB", len(data) / (1024 * 1024))

            kwargs = {"model": self.model, "file": (att.name or "voice.ogg", data, audio_content_type(att.name))}
            if language:
                kwargs["language"] = language
            result = await self._openai.audio.transcriptions.create(**kwargs)
        except AttachmentError as e:
            logging.error("❌ Transcription failed: %s", e)
            return TranscriptionResult(False, error=str(e), duration_ms=_elapsed())
        except openai.AuthenticationError:
            logging.error("❌ Transcription failed: invalid OpenAI API key")
            return TranscriptionResult(False, error="Invalid OpenAI API key", duration_ms=_elapsed())
        except openai.APITimeoutError:
            logging.error("❌ Transcription failed: request timeout")
            return TranscriptionResult(False, error="Request timeout - audio file may be too long", duration_ms=_elapsed())
        except openai.APIStatusError as e:
            logging.error("❌ Transcription failed: API error %s", e.status_code)
            return TranscriptionResult(False, error=f"API Error {e.status_code}: {e.message}", duration_ms=_elapsed())
        except openai.APIConnectionError:
            logging.error("❌ Transcription failed: network error")
            return TranscriptionResult(False, error="No response from OpenAI API (network error)", duration_ms=_elapsed())

        text = (getattr(result, "text", "") or "").strip()
        preview = text[:100] + ("..." if len(text) > 100 else "")
        logging.info("✅ Transcription complete: %r", preview)
        return TranscriptionResult(
            success=bool(text),
            text=text,
            error="" if text else "Empty transcription",
            language=getattr(result, "language", None),
            duration_ms=_elapsed(),
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
        if self._owns_openai:
            await self._openai.close()
