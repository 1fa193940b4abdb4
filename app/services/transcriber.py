"""
Speech-to-text for surgical recordings via the Deepgram pre-recorded API.

Deepgram is asked for diarized utterances so the evaluator can tell the
speakers apart; each utterance becomes one "[Speaker N] (12.34s): text" line.
Every failure is raised as a TranscriberError subclass.
"""

import json
import logging
import time
from typing import Iterator, List, Optional, Protocol
import httpx

from app.core.config import settings
from app.core.exceptions import EmptyTranscriptError, StorageError, TranscriptionError
from app.core.storage import StorageBackend, get_content_type

logger = logging.getLogger(__name__)


class Transcriber(Protocol):
    def transcribe(self, media_ref: str) -> str:
        ...


def format_utterances(utterances: List[dict]) -> str:
    lines = []
    for utt in utterances:
        text = (utt.get("transcript") or "").strip()
        if not text:
            continue
        start = float(utt.get("start") or 0.0)
        lines.append(f"[Speaker {utt.get('speaker', 0)}] ({start:.2f}s): {text}")
    return "\n".join(lines)


class DeepgramTranscriber:
    """
    Transcriber backed by Deepgram.

    Remote refs (http(s) URLs, presigned S3 URLs) are passed to Deepgram to
    fetch itself; local files are streamed in the request body.
    """

    def __init__(
        self,
        storage: StorageBackend,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.storage = storage
        self.api_key = api_key if api_key is not None else settings.DEEPGRAM_API_KEY
        self.model = model or settings.DEEPGRAM_MODEL
        self.base_url = (base_url or settings.DEEPGRAM_API_BASE).rstrip("/")
        self.timeout = timeout or settings.TRANSCRIPTION_TIMEOUT_SECONDS
        self.http_client = http_client

    def _params(self) -> dict:
        return {
            "model": self.model,
            "diarize": "true",
            "punctuate": "true",
            "utterances": "true",
        }

    def _bounded_chunks(self, media_ref: str, deadline: float) -> Iterator[bytes]:
        for chunk in self.storage.iter_chunks(media_ref):
            if time.monotonic() > deadline:
                raise TranscriptionError(f"Upload to Deepgram exceeded {self.timeout:g} seconds")
            yield chunk

    def _post(self, client: httpx.Client, media_ref: str, deadline: float) -> httpx.Response:
        headers = {"Authorization": f"Token {self.api_key}"}
        url = f"{self.base_url}/listen"

        fetch_url = self.storage.get_fetch_url(media_ref)
        if fetch_url:
            return client.post(url, params=self._params(), headers=headers, json={"url": fetch_url})

        headers["Content-Type"] = get_content_type(media_ref)
        return client.post(url, params=self._params(), headers=headers, content=self._bounded_chunks(media_ref, deadline))

    def transcribe(self, media_ref: str) -> str:
        """
        Transcribe the media behind `media_ref`.

        Returns:
            Speaker/time-annotated transcript, one utterance per line

        Raises:
            TranscriptionError: Request, vendor or storage failure, or the
                upload ran past the transcription timeout
            EmptyTranscriptError: Deepgram found no speech
        """
        if not self.api_key:
            raise TranscriptionError("Deepgram API key is not configured")

        logger.info(f"Starting transcription for {media_ref}")
        # httpx timeouts apply per read/write; the stream itself is bounded by the deadline
        deadline = time.monotonic() + self.timeout
        client = self.http_client or httpx.Client(timeout=self.timeout)
        try:
            response = self._post(client, media_ref, deadline)
        except httpx.TimeoutException:
            raise TranscriptionError("Deepgram request timed out")
        except httpx.HTTPError as e:
            raise TranscriptionError(f"Deepgram request failed: {e}")
        except StorageError as e:
            raise TranscriptionError(f"Could not read media: {e.message}")
        finally:
            if self.http_client is None:
                client.close()

        if response.status_code != 200:
            body = response.text[:300] if response.text else "No response body"
            raise TranscriptionError(f"Deepgram returned {response.status_code}: {body}")

        try:
            data = response.json()
        except json.JSONDecodeError:
            raise TranscriptionError("Failed to parse Deepgram response JSON")

        utterances = (data.get("results") or {}).get("utterances") or []
        transcript = format_utterances(utterances)
        if not transcript.strip():
            logger.warning(f"Deepgram returned no utterances for {media_ref}")
            raise EmptyTranscriptError()

        logger.info(f"Transcription complete for {media_ref}: {len(utterances)} utterances")
        return transcript
