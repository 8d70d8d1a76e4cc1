import json
import logging
from pathlib import Path
from typing import Optional, Protocol

import httpx

from . import prompts
from .config import Settings
from .errors import AnalysisError, ConfigurationError, NetworkError, UploadError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://dashscope.aliyuncs.com/compatible-mode/v1"
DEFAULT_MODEL = "qwen-long"

# An analysis can legitimately run for minutes, so only connecting is bounded.
PROVIDER_TIMEOUT = httpx.Timeout(None, connect=30.0)

EVENT_DELIMITER = b"\n\n"
DONE_SENTINEL = "[DONE]"


# ===== Stream decoding =====

def split_events(buffer: bytes, chunk: bytes) -> tuple[list[bytes], bytes]:
    """Split complete events off ``buffer + chunk``; return them and the leftover partial event."""
    data = (buffer + chunk).replace(b"\r\n", b"\n")
    *events, remaining = data.split(EVENT_DELIMITER)
    return events, remaining


def event_data(event: bytes) -> Optional[str]:
    """Join the ``data:`` lines of one event, or None if it carries no data."""
    lines = []
    for line in event.decode("utf-8", errors="replace").split("\n"):
        if line.startswith("data:"):
            value = line[5:]
            lines.append(value[1:] if value.startswith(" ") else value)
    return "\n".join(lines) if lines else None


def parse_stream_payload(payload: str) -> tuple[Optional[str], Optional[str]]:
    """Return ``(delta_text, finish_reason)`` for one chat-completion chunk.

    Raises ValueError for a payload that is not JSON.
    """
    if payload.strip() == DONE_SENTINEL:
        return None, None

    parsed = json.loads(payload)
    if not isinstance(parsed, dict):
        return None, None

    # The final usage chunk (stream_options.include_usage) has an empty choices list.
    choices = parsed.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None, None

    choice = choices[0]
    delta = choice.get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return (content or None), choice.get("finish_reason")


class SSEDecoder:
    """Incremental decoder for the provider's ``data: <json>`` event stream.

    The only state is the trailing partial event, so chunk boundaries
    (even inside a multi-byte character) do not change the decoded text.
    """

    def __init__(self) -> None:
        self.buffer = b""

    def feed(self, chunk: bytes) -> list[str]:
        events, self.buffer = split_events(self.buffer, chunk)
        return self._decode(events)

    def flush(self) -> list[str]:
        remaining, self.buffer = self.buffer, b""
        if not remaining.strip():
            return []
        return self._decode([remaining])

    def _decode(self, events: list[bytes]) -> list[str]:
        deltas = []
        for event in events:
            payload = event_data(event)
            if payload is None:
                continue
            try:
                delta, finish_reason = parse_stream_payload(payload)
            except ValueError:
                logger.debug(f"Skipping malformed stream event: {payload[:200]!r}")
                continue
            if finish_reason:
                logger.info(f"Analysis complete. Reason: {finish_reason}")
            if delta:
                deltas.append(delta)
        return deltas


# ===== DashScope client =====

class AnalysisSink(Protocol):
    @property
    def cancelled(self) -> bool: ...

    def on_delta(self, text: str) -> None: ...

    def on_error(self, message: str) -> None: ...


class DashScopeClient:
    """Uploads PDFs to DashScope and streams the paper analysis back."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_key:
            raise ConfigurationError(
                "DASHSCOPE_API_KEY environment variable is required. "
                "Please set it in your .env file or environment."
            )
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> "DashScopeClient":
        return cls(
            settings.dashscope_api_key,
            base_url=settings.dashscope_base_url,
            model=settings.dashscope_model,
            transport=transport,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=PROVIDER_TIMEOUT,
            transport=self._transport,
        )

    async def upload(self, path: Path) -> str:
        """Upload a PDF for extraction and return the provider's file id."""
        logger.info(f"Uploading PDF to DashScope: {path}")
        try:
            async with self._client() as client:
                with open(path, "rb") as f:
                    resp = await client.post(
                        "/files",
                        files={"file": (Path(path).name, f, "application/pdf")},
                        data={"purpose": "file-extract"},
                    )
        except httpx.TransportError as e:
            raise NetworkError(f"Unable to reach DashScope: {e}") from e

        if not resp.is_success:
            raise UploadError(resp.status_code, resp.text)

        data = resp.json()
        file_id = data.get("id") if isinstance(data, dict) else None
        if not file_id:
            raise UploadError(resp.status_code, f"no file id in response: {resp.text}")

        logger.info(
            f"File uploaded successfully. File ID: {file_id} "
            f"(filename={data.get('filename')}, bytes={data.get('bytes')}, status={data.get('status')})"
        )
        return file_id

    async def stream_analysis(self, file_id: str, sink: AnalysisSink) -> None:
        """Stream the analysis of an uploaded file into ``sink``.

        Raises AnalysisError if the request is rejected before streaming
        starts. Once streaming, a transport failure is reported through
        ``sink.on_error`` and the call returns normally.
        """
        body = {
            "model": self.model,
            "messages": prompts.build_analysis_messages(file_id),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        decoder = SSEDecoder()
        logger.info(f"Starting AI analysis for file: {file_id}")

        try:
            async with self._client() as client:
                async with client.stream("POST", "/chat/completions", json=body) as resp:
                    if not resp.is_success:
                        await resp.aread()
                        raise AnalysisError(resp.status_code, resp.text)

                    logger.info("Streaming response from DashScope...")
                    try:
                        async for chunk in resp.aiter_bytes():
                            if sink.cancelled:
                                logger.info(f"Client gone, no longer forwarding analysis of {file_id}")
                                return
                            for delta in decoder.feed(chunk):
                                sink.on_delta(delta)
                    except httpx.TransportError as e:
                        logger.error(f"Stream error: {e!r}")
                        sink.on_error(f"Analysis stream interrupted: {e}")
                        return
        except httpx.TransportError as e:
            raise NetworkError(f"Unable to reach DashScope: {e}") from e

        for delta in decoder.flush():
            sink.on_delta(delta)
        logger.info("Stream ended")
