from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Optional

import fitz  # PyMuPDF
import httpx
import pytest

from paper_extractor.config import Settings
from paper_extractor.relay import RelaySession

PDF_URL = "https://arxiv.org/pdf/2509.19803.pdf"


def make_pdf(pages: int = 2) -> bytes:
    doc = fitz.open()
    for _ in range(pages):
        doc.new_page()
    data = doc.tobytes()
    doc.close()
    return data


def delta_frame(text: str, finish_reason: Optional[str] = None) -> bytes:
    payload = {"choices": [{"delta": {"content": text}, "finish_reason": finish_reason}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


def parse_frames(body: str) -> list[dict]:
    return [json.loads(frame[len("data: "):]) for frame in body.split("\n\n") if frame.startswith("data: ")]


class ArxivStub:
    """Serves the PDF downloads."""

    def __init__(self, body: bytes):
        self.body = body
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.content_type = "application/pdf"
        self.chunk_size: Optional[int] = None  # stream without Content-Length when set

    async def _chunks(self):
        for i in range(0, len(self.body), self.chunk_size):
            yield self.body[i:i + self.chunk_size]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="nope")
        content = self._chunks() if self.chunk_size else self.body
        return httpx.Response(200, headers={"content-type": self.content_type}, content=content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class ProviderStub:
    """Fake DashScope compatible-mode API: /files and /chat/completions."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.upload_status = 200
        self.chat_status = 200
        self.chunks: list[bytes] = [delta_frame("Hello"), delta_frame(" world"), b"data: [DONE]\n\n"]
        self.break_stream = False
        self.on_chunk: Optional[Callable[[int], None]] = None

    async def _stream(self):
        for i, chunk in enumerate(self.chunks):
            if self.on_chunk is not None:
                self.on_chunk(i)
            yield chunk
        if self.break_stream:
            raise httpx.ReadError("connection reset by peer")

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/files"):
            if self.upload_status != 200:
                return httpx.Response(self.upload_status, text="bad upload")
            return httpx.Response(
                200, json={"id": "file-fe-123", "filename": "paper.pdf", "bytes": 1024, "status": "processed"}
            )
        if request.url.path.endswith("/chat/completions"):
            if self.chat_status != 200:
                return httpx.Response(self.chat_status, text="quota exceeded")
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=self._stream())
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class RecordingSession(RelaySession):
    """RelaySession that also remembers every payload it accepted."""

    def __init__(self, heartbeat_interval: float = 30.0):
        super().__init__(heartbeat_interval)
        self.sent: list[dict] = []

    def send(self, payload: dict) -> bool:
        accepted = super().send(payload)
        if accepted:
            self.sent.append(payload)
        return accepted


@pytest.fixture
def pdf_bytes() -> bytes:
    return make_pdf()


@pytest.fixture
def scratch_dir(tmp_path: Path) -> Path:
    return tmp_path / "scratch"


@pytest.fixture
def settings(scratch_dir: Path) -> Settings:
    return Settings(
        dashscope_api_key="sk-test",
        scratch_dir=str(scratch_dir),
        heartbeat_interval=30.0,
    )


@pytest.fixture
def arxiv(pdf_bytes: bytes) -> ArxivStub:
    return ArxivStub(pdf_bytes)


@pytest.fixture
def provider() -> ProviderStub:
    return ProviderStub()
