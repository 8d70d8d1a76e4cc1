import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import urlparse

import fitz  # PyMuPDF
import httpx

from .cancellation import CancellationToken
from .config import MAX_PDF_BYTES
from .errors import NetworkError, SizeLimitExceeded, TransportError, ValidationError

logger = logging.getLogger(__name__)

USER_AGENT = "Daily-Paper-Extractor/1.0"


# ===== URL Validation =====

def validate_pdf_url(url: Optional[str], allowed_hosts: Iterable[str]) -> str:
    """Check a PDF URL without touching the network or the filesystem."""
    if not url or not isinstance(url, str):
        raise ValidationError("Invalid PDF URL")

    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValidationError(f"Invalid PDF URL: {url}")

    if parsed.hostname.lower() not in {h.lower() for h in allowed_hosts}:
        raise ValidationError("Only arxiv.org PDFs are supported")

    if not parsed.path.lower().endswith(".pdf"):
        raise ValidationError("URL must point to a .pdf document")

    return url


# ===== Scratch Artifacts =====

@dataclass
class TemporaryArtifact:
    path: Path
    size_bytes: int = 0
    released: bool = False

    def release(self) -> None:
        """Delete the file. Safe to call any number of times."""
        self.released = True
        try:
            self.path.unlink()
            logger.info(f"Cleaned up file: {self.path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to cleanup file {self.path}: {e}")


# ===== PDF Download =====

class PdfFetcher:
    def __init__(
        self,
        scratch_dir: str | Path,
        allowed_hosts: Iterable[str],
        max_bytes: int = MAX_PDF_BYTES,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.scratch_dir = Path(scratch_dir)
        self.allowed_hosts = {h.lower() for h in allowed_hosts}
        self.max_bytes = max_bytes
        self.timeout = timeout
        self._transport = transport

    def allocate(self) -> TemporaryArtifact:
        if not self.scratch_dir.exists():
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created temp directory: {self.scratch_dir}")
        return TemporaryArtifact(self.scratch_dir / f"paper_{uuid.uuid4().hex}.pdf")

    async def download(
        self,
        url: str,
        artifact: TemporaryArtifact,
        token: CancellationToken | None = None,
    ) -> Path:
        url = validate_pdf_url(url, self.allowed_hosts)
        logger.info(f"Downloading PDF from: {url}")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as resp:
                    self._check_response(resp)
                    await self._write_body(resp, artifact, token)
        except httpx.TransportError as e:
            raise NetworkError(f"Unable to reach {urlparse(url).hostname}: {e}") from e

        logger.info(f"PDF downloaded successfully: {artifact.path} ({artifact.size_bytes} bytes)")
        return artifact.path

    def _check_response(self, resp: httpx.Response) -> None:
        # Every redirect hop and the final host must pass the allow-list. The
        # path is not re-checked: arXiv drops the .pdf suffix when it redirects,
        # and the body is verified as a PDF after download.
        for hop in [*resp.history, resp]:
            if hop.url.host.lower() not in self.allowed_hosts:
                raise ValidationError(f"PDF URL redirected to a disallowed host: {hop.url.host}")

        if not resp.is_success:
            raise TransportError(f"Failed to download PDF: {resp.status_code} {resp.reason_phrase}")

        content_type = resp.headers.get("content-type", "")
        if "html" in content_type.lower():
            raise ValidationError(
                "URL returned HTML, not a PDF. The page might require authentication or the URL isn't a direct PDF link."
            )

        declared = resp.headers.get("content-length", "")
        if declared.isdigit():
            logger.info(f"PDF size: {int(declared) / (1024 * 1024):.2f} MB")
            if int(declared) > self.max_bytes:
                raise SizeLimitExceeded(self.max_bytes, int(declared))

    async def _write_body(
        self,
        resp: httpx.Response,
        artifact: TemporaryArtifact,
        token: CancellationToken | None,
    ) -> None:
        received = 0
        try:
            with artifact.path.open("wb") as f:
                async for chunk in resp.aiter_bytes():
                    if token is not None:
                        token.raise_if_cancelled("PDF download")
                    received += len(chunk)
                    # Content-Length may be missing or wrong; count what actually arrives.
                    if received > self.max_bytes:
                        raise SizeLimitExceeded(self.max_bytes, received)
                    f.write(chunk)
        except BaseException:
            artifact.path.unlink(missing_ok=True)
            raise
        artifact.size_bytes = received

    def sweep_stale(self, max_age: int = 60 * 60) -> int:
        """Remove scratch files older than ``max_age`` seconds left by missed cleanups."""
        if not self.scratch_dir.exists():
            return 0

        cutoff = time.time() - max_age
        removed = 0
        for path in self.scratch_dir.iterdir():
            try:
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
                    logger.info(f"Cleaned up old file: {path.name}")
            except FileNotFoundError:
                continue
        return removed


# ===== PDF Inspection (PyMuPDF) =====

def inspect_pdf(path: Path) -> int:
    """Return the page count, or raise ValidationError if the file is not a PDF."""
    with open(path, "rb") as f:
        if f.read(5) != b"%PDF-":
            raise ValidationError("Downloaded file is not a PDF")

    try:
        doc = fitz.open(path)
    except (fitz.FileDataError, RuntimeError) as e:
        raise ValidationError(f"Downloaded PDF could not be opened: {e}") from e

    try:
        page_count = doc.page_count
    finally:
        doc.close()

    if page_count == 0:
        raise ValidationError("Downloaded PDF has no pages")
    return page_count
