"""Drives one AI interpretation: download -> upload -> analyze, relayed as SSE.

The stages only ever move forward. Each one announces itself with a
``{"status": <stage>}`` event before its work starts; a failure anywhere ends
the run with exactly one ``{"error": ...}`` event. The downloaded PDF is
deleted on every way out, including a client disconnect.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from enum import Enum
from typing import Optional

from .cancellation import OperationCancelled
from .llm import DashScopeClient
from .models import InterpretationRequest, chunk_event, error_event, stage_event
from .pdf_fetch import PdfFetcher, TemporaryArtifact, inspect_pdf
from .relay import RelaySession

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    ERROR = "error"


_FORWARD_ORDER = [Stage.IDLE, Stage.DOWNLOADING, Stage.UPLOADING, Stage.ANALYZING, Stage.COMPLETE]

_STAGE_FAILURES = {
    Stage.DOWNLOADING: "PDF download failed",
    Stage.UPLOADING: "Failed to upload PDF to DashScope",
    Stage.ANALYZING: "Failed to analyze paper",
}


class InterpretationJob:
    """State of one request. Also the sink the DashScope client streams into."""

    def __init__(self, request: InterpretationRequest, session: RelaySession):
        self.request = request
        self.session = session
        self.state = Stage.IDLE
        self.error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.state in (Stage.COMPLETE, Stage.ERROR)

    @property
    def cancelled(self) -> bool:
        return self.session.token.is_cancelled()

    def advance(self, stage: Stage) -> None:
        if self.finished or _FORWARD_ORDER.index(stage) <= _FORWARD_ORDER.index(self.state):
            raise RuntimeError(f"Illegal stage transition: {self.state.value} -> {stage.value}")
        self.state = stage
        logger.info(f"[{self.request.paper_id or 'Unknown'}] stage: {stage.value}")
        self.session.send(stage_event(stage.value))

    def fail(self, message: str) -> None:
        if self.finished:
            return
        self.state = Stage.ERROR
        self.error = message
        self.session.send(error_event(message))

    # AnalysisSink

    def on_delta(self, text: str) -> None:
        if self.state is Stage.ANALYZING:
            self.session.send(chunk_event(text))

    def on_error(self, message: str) -> None:
        self.fail(message)


class InterpretationOrchestrator:
    def __init__(self, fetcher: PdfFetcher, client: DashScopeClient):
        self.fetcher = fetcher
        self.client = client

    async def run(self, request: InterpretationRequest, session: RelaySession) -> InterpretationJob:
        job = InterpretationJob(request, session)
        token = session.token
        artifact: Optional[TemporaryArtifact] = None

        logger.info(
            f"Starting AI interpretation for paper: "
            f"title={request.paper_title or 'Unknown'} id={request.paper_id or 'Unknown'} url={request.pdf_url}"
        )

        try:
            job.advance(Stage.DOWNLOADING)
            artifact = self.fetcher.allocate()
            session.on_close(artifact.release)
            await self.fetcher.download(request.pdf_url, artifact, token)
            loop = asyncio.get_event_loop()
            pages = await loop.run_in_executor(None, inspect_pdf, artifact.path)
            logger.info(f"PDF has {pages} pages")
            token.raise_if_cancelled("interpretation")

            job.advance(Stage.UPLOADING)
            file_id = await self.client.upload(artifact.path)
            token.raise_if_cancelled("interpretation")

            job.advance(Stage.ANALYZING)
            await self.client.stream_analysis(file_id, job)
            token.raise_if_cancelled("interpretation")

            if not job.finished:
                job.advance(Stage.COMPLETE)
        except OperationCancelled:
            logger.info(f"Interpretation abandoned after client disconnect (stage: {job.state.value})")
        except Exception as e:
            logger.error(f"AI interpretation error: {traceback.format_exc()}")
            job.fail(f"{_STAGE_FAILURES.get(job.state, 'AI interpretation failed')}: {e}")
        finally:
            if artifact is not None:
                artifact.release()
            session.finish()

        return job
