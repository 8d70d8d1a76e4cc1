from __future__ import annotations

import asyncio
import threading

import pytest

from conftest import PDF_URL, ArxivStub, RecordingSession, delta_frame
from paper_extractor import interpretation
from paper_extractor.interpretation import InterpretationJob, InterpretationOrchestrator, Stage
from paper_extractor.llm import DashScopeClient
from paper_extractor.models import InterpretationRequest
from paper_extractor.pdf_fetch import PdfFetcher

STAGES = [{"status": "downloading"}, {"status": "uploading"}, {"status": "analyzing"}]


def _orchestrator(scratch_dir, arxiv, provider, **fetch_kwargs) -> InterpretationOrchestrator:
    fetcher = PdfFetcher(scratch_dir, ["arxiv.org"], transport=arxiv.transport, **fetch_kwargs)
    return InterpretationOrchestrator(fetcher, DashScopeClient("sk-test", transport=provider.transport))


def _run(orchestrator, session=None, url=PDF_URL):
    async def scenario():
        s = session or RecordingSession()
        job = await orchestrator.run(InterpretationRequest(pdf_url=url, paper_id="2509.19803"), s)
        return s, job

    return asyncio.run(scenario())


def test_successful_run_emits_stages_deltas_then_complete(scratch_dir, arxiv, provider):
    session, job = _run(_orchestrator(scratch_dir, arxiv, provider))

    assert session.sent == STAGES + [{"chunk": "Hello"}, {"chunk": " world"}, {"status": "complete"}]
    assert job.state is Stage.COMPLETE
    assert list(scratch_dir.iterdir()) == []


def test_upload_failure_is_single_terminal_error(scratch_dir, arxiv, provider):
    provider.upload_status = 500

    session, job = _run(_orchestrator(scratch_dir, arxiv, provider))

    assert session.sent == STAGES[:2] + [
        {"error": "Failed to upload PDF to DashScope: Upload failed: 500 - bad upload"}
    ]
    assert job.state is Stage.ERROR
    assert list(scratch_dir.iterdir()) == []


def test_rejected_analysis_request_is_reported(scratch_dir, arxiv, provider):
    provider.chat_status = 401

    session, job = _run(_orchestrator(scratch_dir, arxiv, provider))

    assert session.sent == STAGES + [{"error": "Failed to analyze paper: Analysis failed: 401 - quota exceeded"}]
    assert list(scratch_dir.iterdir()) == []


def test_broken_provider_stream_ends_with_error_not_complete(scratch_dir, arxiv, provider):
    provider.chunks = [delta_frame("partial")]
    provider.break_stream = True

    session, job = _run(_orchestrator(scratch_dir, arxiv, provider))

    assert session.sent[:4] == STAGES + [{"chunk": "partial"}]
    assert len(session.sent) == 5
    assert "error" in session.sent[-1]
    assert job.state is Stage.ERROR
    assert list(scratch_dir.iterdir()) == []


def test_oversized_download_aborts_with_size_error(scratch_dir, provider):
    arxiv = ArxivStub(b"%PDF-" + b"0" * 10_000)
    arxiv.chunk_size = 512

    session, job = _run(_orchestrator(scratch_dir, arxiv, provider, max_bytes=2048))

    assert session.sent[0] == {"status": "downloading"}
    assert len(session.sent) == 2
    assert "too large" in session.sent[1]["error"]
    assert provider.requests == []
    assert list(scratch_dir.iterdir()) == []


def test_non_pdf_download_fails_before_upload(scratch_dir, provider):
    arxiv = ArxivStub(b"definitely not a pdf")

    session, job = _run(_orchestrator(scratch_dir, arxiv, provider))

    assert session.sent == [{"status": "downloading"}, {"error": "PDF download failed: Downloaded file is not a PDF"}]
    assert provider.requests == []


def test_disconnect_mid_analysis_releases_artifact_and_stops_forwarding(scratch_dir, arxiv, provider):
    session = RecordingSession()
    scratch_at_disconnect = []
    provider.chunks = [delta_frame("Hello"), delta_frame(" world"), delta_frame("!")]

    def disconnect(index):
        if index == 1:
            session.close()
            scratch_at_disconnect.extend(scratch_dir.iterdir())

    provider.on_chunk = disconnect

    session, job = _run(_orchestrator(scratch_dir, arxiv, provider), session=session)

    assert scratch_at_disconnect == []
    assert session.sent == STAGES + [{"chunk": "Hello"}]
    assert job.state is Stage.ANALYZING
    assert job.error is None
    assert list(scratch_dir.iterdir()) == []


def test_stages_only_move_forward():
    async def scenario():
        job = InterpretationJob(InterpretationRequest(pdf_url=PDF_URL), RecordingSession())
        job.advance(Stage.DOWNLOADING)
        job.advance(Stage.UPLOADING)
        with pytest.raises(RuntimeError):
            job.advance(Stage.DOWNLOADING)
        with pytest.raises(RuntimeError):
            job.advance(Stage.UPLOADING)
        job.fail("boom")
        job.fail("again")
        with pytest.raises(RuntimeError):
            job.advance(Stage.ANALYZING)
        return job

    job = asyncio.run(scenario())

    assert job.session.sent == [{"status": "downloading"}, {"status": "uploading"}, {"error": "boom"}]


def test_deltas_before_analyzing_are_ignored():
    async def scenario():
        job = InterpretationJob(InterpretationRequest(pdf_url=PDF_URL), RecordingSession())
        job.on_delta("early")
        return job

    assert asyncio.run(scenario()).session.sent == []


def test_pdf_inspection_runs_off_the_event_loop(scratch_dir, arxiv, provider, monkeypatch):
    seen = []

    def inspect(path):
        seen.append(threading.get_ident())
        return 1

    monkeypatch.setattr(interpretation, "inspect_pdf", inspect)

    session, job = _run(_orchestrator(scratch_dir, arxiv, provider))

    assert job.state is Stage.COMPLETE
    assert seen and seen[0] != threading.get_ident()
