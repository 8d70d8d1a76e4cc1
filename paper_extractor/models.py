from typing import Optional

from pydantic import BaseModel

class InterpretationRequest(BaseModel):
    pdf_url: Optional[str] = None
    paper_id: Optional[str] = None
    paper_title: Optional[str] = None


# ===== Stream events =====
# Payloads of the `data: <json>` frames sent to the browser.

def stage_event(stage: str) -> dict:
    return {"status": stage}


def chunk_event(text: str) -> dict:
    return {"chunk": text}


def error_event(message: str) -> dict:
    return {"error": message}
