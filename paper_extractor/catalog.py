import logging
import re
from datetime import date as Date

import httpx

from .errors import CatalogError, CatalogUnavailable
from .pdf_fetch import USER_AGENT

logger = logging.getLogger(__name__)

DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def is_valid_date(value: str) -> bool:
    """True for a real calendar date written as YYYY-MM-DD."""
    if not value or not DATE_RE.match(value):
        return False
    try:
        Date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _author_names(authors) -> list[str]:
    names = []
    for author in authors if isinstance(authors, list) else []:
        if not isinstance(author, dict):
            continue
        if author.get("name"):
            names.append(author["name"])
        elif (author.get("user") or {}).get("fullname"):
            names.append(author["user"]["fullname"])
    return names


def to_paper(item: dict, date: str) -> dict:
    paper = item.get("paper") or {}
    paper_id = paper.get("id")
    topics = paper.get("ai_keywords")
    return {
        "title": item.get("title") or paper.get("title") or "Untitled",
        "authors": _author_names(paper.get("authors")),
        "abstract": item.get("summary") or paper.get("summary") or "No abstract available",
        "pdf_url": f"https://arxiv.org/pdf/{paper_id}.pdf" if paper_id else None,
        "topics": topics if isinstance(topics, list) else [],
        "published_date": date,
        "paper_id": paper_id,
        "upvotes": paper.get("upvotes") or item.get("upvotes") or 0,
    }


class CatalogClient:
    """Thin proxy over the Hugging Face daily papers API."""

    def __init__(
        self,
        base_url: str = "https://huggingface.co/api",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport

    async def fetch_daily_papers(self, date: str) -> list[dict]:
        logger.info(f"Fetching papers for date: {date}")
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            ) as client:
                resp = await client.get("/daily_papers", params={"date": date})
        except httpx.TransportError as e:
            logger.error(f"Error fetching papers: {e!r}")
            raise CatalogUnavailable("Network error: Unable to reach HuggingFace API") from e

        if not resp.is_success:
            raise CatalogError(f"HuggingFace API error: {resp.status_code} - {resp.reason_phrase}")

        try:
            items = resp.json()
        except ValueError as e:
            raise CatalogError("Invalid response format from HuggingFace API") from e
        if not isinstance(items, list):
            raise CatalogError("Invalid response format from HuggingFace API")

        papers = [to_paper(item, date) for item in items if isinstance(item, dict)]
        logger.info(f"Successfully fetched {len(papers)} papers")
        return papers
