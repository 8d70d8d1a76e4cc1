from __future__ import annotations

import asyncio

import httpx
import pytest

from paper_extractor.catalog import CatalogClient, is_valid_date, to_paper
from paper_extractor.errors import CatalogError, CatalogUnavailable

HF_ITEM = {
    "title": "Daily title",
    "paper": {
        "id": "2509.19803",
        "title": "Paper title",
        "summary": "Paper summary",
        "authors": [{"name": "Ada Lovelace"}, {"user": {"fullname": "Alan Turing"}}, {"hidden": True}],
        "ai_keywords": ["retrieval", "query expansion"],
        "upvotes": 12,
    },
}


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2024-01-15", True),
        ("2024-02-29", True),
        ("2023-02-29", False),
        ("2024-13-01", False),
        ("2024-1-15", False),
        ("15-01-2024", False),
        ("", False),
    ],
)
def test_is_valid_date(value, expected):
    assert is_valid_date(value) is expected


def test_to_paper_maps_hf_item():
    assert to_paper(HF_ITEM, "2025-09-24") == {
        "title": "Daily title",
        "authors": ["Ada Lovelace", "Alan Turing"],
        "abstract": "Paper summary",
        "pdf_url": "https://arxiv.org/pdf/2509.19803.pdf",
        "topics": ["retrieval", "query expansion"],
        "published_date": "2025-09-24",
        "paper_id": "2509.19803",
        "upvotes": 12,
    }


def test_to_paper_defaults():
    paper = to_paper({}, "2025-09-24")
    assert paper["title"] == "Untitled"
    assert paper["abstract"] == "No abstract available"
    assert paper["pdf_url"] is None
    assert paper["topics"] == [] and paper["authors"] == []
    assert paper["upvotes"] == 0


def test_fetch_daily_papers():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[HF_ITEM])

    client = CatalogClient(transport=httpx.MockTransport(handler))
    papers = asyncio.run(client.fetch_daily_papers("2025-09-24"))

    assert [p["paper_id"] for p in papers] == ["2509.19803"]
    assert seen[0].url.path == "/api/daily_papers"
    assert seen[0].url.params["date"] == "2025-09-24"


def test_fetch_daily_papers_upstream_error():
    client = CatalogClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))

    with pytest.raises(CatalogError, match="HuggingFace API error: 500") as exc_info:
        asyncio.run(client.fetch_daily_papers("2025-09-24"))
    assert not isinstance(exc_info.value, CatalogUnavailable)


def test_fetch_daily_papers_bad_body():
    client = CatalogClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"oops": 1})))

    with pytest.raises(CatalogError, match="Invalid response format"):
        asyncio.run(client.fetch_daily_papers("2025-09-24"))


def test_fetch_daily_papers_unreachable():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = CatalogClient(transport=httpx.MockTransport(handler))

    with pytest.raises(CatalogUnavailable):
        asyncio.run(client.fetch_daily_papers("2025-09-24"))
