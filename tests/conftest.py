import asyncio
from typing import Dict, List, Optional

import pytest

import config
from blob_store import LocalBlobStore
from content_analyzer import LLMService
from database import create_tables, make_engine, make_session_factory
from issue_synthesizer import analyze_crawl_result, error_result
from job_store import JobStore
from models import CrawlResult, Heading, SuccessResult
from permissions import PermissionPolicy

PUBLIC_ADDRESSES: Dict[str, List[str]] = {
    "example.com": ["93.184.216.34", "2606:2800:220:1:248:1893:25c8:1946"],
    "www.example.com": ["93.184.216.34"],
    "example.org": ["93.184.216.34"],
    "broken.example.com": ["93.184.216.34"],
    "slow.example.com": ["93.184.216.34"],
    "internal.example.com": ["10.0.0.5"],
    "mixed.example.com": ["93.184.216.34", "127.0.0.1"],
    "metadata.example.com": ["169.254.169.254"],
}


async def fake_resolve(hostname: str) -> List[str]:
    if hostname not in PUBLIC_ADDRESSES:
        raise OSError(f"Name or service not known: {hostname}")
    return PUBLIC_ADDRESSES[hostname]


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "OPENAI_API_KEY", None)
    monkeypatch.setattr(config, "PAGESPEED_API_KEY", "")
    monkeypatch.setattr(config, "API_KEY", "")
    monkeypatch.setattr(config, "UPLOAD_DIR", str(tmp_path / "uploads"))


@pytest.fixture
def session_factory(tmp_path):
    # File-backed: store calls run on worker threads, each with its own connection
    engine = make_engine(f"sqlite:///{tmp_path / 'audits.db'}")
    create_tables(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def job_store(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def permissions():
    return PermissionPolicy.from_string("*:seo-audit:read,*:seo-audit:create,*:seo-audit:delete")


@pytest.fixture
def llm_disabled():
    return LLMService()


def make_crawl(url: str = "https://example.com/", **overrides) -> CrawlResult:
    """A crawl of a well-optimized page; override fields to introduce problems."""
    values = dict(
        url=url,
        final_url=url,
        status_code=200,
        load_time_ms=800,
        ttfb_ms=120,
        response_size_bytes=200_000,
        is_compressed=True,
        has_cache_headers=True,
        is_https=url.startswith("https://"),
        title="Example Domain - A Well Optimized Landing Page",
        meta_description=(
            "This example page has a meta description that is long enough to satisfy "
            "search engines and short enough not to be truncated in results."
        ),
        canonical_url=url,
        og_tags={"og:title": "Example", "og:description": "Example", "og:image": "https://example.com/a.png"},
        headings=[Heading(level=1, text="Example"), Heading(level=2, text="Details")],
        images=[],
        links=[{"href": "/about", "text": "About", "is_external": False}],
        word_count=650,
        has_viewport_meta=True,
        html_lang="en",
        structured_data=[{"@type": "WebSite"}],
        body_text="Example body text",
    )
    values.update(overrides)
    return CrawlResult(**values)


class FakeAgent:
    """Stands in for WebsiteAuditAgent: deterministic results, optional blocking."""

    def __init__(self, gate: Optional[asyncio.Event] = None, delay: float = 0):
        self.gate = gate
        self.delay = delay
        self.calls: List[str] = []

    async def process(self, url, job_id, index, language="en", on_step=None):
        self.calls.append(url)
        if on_step is not None:
            await on_step("Crawling")
        if self.gate is not None:
            await self.gate.wait()
        if "slow." in url:
            await asyncio.sleep(self.delay or 10)
        if "broken." in url:
            return error_result(url, "Timeout fetching page after 30s")
        if on_step is not None:
            await on_step("Analyzing performance")
            await on_step("Analyzing content")
        crawl = make_crawl(url)
        return SuccessResult(url=url, crawl=crawl, issues=analyze_crawl_result(crawl))
