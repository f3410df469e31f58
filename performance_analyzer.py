"""
Lighthouse-style scores and Core Web Vitals for one crawled page.

With a PageSpeed Insights API key the real Lighthouse categories and lab
metrics are used. Whatever the API does not provide is estimated from the
crawl itself; a metric that cannot be computed is None.
"""

import asyncio
import logging
import math
from typing import Any, Callable, Dict, Optional

import aiohttp
from pydantic import BaseModel

import config
from models import CoreWebVitals, CrawlResult, LighthouseScores

logger = logging.getLogger(__name__)

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
PAGESPEED_CATEGORIES = ("performance", "accessibility", "best-practices", "seo")

VITALS_AUDITS = {
    "lcp": "largest-contentful-paint",
    "fid": "max-potential-fid",
    "cls": "cumulative-layout-shift",
    "fcp": "first-contentful-paint",
    "ttfb": "server-response-time",
}


class PerformanceReport(BaseModel):
    lighthouse_scores: LighthouseScores
    core_web_vitals: CoreWebVitals


def _clamp(score: float) -> int:
    return max(0, min(100, int(round(score))))


def estimate_performance(crawl: CrawlResult) -> int:
    """Load-time and page-size based score: 75% speed, 25% size."""
    seconds = crawl.load_time_ms / 1000
    if seconds < 0.5:
        speed_score = 100
    elif seconds < 1.0:
        speed_score = 95
    elif seconds < 1.5:
        speed_score = 85
    elif seconds < 2.0:
        speed_score = 75
    elif seconds < 3.0:
        speed_score = 60
    elif seconds < 5.0:
        speed_score = 40
    elif seconds < 10.0:
        speed_score = 20
    else:
        speed_score = 10

    bonus = 0
    if crawl.is_compressed:
        bonus += 3
    if crawl.has_cache_headers:
        bonus += 2
    speed_score = min(100, speed_score + bonus)

    if crawl.response_size_bytes:
        size_mb = crawl.response_size_bytes / (1024 * 1024)
        if size_mb < 0.5:
            size_score = 100
        elif size_mb < 1.0:
            size_score = 95
        elif size_mb < 2.0:
            size_score = 80
        elif size_mb < 3.0:
            size_score = 60
        elif size_mb < 5.0:
            size_score = 40
        elif size_mb < 10.0:
            size_score = 20
        else:
            size_score = 10
    else:
        size_score = 50

    return _clamp(speed_score * 0.75 + size_score * 0.25)


def estimate_accessibility(crawl: CrawlResult) -> int:
    score = 100.0
    if crawl.images:
        missing = len([img for img in crawl.images if not img.has_alt])
        score -= 40 * missing / len(crawl.images)
    if not crawl.html_lang:
        score -= 15
    if not crawl.has_viewport_meta:
        score -= 15
    if not any(h.level == 1 for h in crawl.headings):
        score -= 10
    if any(not link.text for link in crawl.links):
        score -= 10
    return _clamp(score)


def estimate_best_practices(crawl: CrawlResult) -> int:
    score = 100
    if not crawl.is_https:
        score -= 30
    if crawl.status_code >= 400:
        score -= 30
    if not crawl.is_compressed:
        score -= 10
    if not crawl.has_cache_headers:
        score -= 10
    if not crawl.has_viewport_meta:
        score -= 10
    return _clamp(score)


def estimate_seo(crawl: CrawlResult) -> int:
    score = 100
    if not crawl.title:
        score -= 25
    if not crawl.meta_description:
        score -= 20
    if not any(h.level == 1 for h in crawl.headings):
        score -= 15
    if not crawl.canonical_url:
        score -= 10
    if "noindex" in crawl.robots_meta.lower():
        score -= 30
    if crawl.status_code >= 400:
        score -= 30
    return _clamp(score)


ESTIMATORS: Dict[str, Callable[[CrawlResult], int]] = {
    "performance": estimate_performance,
    "accessibility": estimate_accessibility,
    "best_practices": estimate_best_practices,
    "seo": estimate_seo,
}


def _number(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_pagespeed_response(data: Dict[str, Any]) -> Dict[str, Dict[str, Optional[float]]]:
    """Map a PageSpeed Insights response onto score and vitals dictionaries."""
    lighthouse = data.get("lighthouseResult", {})
    categories = lighthouse.get("categories", {})
    audits = lighthouse.get("audits", {})

    scores: Dict[str, Optional[float]] = {}
    for key in PAGESPEED_CATEGORIES:
        score = _number(categories.get(key, {}).get("score"))
        scores[key.replace("-", "_")] = _clamp(score * 100) if score is not None else None

    vitals: Dict[str, Optional[float]] = {}
    for field, audit_id in VITALS_AUDITS.items():
        vitals[field] = _number(audits.get(audit_id, {}).get("numericValue"))

    return {"scores": scores, "vitals": vitals}


class PerformanceAnalyzer:
    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key if api_key is not None else config.PAGESPEED_API_KEY
        self.timeout = timeout or config.SEO_PAGESPEED_TIMEOUT

    async def fetch_pagespeed(self, url: str) -> Optional[Dict[str, Any]]:
        """Query PageSpeed Insights. Returns None on any failure."""
        if not self.api_key:
            return None
        params = [("url", url), ("strategy", "mobile"), ("key", self.api_key)]
        params += [("category", category.upper().replace("-", "_")) for category in PAGESPEED_CATEGORIES]
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as session:
                async with session.get(PAGESPEED_API_URL, params=params) as response:
                    if response.status != 200:
                        logger.warning(f"PageSpeed API returned {response.status} for {url}")
                        return None
                    return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"PageSpeed API failed for {url}: {str(e)}")
            return None

    async def analyze(self, crawl: CrawlResult) -> PerformanceReport:
        """
        Score one crawled page.

        Never raises: a metric that cannot be determined is None.
        """
        measured = {"scores": {}, "vitals": {}}
        data = await self.fetch_pagespeed(crawl.final_url or crawl.url)
        if data:
            try:
                measured = parse_pagespeed_response(data)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Unexpected PageSpeed payload for {crawl.url}: {str(e)}")

        scores: Dict[str, Optional[int]] = {}
        for key, estimator in ESTIMATORS.items():
            value = measured["scores"].get(key)
            if value is None:
                try:
                    value = estimator(crawl)
                except Exception as e:
                    logger.warning(f"Could not estimate {key} for {crawl.url}: {str(e)}")
                    value = None
            scores[key] = value

        vitals = dict(measured["vitals"])
        if vitals.get("ttfb") is None and crawl.ttfb_ms is not None:
            vitals["ttfb"] = float(crawl.ttfb_ms)

        return PerformanceReport(
            lighthouse_scores=LighthouseScores(**scores),
            core_web_vitals=CoreWebVitals(**vitals),
        )
