"""
Data models for site audit jobs.

Models serialize with camelCase aliases so the JSON stored in the job store
and the JSON returned to polling clients share one shape.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)

Severity = Literal["critical", "warning", "info"]
IssueCategory = Literal[
    "meta", "content", "performance", "accessibility", "technical", "mobile"
]


class Issue(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    severity: Severity
    category: IssueCategory
    title: str
    description: str
    recommendation: str


class Heading(CamelModel):
    level: int
    text: str


class ImageInfo(CamelModel):
    src: str
    alt: str
    has_alt: bool


class LinkInfo(CamelModel):
    href: str
    text: str
    is_external: bool


class CrawlResult(CamelModel):
    url: str
    final_url: str
    status_code: int
    load_time_ms: int
    ttfb_ms: Optional[int] = None
    response_size_bytes: Optional[int] = None
    is_compressed: bool = False
    has_cache_headers: bool = False
    is_https: bool = False
    title: str = ""
    meta_description: str = ""
    meta_keywords: str = ""
    canonical_url: str = ""
    robots_meta: str = ""
    og_tags: Dict[str, str] = Field(default_factory=dict)
    headings: List[Heading] = Field(default_factory=list)
    images: List[ImageInfo] = Field(default_factory=list)
    links: List[LinkInfo] = Field(default_factory=list)
    word_count: int = 0
    has_viewport_meta: bool = False
    html_lang: str = ""
    structured_data: List[Any] = Field(default_factory=list)
    body_text: str = ""
    desktop_screenshot_path: Optional[str] = None
    mobile_screenshot_path: Optional[str] = None


class LighthouseScores(CamelModel):
    performance: Optional[int] = None
    accessibility: Optional[int] = None
    best_practices: Optional[int] = None
    seo: Optional[int] = None


class CoreWebVitals(CamelModel):
    lcp: Optional[float] = None  # ms
    fid: Optional[float] = None  # ms
    cls: Optional[float] = None
    fcp: Optional[float] = None  # ms
    ttfb: Optional[float] = None  # ms


class AiContentAnalysis(CamelModel):
    content_quality: int = Field(ge=0, le=100)
    readability: int = Field(ge=0, le=100)
    keyword_relevance: int = Field(ge=0, le=100)
    recommendations: List[str] = Field(default_factory=list)
    summary: str = ""


class SuccessResult(CamelModel):
    url: str
    status: Literal["success"] = "success"
    crawl: CrawlResult
    issues: List[Issue] = Field(default_factory=list)
    lighthouse_scores: Optional[LighthouseScores] = None
    core_web_vitals: Optional[CoreWebVitals] = None
    ai_analysis: Optional[AiContentAnalysis] = None
    has_sitemap: Optional[bool] = None
    has_robots_txt: Optional[bool] = None


class ErrorResult(CamelModel):
    url: str
    status: Literal["error"] = "error"
    error: str
    issues: List[Issue] = Field(default_factory=list)


AuditResult = Annotated[Union[SuccessResult, ErrorResult], Field(discriminator="status")]


class CategoryScores(CamelModel):
    technical: int = 0
    content: int = 0
    performance: int = 0
    accessibility: int = 0


class IssueTotals(CamelModel):
    critical: int = 0
    warning: int = 0
    info: int = 0


class Summary(CamelModel):
    overall_score: int
    category_scores: CategoryScores
    top_issues: List[Issue] = Field(default_factory=list)
    executive_summary: str = ""
    total_issues: IssueTotals


class Progress(CamelModel):
    current_url: str = ""
    current_step: str = ""
    completed_urls: int = 0
    total_urls: int = 0


class AuditJob(CamelModel):
    id: str
    requester_id: str
    urls: List[str]
    language: str = "en"
    status: JobStatus = JobStatus.PENDING
    progress: Progress = Field(default_factory=Progress)
    results: List[AuditResult] = Field(default_factory=list)
    summary: Optional[Summary] = None
    report_path: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None


class UrlValidationResult(CamelModel):
    valid: bool
    urls: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
