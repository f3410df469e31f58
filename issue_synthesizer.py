"""
Issue synthesis.

`analyze_crawl_result` turns the signals of one URL into severity-tagged
issues. `build_summary` aggregates all per-URL results into the audit
summary; it is a pure function of its inputs, so the same results always
produce the same summary.
"""

from typing import Dict, List, Mapping, Optional, Sequence

from models import (
    AiContentAnalysis,
    CategoryScores,
    CoreWebVitals,
    CrawlResult,
    ErrorResult,
    Issue,
    IssueTotals,
    LighthouseScores,
    SuccessResult,
    Summary,
)

TOP_ISSUES_LIMIT = 10

SEVERITY_ORDER = {"critical": 0, "warning": 1, "info": 2}
SEVERITY_DEDUCTIONS = {"critical": 15, "warning": 5, "info": 1}

# Issue category -> summary category
CATEGORY_MAP = {
    "meta": "technical",
    "technical": "technical",
    "mobile": "technical",
    "content": "content",
    "performance": "performance",
    "accessibility": "accessibility",
}

CATEGORY_WEIGHTS = {
    "technical": 0.30,
    "content": 0.25,
    "performance": 0.25,
    "accessibility": 0.20,
}

UNREACHABLE_TITLE = "Page could not be audited"


def _issue(severity, category, title, description, recommendation) -> Issue:
    return Issue(
        severity=severity,
        category=category,
        title=title,
        description=description,
        recommendation=recommendation,
    )


def unreachable_issue(message: str) -> Issue:
    return _issue(
        "critical",
        "technical",
        UNREACHABLE_TITLE,
        f"The page could not be crawled: {message}",
        "Make sure the URL is publicly reachable and responds within the timeout.",
    )


def _meta_issues(crawl: CrawlResult) -> List[Issue]:
    issues = []

    if not crawl.title:
        issues.append(_issue(
            "critical", "meta", "Missing title tag",
            "The page has no <title> tag.",
            "Add a descriptive title tag between 30-60 characters.",
        ))
    elif len(crawl.title) < 30:
        issues.append(_issue(
            "warning", "meta", "Title tag too short",
            f'Title is only {len(crawl.title)} characters: "{crawl.title}"',
            "Aim for 30-60 characters for optimal SEO.",
        ))
    elif len(crawl.title) > 60:
        issues.append(_issue(
            "warning", "meta", "Title tag too long",
            f"Title is {len(crawl.title)} characters and may be truncated in search results.",
            "Keep title under 60 characters.",
        ))

    description = crawl.meta_description
    if not description:
        issues.append(_issue(
            "critical", "meta", "Missing meta description",
            "No meta description tag found.",
            "Add a meta description between 120-160 characters.",
        ))
    elif len(description) < 120:
        issues.append(_issue(
            "warning", "meta", "Meta description too short",
            f"Meta description is only {len(description)} characters.",
            "Aim for 120-160 characters for optimal display.",
        ))
    elif len(description) > 160:
        issues.append(_issue(
            "warning", "meta", "Meta description too long",
            f"Meta description is {len(description)} characters and may be truncated.",
            "Keep meta description under 160 characters.",
        ))

    missing_og = [tag for tag in ("og:title", "og:description", "og:image") if not crawl.og_tags.get(tag)]
    if missing_og:
        issues.append(_issue(
            "info", "meta", "Missing Open Graph tags",
            f"Missing: {', '.join(missing_og)}",
            "Add Open Graph tags for better social media sharing.",
        ))

    return issues


def _content_issues(crawl: CrawlResult) -> List[Issue]:
    issues = []

    h1_count = len([h for h in crawl.headings if h.level == 1])
    if h1_count == 0:
        issues.append(_issue(
            "critical", "content", "Missing H1 heading",
            "No H1 heading found on the page.",
            "Add exactly one H1 heading that describes the main topic.",
        ))
    elif h1_count > 1:
        issues.append(_issue(
            "warning", "content", "Multiple H1 headings",
            f"Found {h1_count} H1 headings. Best practice is to have exactly one.",
            "Use only one H1 per page. Use H2-H6 for sub-sections.",
        ))

    # Only the first skip is reported
    previous = 0
    for heading in crawl.headings:
        if previous and heading.level > previous + 1:
            issues.append(_issue(
                "info", "content", "Heading hierarchy skip",
                f'Heading jumps from H{previous} to H{heading.level}: "{heading.text[:50]}"',
                "Use heading levels in sequential order (H1, H2, H3, etc.).",
            ))
            break
        previous = heading.level

    if crawl.word_count < 300:
        issues.append(_issue(
            "warning", "content", "Thin content",
            f"Page has only {crawl.word_count} words.",
            "Aim for at least 300 words of quality content for better rankings.",
        ))

    internal_links = [link for link in crawl.links if not link.is_external]
    if crawl.links and not internal_links:
        issues.append(_issue(
            "warning", "content", "No internal links",
            "Page has no internal links. Internal linking helps SEO.",
            "Add links to other relevant pages on your site.",
        ))

    return issues


def _technical_issues(crawl: CrawlResult) -> List[Issue]:
    issues = []

    images_without_alt = [img for img in crawl.images if not img.has_alt]
    if images_without_alt:
        issues.append(_issue(
            "warning", "accessibility", f"{len(images_without_alt)} image(s) missing alt text",
            f"Found {len(images_without_alt)} of {len(crawl.images)} images without alt attributes.",
            "Add descriptive alt text to all images for accessibility and SEO.",
        ))

    if not crawl.has_viewport_meta:
        issues.append(_issue(
            "critical", "mobile", "Missing viewport meta tag",
            "No viewport meta tag found. Mobile rendering will be affected.",
            'Add <meta name="viewport" content="width=device-width, initial-scale=1">.',
        ))

    if not crawl.canonical_url:
        issues.append(_issue(
            "warning", "technical", "Missing canonical URL",
            "No canonical link element found.",
            'Add <link rel="canonical"> to prevent duplicate content issues.',
        ))

    if crawl.status_code >= 400 or crawl.status_code == 0:
        issues.append(_issue(
            "critical", "technical", f"HTTP {crawl.status_code} error",
            f"Page returned status code {crawl.status_code}.",
            "Fix the HTTP error to ensure the page is accessible.",
        ))
    elif 300 <= crawl.status_code < 400:
        issues.append(_issue(
            "info", "technical", f"HTTP {crawl.status_code} redirect",
            f"Page returned redirect status {crawl.status_code}.",
            "Ensure redirects are intentional and update links to point to the final URL.",
        ))

    if not crawl.is_https:
        issues.append(_issue(
            "warning", "technical", "Page not served over HTTPS",
            f"The final URL {crawl.final_url} uses plain HTTP.",
            "Serve the page over HTTPS and redirect HTTP traffic to it.",
        ))

    if crawl.load_time_ms > 5000:
        issues.append(_issue(
            "warning", "performance", "Slow page load",
            f"Page took {crawl.load_time_ms / 1000:.1f}s to load.",
            "Optimize images, minimize JavaScript, and consider CDN usage.",
        ))

    if not crawl.structured_data:
        issues.append(_issue(
            "info", "technical", "No structured data",
            "No JSON-LD structured data found.",
            "Add Schema.org structured data for rich search results.",
        ))

    if "noindex" in crawl.robots_meta.lower():
        issues.append(_issue(
            "critical", "technical", "Page is set to noindex",
            'Robots meta tag contains "noindex"; search engines will not index this page.',
            "Remove noindex if this page should appear in search results.",
        ))

    return issues


def _signal_issues(
    has_sitemap: Optional[bool],
    has_robots_txt: Optional[bool],
    lighthouse: Optional[LighthouseScores],
    vitals: Optional[CoreWebVitals],
    ai_analysis: Optional[AiContentAnalysis],
) -> List[Issue]:
    issues = []

    if has_sitemap is False:
        issues.append(_issue(
            "warning", "technical", "No sitemap.xml found",
            "No accessible sitemap.xml at the domain root.",
            "Create a sitemap.xml and submit it to search engines.",
        ))
    if has_robots_txt is False:
        issues.append(_issue(
            "info", "technical", "No robots.txt found",
            "No robots.txt file at the domain root.",
            "Create a robots.txt to guide search engine crawlers.",
        ))

    if lighthouse:
        if lighthouse.performance is not None and lighthouse.performance < 50:
            issues.append(_issue(
                "warning", "performance", "Low performance score",
                f"Performance score is {lighthouse.performance}/100.",
                "Reduce page weight, defer non-critical scripts and enable caching.",
            ))
        if lighthouse.accessibility is not None and lighthouse.accessibility < 50:
            issues.append(_issue(
                "warning", "accessibility", "Low accessibility score",
                f"Accessibility score is {lighthouse.accessibility}/100.",
                "Add alt text, a document language and descriptive link texts.",
            ))

    if vitals:
        if vitals.lcp is not None and vitals.lcp > 4000:
            issues.append(_issue(
                "warning", "performance", "Slow Largest Contentful Paint",
                f"LCP is {vitals.lcp / 1000:.1f}s (good is under 2.5s).",
                "Optimize the largest above-the-fold image or text block and server response time.",
            ))
        if vitals.cls is not None and vitals.cls > 0.25:
            issues.append(_issue(
                "warning", "performance", "High Cumulative Layout Shift",
                f"CLS is {vitals.cls:.2f} (good is under 0.1).",
                "Reserve space for images, ads and embeds to prevent layout shifts.",
            ))

    if ai_analysis and ai_analysis.content_quality < 50:
        issues.append(_issue(
            "info", "content", "Low content quality",
            f"AI content quality assessment scored {ai_analysis.content_quality}/100.",
            ai_analysis.recommendations[0]
            if ai_analysis.recommendations
            else "Expand and clarify the main content around the page topic.",
        ))

    return issues


def analyze_crawl_result(
    crawl: CrawlResult,
    has_sitemap: Optional[bool] = None,
    has_robots_txt: Optional[bool] = None,
    lighthouse: Optional[LighthouseScores] = None,
    vitals: Optional[CoreWebVitals] = None,
    ai_analysis: Optional[AiContentAnalysis] = None,
) -> List[Issue]:
    """
    Derive issues for one URL from its crawl, performance and content signals.

    Returns:
        Issues in a stable order: meta, content, technical, then signals
    """
    return (
        _meta_issues(crawl)
        + _content_issues(crawl)
        + _technical_issues(crawl)
        + _signal_issues(has_sitemap, has_robots_txt, lighthouse, vitals, ai_analysis)
    )


def url_category_scores(result: SuccessResult) -> Dict[str, int]:
    """Category scores for one URL: issue deductions blended with measured signals."""
    scores = {category: 100 for category in CATEGORY_WEIGHTS}
    for issue in result.issues:
        category = CATEGORY_MAP.get(issue.category, "technical")
        scores[category] = max(0, scores[category] - SEVERITY_DEDUCTIONS[issue.severity])

    lighthouse = result.lighthouse_scores
    if lighthouse:
        for category, measured in (
            ("performance", lighthouse.performance),
            ("accessibility", lighthouse.accessibility),
            ("technical", lighthouse.seo),
        ):
            if measured is not None:
                scores[category] = round((scores[category] + measured) / 2)

    if result.ai_analysis:
        scores["content"] = round((scores["content"] + result.ai_analysis.content_quality) / 2)

    return scores


def fallback_executive_summary(results: Sequence) -> str:
    all_issues = [issue for r in results for issue in r.issues]
    critical = len([i for i in all_issues if i.severity == "critical"])
    warning = len([i for i in all_issues if i.severity == "warning"])
    successful = len([r for r in results if r.status == "success"])

    lines = [
        "## SEO Audit Summary",
        "",
        f"Audited **{len(results)}** URLs, **{successful}** successfully analyzed.",
        "",
        f"Found **{len(all_issues)}** total issues: **{critical}** critical, **{warning}** warnings.",
        "",
    ]
    if critical:
        lines.append(
            "**Immediate action required**: critical issues found that may impact "
            "search engine visibility."
        )
    else:
        lines.append("No critical issues found.")
    return "\n".join(lines)


def build_summary(results: Sequence, executive_summary: Optional[str] = None) -> Summary:
    """
    Aggregate per-URL results into the audit summary.

    Error results are excluded from score averaging but their issues still
    count towards the totals.

    Args:
        results: AuditResult entries in URL order
        executive_summary: Narrative text; a deterministic one is used if None

    Returns:
        Summary
    """
    successes = [r for r in results if isinstance(r, SuccessResult)]
    all_issues = [issue for r in results for issue in r.issues]

    per_url = [url_category_scores(r) for r in successes]
    category_scores: Dict[str, int] = {}
    for category in CATEGORY_WEIGHTS:
        values = [scores[category] for scores in per_url]
        category_scores[category] = round(sum(values) / len(values)) if values else 0

    overall = round(
        sum(category_scores[c] * weight for c, weight in CATEGORY_WEIGHTS.items())
    )

    first_seen: Dict[str, int] = {}
    unique: List[Issue] = []
    for issue in all_issues:
        if issue.title not in first_seen:
            first_seen[issue.title] = len(unique)
            unique.append(issue)

    top_issues = sorted(
        unique,
        key=lambda i: (
            SEVERITY_ORDER[i.severity],
            category_scores[CATEGORY_MAP.get(i.category, "technical")],
            first_seen[i.title],
        ),
    )[:TOP_ISSUES_LIMIT]

    return Summary(
        overall_score=overall,
        category_scores=CategoryScores(**category_scores),
        top_issues=top_issues,
        executive_summary=executive_summary or fallback_executive_summary(results),
        total_issues=IssueTotals(
            critical=len([i for i in all_issues if i.severity == "critical"]),
            warning=len([i for i in all_issues if i.severity == "warning"]),
            info=len([i for i in all_issues if i.severity == "info"]),
        ),
    )


def apply_translations(results: Sequence, translations: Mapping[str, Issue]) -> List:
    """Return results with every issue replaced by its translation, if any."""
    if not translations:
        return list(results)
    translated = []
    for result in results:
        issues = [translations.get(issue.title, issue) for issue in result.issues]
        translated.append(result.model_copy(update={"issues": issues}))
    return translated


def error_result(url: str, message: str) -> ErrorResult:
    return ErrorResult(url=url, error=message, issues=[unreachable_issue(message)])
