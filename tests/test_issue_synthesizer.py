from conftest import make_crawl
from issue_synthesizer import (
    UNREACHABLE_TITLE,
    analyze_crawl_result,
    apply_translations,
    build_summary,
    error_result,
    url_category_scores,
)
from models import AiContentAnalysis, CoreWebVitals, Heading, ImageInfo, Issue, LighthouseScores, SuccessResult


def titles(issues):
    return {issue.title for issue in issues}


def find(issues, title):
    return next(issue for issue in issues if issue.title == title)


def success(url="https://example.com/", **crawl_overrides):
    crawl = make_crawl(url, **crawl_overrides)
    return SuccessResult(url=url, crawl=crawl, issues=analyze_crawl_result(crawl))


def test_clean_page_has_no_issues():
    assert analyze_crawl_result(make_crawl(), has_sitemap=True, has_robots_txt=True) == []


def test_missing_title_and_description_are_critical():
    issues = analyze_crawl_result(make_crawl(title="", meta_description=""))
    assert find(issues, "Missing title tag").severity == "critical"
    assert find(issues, "Missing title tag").category == "meta"
    assert find(issues, "Missing meta description").severity == "critical"


def test_title_and_description_length_bounds():
    short = analyze_crawl_result(make_crawl(title="Short", meta_description="Too short"))
    assert {"Title tag too short", "Meta description too short"} <= titles(short)

    long = analyze_crawl_result(make_crawl(title="T" * 61, meta_description="D" * 161))
    assert {"Title tag too long", "Meta description too long"} <= titles(long)


def test_heading_rules():
    no_h1 = analyze_crawl_result(make_crawl(headings=[Heading(level=2, text="Sub")]))
    assert find(no_h1, "Missing H1 heading").severity == "critical"

    multiple = analyze_crawl_result(
        make_crawl(headings=[Heading(level=1, text="A"), Heading(level=1, text="B")])
    )
    assert "Multiple H1 headings" in titles(multiple)

    skipped = analyze_crawl_result(
        make_crawl(
            headings=[
                Heading(level=1, text="A"),
                Heading(level=3, text="C"),
                Heading(level=5, text="E"),
            ]
        )
    )
    assert len([i for i in skipped if i.title == "Heading hierarchy skip"]) == 1


def test_http_error_status_is_critical():
    issues = analyze_crawl_result(make_crawl(status_code=500))
    assert find(issues, "HTTP 500 error").severity == "critical"
    assert find(issues, "HTTP 500 error").category == "technical"


def test_redirect_status_is_info():
    assert find(analyze_crawl_result(make_crawl(status_code=301)), "HTTP 301 redirect").severity == "info"


def test_technical_rules():
    issues = analyze_crawl_result(
        make_crawl(
            has_viewport_meta=False,
            canonical_url="",
            robots_meta="noindex, nofollow",
            structured_data=[],
            load_time_ms=6200,
            word_count=120,
            images=[ImageInfo(src="/a.png", alt="", has_alt=False)],
            links=[{"href": "https://other.org/", "text": "x", "is_external": True}],
            og_tags={},
        ),
        has_sitemap=False,
        has_robots_txt=False,
    )
    assert find(issues, "Missing viewport meta tag").category == "mobile"
    assert find(issues, "Page is set to noindex").severity == "critical"
    assert find(issues, "1 image(s) missing alt text").category == "accessibility"
    assert find(issues, "Slow page load").category == "performance"
    assert find(issues, "No sitemap.xml found").severity == "warning"
    assert find(issues, "No robots.txt found").severity == "info"
    assert {
        "Missing canonical URL",
        "No structured data",
        "Thin content",
        "No internal links",
        "Missing Open Graph tags",
    } <= titles(issues)


def test_plain_http_is_flagged():
    issues = analyze_crawl_result(make_crawl("http://example.com/"))
    assert "Page not served over HTTPS" in titles(issues)


def test_signal_rules():
    issues = analyze_crawl_result(
        make_crawl(),
        lighthouse=LighthouseScores(performance=30, accessibility=40, best_practices=90, seo=90),
        vitals=CoreWebVitals(lcp=5200, cls=0.4),
        ai_analysis=AiContentAnalysis(content_quality=30, readability=60, keyword_relevance=50),
    )
    assert {
        "Low performance score",
        "Low accessibility score",
        "Slow Largest Contentful Paint",
        "High Cumulative Layout Shift",
        "Low content quality",
    } <= titles(issues)


def test_analysis_is_deterministic():
    crawl = make_crawl(title="", headings=[], word_count=10)
    assert analyze_crawl_result(crawl) == analyze_crawl_result(crawl)


def test_error_result_carries_unreachable_issue():
    result = error_result("https://broken.example.com/", "Connection refused")
    assert result.status == "error"
    assert result.issues[0].title == UNREACHABLE_TITLE
    assert result.issues[0].severity == "critical"


def test_category_scores_deduct_and_blend():
    result = success(title="")
    scores = url_category_scores(result)
    # One critical meta issue counts against technical
    assert scores["technical"] == 85
    assert scores["content"] == 100

    blended = result.model_copy(
        update={"lighthouse_scores": LighthouseScores(performance=50, accessibility=80, seo=75)}
    )
    scores = url_category_scores(blended)
    assert scores["performance"] == 75
    assert scores["accessibility"] == 90
    assert scores["technical"] == 80


def test_summary_excludes_error_urls_from_scores():
    results = [success(), error_result("https://broken.example.com/", "timeout")]
    summary = build_summary(results, "Narrative")

    assert summary.category_scores.technical == 100
    assert summary.overall_score == 100
    assert summary.total_issues.critical == 1
    assert summary.executive_summary == "Narrative"
    assert summary.top_issues[0].title == UNREACHABLE_TITLE


def test_summary_with_only_errors_scores_zero():
    summary = build_summary([error_result("https://broken.example.com/", "timeout")])
    assert summary.overall_score == 0
    assert summary.category_scores.content == 0
    assert "Audited **1** URLs" in summary.executive_summary


def test_summary_overall_weights():
    result = success(title="", word_count=100)
    summary = build_summary([result])
    scores = summary.category_scores
    expected = round(
        scores.technical * 0.30
        + scores.content * 0.25
        + scores.performance * 0.25
        + scores.accessibility * 0.20
    )
    assert summary.overall_score == expected


def test_top_issues_unique_sorted_and_capped():
    results = [
        success(f"https://example.com/p{i}", title="", meta_description="", headings=[], word_count=10,
                canonical_url="", structured_data=[], og_tags={}, has_viewport_meta=False,
                status_code=404, robots_meta="noindex")
        for i in range(3)
    ]
    summary = build_summary(results)

    top_titles = [issue.title for issue in summary.top_issues]
    assert len(top_titles) == len(set(top_titles))
    assert len(top_titles) <= 10
    severities = [issue.severity for issue in summary.top_issues]
    order = {"critical": 0, "warning": 1, "info": 2}
    assert severities == sorted(severities, key=order.get)


def test_summary_is_deterministic():
    results = [success(title=""), success("https://example.org/", word_count=10)]
    assert build_summary(results) == build_summary(results)


def test_apply_translations():
    original = error_result("https://broken.example.com/", "timeout")
    translated_issue = Issue(
        severity="critical",
        category="technical",
        title="Seite konnte nicht geprüft werden",
        description="Beschreibung",
        recommendation="Empfehlung",
    )
    [translated] = apply_translations([original], {UNREACHABLE_TITLE: translated_issue})
    assert translated.issues[0].title == "Seite konnte nicht geprüft werden"
    assert original.issues[0].title == UNREACHABLE_TITLE
