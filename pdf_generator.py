import base64
import re
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

import bleach
import jinja2
from markdown import markdown
from weasyprint import CSS, HTML
from weasyprint.text.fonts import FontConfiguration

from blob_store import LocalBlobStore
from models import AuditJob, Summary

SEVERITY_LABELS = {"critical": "Critical", "warning": "Warning", "info": "Info"}

ALLOWED_TAGS = [
    "h2", "h3", "h4", "p", "br", "strong", "em", "ul", "ol", "li",
    "blockquote", "code", "table", "thead", "tbody", "tr", "th", "td", "a",
]
ALLOWED_ATTRIBUTES = {"a": ["href", "title"], "*": ["class"]}


def score_class(score: Optional[int]) -> str:
    """CSS class for a 0-100 score: good, average, poor or unknown."""
    if score is None:
        return "unknown"
    if score >= 90:
        return "good"
    if score >= 50:
        return "average"
    return "poor"


def severity_breakdown(counts: Mapping[str, int]) -> List[Dict[str, Any]]:
    """Issue-count chart rows; bar widths are relative to the largest count."""
    largest = max((counts.get(severity, 0) for severity in SEVERITY_LABELS), default=0)
    return [
        {
            "severity": severity,
            "label": label,
            "count": counts.get(severity, 0),
            "width": round(counts.get(severity, 0) * 100 / largest) if largest else 0,
        }
        for severity, label in SEVERITY_LABELS.items()
    ]


class PDFGenerator:
    def __init__(self):
        self.font_config = FontConfiguration()

    def render_audit_report(
        self,
        job: AuditJob,
        results: Sequence[Any],
        summary: Summary,
        blob_store: Optional[LocalBlobStore] = None,
    ) -> bytes:
        """Generate the audit report PDF for a finished job"""
        template_data = {
            "title": "SEO Audit Report",
            "urls": job.urls,
            "language": job.language,
            "summary": summary,
            "executive_summary": self._convert_markdown_to_html(summary.executive_summary),
            "categories": [
                ("Technical", summary.category_scores.technical),
                ("Content", summary.category_scores.content),
                ("Performance", summary.category_scores.performance),
                ("Accessibility", summary.category_scores.accessibility),
            ],
            "severity_breakdown": severity_breakdown(summary.total_issues.model_dump()),
            "pages": [self._page_data(result, blob_store) for result in results],
            "created_at": self._format_date(job.created_at),
            "generated_at": datetime.now().strftime("%B %d, %Y at %I:%M %p"),
            "severity_labels": SEVERITY_LABELS,
        }

        html_doc = HTML(string=self._render_template(template_data))
        css_doc = CSS(string=self._get_pdf_styles(), font_config=self.font_config)
        return html_doc.write_pdf(stylesheets=[css_doc], font_config=self.font_config)

    def _page_data(self, result, blob_store: Optional[LocalBlobStore]) -> Dict[str, Any]:
        page: Dict[str, Any] = {
            "url": result.url,
            "status": result.status,
            "issues": list(result.issues),
            "error": getattr(result, "error", None),
            "scores": [],
            "vitals": [],
            "ai": None,
            "screenshots": [],
            "severity_breakdown": severity_breakdown(Counter(issue.severity for issue in result.issues)),
        }
        if result.status != "success":
            return page

        lighthouse = result.lighthouse_scores
        if lighthouse:
            page["scores"] = [
                ("Performance", lighthouse.performance),
                ("Accessibility", lighthouse.accessibility),
                ("Best Practices", lighthouse.best_practices),
                ("SEO", lighthouse.seo),
            ]

        vitals = result.core_web_vitals
        if vitals:
            page["vitals"] = [
                ("LCP", self._format_ms(vitals.lcp)),
                ("FID", self._format_ms(vitals.fid)),
                ("CLS", f"{vitals.cls:.3f}" if vitals.cls is not None else "N/A"),
                ("FCP", self._format_ms(vitals.fcp)),
                ("TTFB", self._format_ms(vitals.ttfb)),
            ]

        page["ai"] = result.ai_analysis
        page["crawl"] = result.crawl

        if blob_store is not None:
            for label, path in (
                ("Desktop", result.crawl.desktop_screenshot_path),
                ("Mobile", result.crawl.mobile_screenshot_path),
            ):
                data_uri = self._image_data_uri(blob_store, path)
                if data_uri:
                    page["screenshots"].append({"label": label, "src": data_uri})
        return page

    def _image_data_uri(self, blob_store: LocalBlobStore, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        data = blob_store.get(path)
        if not data:
            return None
        return "data:image/png;base64," + base64.b64encode(data).decode("ascii")

    def _format_ms(self, value: Optional[float]) -> str:
        if value is None:
            return "N/A"
        if value >= 1000:
            return f"{value / 1000:.2f} s"
        return f"{int(value)} ms"

    def _format_date(self, value: Optional[datetime]) -> str:
        if value is None:
            return ""
        return value.strftime("%B %d, %Y")

    def _convert_markdown_to_html(self, markdown_content: str) -> str:
        """Convert the executive summary markdown to sanitized HTML"""
        if not markdown_content:
            return ""

        html = markdown(
            markdown_content,
            extensions=["markdown.extensions.tables", "markdown.extensions.sane_lists"],
        )
        # The report has its own title
        html = re.sub(r"<h1[^>]*>.*?</h1>", "", html, flags=re.IGNORECASE | re.DOTALL)

        return bleach.clean(html, tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES, strip=True)

    def _render_template(self, data: Dict[str, Any]) -> str:
        """Render the report HTML"""
        template_str = """
        <!DOCTYPE html>
        <html lang="{{ language }}">
        <head>
            <meta charset="UTF-8">
            <title>{{ title }}</title>
        </head>
        <body>
            {% macro score_bars(rows) %}
            <table class="chart-table">
                {% for name, score in rows %}
                <tr>
                    <td class="chart-name">{{ name }}</td>
                    <td class="chart-bar">
                        <div class="bar"><div class="bar-fill score-{{ score_class(score) }}" style="width: {{ score or 0 }}%"></div></div>
                    </td>
                    <td class="chart-value">{{ score if score is not none else "N/A" }}</td>
                </tr>
                {% endfor %}
            </table>
            {% endmacro %}

            {% macro severity_chart(rows) %}
            <table class="chart-table severity-chart">
                {% for row in rows %}
                <tr>
                    <td class="chart-name">{{ row.label }}</td>
                    <td class="chart-bar">
                        <div class="bar"><div class="bar-fill severity-{{ row.severity }}" style="width: {{ row.width }}%"></div></div>
                    </td>
                    <td class="chart-value">{{ row.count }}</td>
                </tr>
                {% endfor %}
            </table>
            {% endmacro %}

            <header class="cover">
                <h1 class="report-title">{{ title }}</h1>
                <p class="report-meta">{{ urls | length }} URL(s) audited{% if created_at %} &middot; {{ created_at }}{% endif %}</p>
                <div class="overall score-{{ score_class(summary.overall_score) }}">
                    <span class="overall-value">{{ summary.overall_score }}</span>
                    <span class="overall-label">Overall score</span>
                </div>

                {{ score_bars(categories) }}

                <h2>Issues by Severity</h2>
                {{ severity_chart(severity_breakdown) }}
            </header>

            {% if executive_summary %}
            <section class="executive-summary">
                <h2>Executive Summary</h2>
                {{ executive_summary | safe }}
            </section>
            {% endif %}

            {% if summary.top_issues %}
            <section class="top-issues">
                <h2>Top Issues</h2>
                <ol>
                    {% for issue in summary.top_issues %}
                    <li><span class="badge badge-{{ issue.severity }}">{{ severity_labels[issue.severity] }}</span> {{ issue.title }}</li>
                    {% endfor %}
                </ol>
            </section>
            {% endif %}

            {% for page in pages %}
            <section class="page-section">
                <h2 class="page-url">{{ page.url }}</h2>

                {% if page.status != "success" %}
                <p class="page-error">This page could not be audited: {{ page.error }}</p>
                {% else %}
                <p class="page-meta">
                    HTTP {{ page.crawl.status_code }} &middot; {{ page.crawl.load_time_ms }} ms &middot; {{ page.crawl.word_count }} words
                </p>

                {% if page.scores %}
                <h3>Lighthouse Scores</h3>
                {{ score_bars(page.scores) }}
                {% endif %}

                {% if page.vitals %}
                <h3>Core Web Vitals</h3>
                <table class="vitals-table">
                    {% for name, value in page.vitals %}
                    <tr><th>{{ name }}</th><td>{{ value }}</td></tr>
                    {% endfor %}
                </table>
                {% endif %}

                {% if page.ai %}
                <h3>Content Analysis</h3>
                <p>
                    Quality {{ page.ai.content_quality }}/100 &middot;
                    Readability {{ page.ai.readability }}/100 &middot;
                    Keyword relevance {{ page.ai.keyword_relevance }}/100
                </p>
                {% if page.ai.summary %}<p class="ai-summary">{{ page.ai.summary }}</p>{% endif %}
                {% if page.ai.recommendations %}
                <ul>
                    {% for recommendation in page.ai.recommendations %}
                    <li>{{ recommendation }}</li>
                    {% endfor %}
                </ul>
                {% endif %}
                {% endif %}
                {% endif %}

                {% if page.issues %}
                <h3>Issues ({{ page.issues | length }})</h3>
                {{ severity_chart(page.severity_breakdown) }}
                {% for issue in page.issues %}
                <div class="issue issue-{{ issue.severity }}">
                    <div class="issue-title">
                        <span class="badge badge-{{ issue.severity }}">{{ severity_labels[issue.severity] }}</span>
                        {{ issue.title }} <span class="issue-category">{{ issue.category }}</span>
                    </div>
                    <p class="issue-description">{{ issue.description }}</p>
                    <p class="issue-recommendation">{{ issue.recommendation }}</p>
                </div>
                {% endfor %}
                {% endif %}

                {% if page.screenshots %}
                <div class="screenshots">
                    {% for shot in page.screenshots %}
                    <figure class="screenshot screenshot-{{ shot.label | lower }}">
                        <img src="{{ shot.src }}" alt="{{ shot.label }} screenshot" />
                        <figcaption>{{ shot.label }}</figcaption>
                    </figure>
                    {% endfor %}
                </div>
                {% endif %}
            </section>
            {% endfor %}

            <footer class="generated">Generated {{ generated_at }}</footer>
        </body>
        </html>
        """

        environment = jinja2.Environment(autoescape=True)
        environment.globals["score_class"] = score_class
        return environment.from_string(template_str).render(**data)

    def _get_pdf_styles(self) -> str:
        """CSS for the report"""
        return """
        @page {
            size: A4;
            margin: 0.6in;
            @bottom-center {
                content: "Page " counter(page) " of " counter(pages);
                font-size: 9pt;
                color: #666;
            }
        }

        body {
            font-family: 'Helvetica', 'Arial', sans-serif;
            color: #222;
            font-size: 10pt;
            line-height: 1.5;
        }

        h2 {
            color: #2c5aa0;
            font-size: 15pt;
            border-bottom: 2px solid #e0e6f0;
            padding-bottom: 4pt;
        }

        h3 {
            font-size: 12pt;
            margin: 12pt 0 4pt 0;
        }

        .cover {
            text-align: center;
            padding-bottom: 16pt;
            border-bottom: 3px solid #2c5aa0;
        }

        .report-title {
            font-size: 26pt;
            color: #2c5aa0;
            margin: 0 0 4pt 0;
        }

        .report-meta {
            color: #666;
        }

        .overall {
            display: inline-block;
            width: 110pt;
            height: 110pt;
            border-radius: 55pt;
            border: 8pt solid #999;
            margin: 14pt auto;
            padding-top: 22pt;
        }

        .overall-value {
            display: block;
            font-size: 32pt;
            font-weight: bold;
        }

        .overall-label {
            display: block;
            font-size: 9pt;
            color: #666;
        }

        .overall.score-good { border-color: #0c8a3e; }
        .overall.score-average { border-color: #e69a00; }
        .overall.score-poor { border-color: #d1302f; }

        .chart-table {
            width: 80%;
            margin: 0 auto 8pt auto;
            border-collapse: collapse;
        }

        .chart-name {
            text-align: left;
            width: 25%;
            padding: 3pt 0;
        }

        .chart-value {
            text-align: right;
            width: 10%;
            font-weight: bold;
        }

        .bar {
            background: #eceff4;
            height: 9pt;
            border-radius: 4pt;
        }

        .bar-fill {
            height: 9pt;
            border-radius: 4pt;
            background: #999;
        }

        .bar-fill.score-good { background: #0c8a3e; }
        .bar-fill.score-average, .bar-fill.severity-warning { background: #e69a00; }
        .bar-fill.score-poor, .bar-fill.severity-critical { background: #d1302f; }
        .bar-fill.severity-info { background: #2c7be5; }

        .badge {
            display: inline-block;
            padding: 1pt 6pt;
            border-radius: 3pt;
            font-size: 8pt;
            font-weight: bold;
            color: #fff;
            background: #777;
        }

        .badge-critical { background: #d1302f; }
        .badge-warning { background: #e69a00; }
        .badge-info { background: #2c7be5; }

        .page-section {
            page-break-before: always;
        }

        .page-url {
            font-size: 13pt;
            word-break: break-all;
        }

        .page-error {
            color: #d1302f;
            font-weight: bold;
        }

        .page-meta, .issue-category, .generated {
            color: #666;
        }

        .vitals-table th {
            text-align: left;
            padding-right: 12pt;
        }

        .issue {
            border-left: 3pt solid #ccc;
            padding: 2pt 8pt;
            margin: 6pt 0;
            page-break-inside: avoid;
        }

        .issue-critical { border-left-color: #d1302f; }
        .issue-warning { border-left-color: #e69a00; }
        .issue-info { border-left-color: #2c7be5; }

        .issue-title {
            font-weight: bold;
        }

        .issue-description, .issue-recommendation {
            margin: 2pt 0;
        }

        .issue-recommendation {
            font-style: italic;
        }

        .screenshots {
            margin-top: 10pt;
        }

        .screenshot {
            display: inline-block;
            vertical-align: top;
            margin: 0 8pt 0 0;
        }

        .screenshot-desktop img { width: 360pt; }
        .screenshot-mobile img { width: 110pt; }

        figcaption {
            font-size: 8pt;
            color: #666;
            text-align: center;
        }

        .generated {
            margin-top: 24pt;
            font-size: 8pt;
            text-align: center;
        }
        """
