"""
AI-assisted content analysis.

Wraps an OpenAI chat model behind LangChain prompt chains. Every public
method degrades to None (or leaves its input untouched) when no API key is
configured or the model call keeps failing; callers never see an exception.
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import ChatOpenAI

import config
from models import AiContentAnalysis, CrawlResult, Issue

logger = logging.getLogger(__name__)

MAX_PROMPT_CHARS = 8000
MAX_RECOMMENDATIONS = 10

LANGUAGE_NAMES = {
    "en": "English",
    "hu": "Hungarian",
    "de": "German",
    "fr": "French",
    "es": "Spanish",
    "it": "Italian",
    "pt": "Portuguese",
    "nl": "Dutch",
    "pl": "Polish",
    "cs": "Czech",
    "sk": "Slovak",
    "ro": "Romanian",
    "hr": "Croatian",
    "sr": "Serbian",
    "bg": "Bulgarian",
    "ru": "Russian",
    "uk": "Ukrainian",
    "ja": "Japanese",
    "zh": "Chinese",
    "ko": "Korean",
}

CONTENT_PROMPT = ChatPromptTemplate.from_template(
    """You are an expert SEO content auditor. Analyze this web page for content quality.
Write "summary" and "recommendations" in {language}. Respond ONLY with JSON in this format:

```json
{{
    "contentQuality": 0-100,
    "readability": 0-100,
    "keywordRelevance": 0-100,
    "recommendations": ["Recommendation in {language}"],
    "summary": "2-3 sentence summary in {language}"
}}
```

Page URL: {url}
Title: {title}
Meta Description: {meta_description}
Word Count: {word_count}

Headings:
{headings}

Body Text (truncated):
{body_text}"""
)

EXECUTIVE_SUMMARY_PROMPT = ChatPromptTemplate.from_template(
    """Write a concise executive summary (in markdown) for an SEO audit of {url_count} URLs.

IMPORTANT: Write the entire summary in {language}.

Issue breakdown: {critical} critical, {warning} warnings, {info} informational

URL summaries:
{url_summaries}

Top critical issues:
{top_issues}

Write 2-3 paragraphs in {language} covering:
1. Overall SEO health assessment
2. Key areas that need immediate attention
3. Recommended next steps

Keep it under 300 words. Use markdown formatting."""
)

TRANSLATE_PROMPT = ChatPromptTemplate.from_template(
    """Translate these SEO audit findings into {language}. Keep technical terms (HTML, meta, sitemap, robots.txt, h1, alt, etc.) untranslated.
Respond ONLY with a JSON array with the same structure, order and count as the input.

Input:
{entries}"""
)


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code)


def extract_json(text: str, array: bool = False) -> Any:
    """Pull the first JSON object (or array) out of a model response."""
    block = re.search(r"```(?:json)?\s*([\[{][\s\S]*?[\]}])\s*```", text)
    if block:
        return json.loads(block.group(1))
    match = re.search(r"\[[\s\S]*\]" if array else r"\{[\s\S]*\}", text)
    if not match:
        raise ValueError("No JSON found in model response")
    return json.loads(match.group(0))


def _score(value: Any) -> int:
    try:
        return max(0, min(100, int(round(float(value)))))
    except (TypeError, ValueError):
        return 0


class LLMService:
    """Service for interacting with the LLM."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        llm: Optional[BaseChatModel] = None,
        timeout: Optional[float] = None,
        retry_attempts: int = 2,
    ):
        self.timeout = timeout or config.SEO_AI_TIMEOUT
        self.retry_attempts = retry_attempts
        self.llm = llm

        if self.llm is None:
            api_key = api_key or config.OPENAI_API_KEY
            if not api_key:
                logger.warning("OPENAI_API_KEY not set. AI content analysis is disabled.")
                return
            self.model = model or config.OPENAI_MODEL
            logger.info(f"Using OpenAI model: {self.model}")
            self.llm = ChatOpenAI(
                model=self.model,
                temperature=0.3,
                streaming=False,
                api_key=api_key,
                timeout=self.timeout,
                max_retries=0,
            )

    @property
    def enabled(self) -> bool:
        return self.llm is not None

    async def _complete(self, prompt: ChatPromptTemplate, variables: Dict[str, Any]) -> str:
        """Run prompt | llm | parser, retrying a failed call once with backoff."""
        chain = (prompt | self.llm | StrOutputParser()).with_retry(
            stop_after_attempt=self.retry_attempts,
            wait_exponential_jitter=True,
        )
        # Two attempts plus the backoff between them
        deadline = self.timeout * self.retry_attempts + 10
        return await asyncio.wait_for(chain.ainvoke(variables), timeout=deadline)

    async def analyze_page_content(
        self, crawl: CrawlResult, language: str = "en"
    ) -> Optional[AiContentAnalysis]:
        """
        Assess content quality, readability and keyword relevance of a page.

        Args:
            crawl: Crawl result of the page
            language: Language code for the summary and recommendations

        Returns:
            AiContentAnalysis with 0-100 scores, or None if analysis failed
        """
        if not self.enabled:
            return None

        headings = "\n".join(f"{'#' * h.level} {h.text}" for h in crawl.headings)
        try:
            output_text = await self._complete(
                CONTENT_PROMPT,
                {
                    "language": language_name(language),
                    "url": crawl.url,
                    "title": crawl.title or "No title",
                    "meta_description": crawl.meta_description or "No meta description",
                    "word_count": crawl.word_count,
                    "headings": headings or "None",
                    "body_text": crawl.body_text[:MAX_PROMPT_CHARS],
                },
            )
            data = extract_json(output_text)
            recommendations = data.get("recommendations")
            return AiContentAnalysis(
                content_quality=_score(data.get("contentQuality")),
                readability=_score(data.get("readability")),
                keyword_relevance=_score(data.get("keywordRelevance")),
                recommendations=(
                    [str(r) for r in recommendations[:MAX_RECOMMENDATIONS]]
                    if isinstance(recommendations, list)
                    else []
                ),
                summary=data.get("summary") if isinstance(data.get("summary"), str) else "",
            )
        except Exception as e:
            logger.error(f"AI content analysis failed for {crawl.url}: {str(e)}")
            return None

    async def generate_executive_summary(
        self, results: Sequence[Any], language: str = "en"
    ) -> Optional[str]:
        """Markdown narrative for the whole audit, or None if unavailable."""
        if not self.enabled:
            return None

        all_issues = [issue for r in results for issue in r.issues]
        url_summaries = []
        for r in results:
            line = f"- {r.url}: {len(r.issues)} issues, {'FAILED' if r.status == 'error' else 'OK'}"
            scores = getattr(r, "lighthouse_scores", None)
            if scores:
                line += f", Performance: {scores.performance}, SEO: {scores.seo}"
            url_summaries.append(line)
        top_issues = [
            f"- [{i.category}] {i.title}: {i.description}"
            for i in all_issues
            if i.severity == "critical"
        ][:5]

        try:
            text = await self._complete(
                EXECUTIVE_SUMMARY_PROMPT,
                {
                    "language": language_name(language),
                    "url_count": len(results),
                    "critical": len([i for i in all_issues if i.severity == "critical"]),
                    "warning": len([i for i in all_issues if i.severity == "warning"]),
                    "info": len([i for i in all_issues if i.severity == "info"]),
                    "url_summaries": "\n".join(url_summaries),
                    "top_issues": "\n".join(top_issues) or "None",
                },
            )
            return text.strip() or None
        except Exception as e:
            logger.error(f"AI executive summary failed: {str(e)}")
            return None

    async def translate_issues(self, issues: Sequence[Issue], language: str) -> Dict[str, Issue]:
        """
        Translate issue texts in a single batched call.

        Returns:
            Mapping of original title to translated Issue; empty when the
            language is English, the LLM is disabled or translation failed
        """
        if language == "en" or not issues or not self.enabled:
            return {}

        unique: Dict[str, Issue] = {}
        for issue in issues:
            unique.setdefault(issue.title, issue)
        originals = list(unique.values())
        entries = [
            {"title": i.title, "description": i.description, "recommendation": i.recommendation}
            for i in originals
        ]

        try:
            text = await self._complete(
                TRANSLATE_PROMPT,
                {
                    "language": language_name(language),
                    "entries": json.dumps(entries, indent=2, ensure_ascii=False),
                },
            )
            translated = extract_json(text, array=True)
            if not isinstance(translated, list) or len(translated) != len(originals):
                logger.warning("Issue translation returned a mismatched list; keeping originals")
                return {}
            mapping: Dict[str, Issue] = {}
            for original, item in zip(originals, translated):
                mapping[original.title] = original.model_copy(
                    update={
                        "title": str(item.get("title") or original.title),
                        "description": str(item.get("description") or original.description),
                        "recommendation": str(item.get("recommendation") or original.recommendation),
                    }
                )
            return mapping
        except Exception as e:
            logger.error(f"Issue translation failed: {str(e)}")
            return {}
