"""
LangGraph agent that audits a single URL.

The workflow runs Crawl -> Performance -> Content -> Issues in sequence.
A crawl failure ends the graph early and the agent returns an error result;
every later stage degrades instead of failing.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, TypedDict

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from content_analyzer import LLMService
from errors import CrawlError
from issue_synthesizer import analyze_crawl_result, error_result
from models import AiContentAnalysis, CrawlResult, Issue, SuccessResult
from performance_analyzer import PerformanceAnalyzer, PerformanceReport
from site_crawler import SiteCrawler

logger = logging.getLogger(__name__)

StepCallback = Callable[[str], Awaitable[None]]

STEP_CRAWLING = "Crawling"
STEP_PERFORMANCE = "Analyzing performance"
STEP_CONTENT = "Analyzing content"


# ============================================================================
# State Definition
# ============================================================================


class UrlAuditState(TypedDict):
    """State for the per-URL audit workflow."""

    url: str
    job_id: str
    index: int
    language: str
    crawl: Optional[CrawlResult]
    has_sitemap: Optional[bool]
    has_robots_txt: Optional[bool]
    performance: Optional[PerformanceReport]
    ai_analysis: Optional[AiContentAnalysis]
    issues: List[Issue]
    status: str
    error: Optional[str]


async def _report_step(config: RunnableConfig, step: str) -> None:
    on_step = (config or {}).get("configurable", {}).get("on_step")
    if on_step is not None:
        await on_step(step)


# ============================================================================
# Agent
# ============================================================================


class WebsiteAuditAgent:
    """LangGraph agent producing one AuditResult per URL."""

    def __init__(
        self,
        crawler: SiteCrawler,
        performance: PerformanceAnalyzer,
        llm_service: LLMService,
    ):
        self.crawler = crawler
        self.performance = performance
        self.llm_service = llm_service
        self.graph = self._build_graph()
        logger.info("Website Audit Agent initialized")

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def crawl_node(self, state: UrlAuditState, config: RunnableConfig) -> UrlAuditState:
        """Fetch the page, screenshot it and check sitemap/robots.txt."""
        await _report_step(config, STEP_CRAWLING)
        url = state["url"]
        try:
            crawl = await self.crawler.crawl(url, state["job_id"], state["index"])
        except CrawlError as e:
            logger.warning(f"Crawl failed for {url}: {str(e)}")
            return {**state, "status": "error", "error": str(e)}
        except Exception as e:
            logger.error(f"Unexpected crawl error for {url}: {str(e)}", exc_info=True)
            return {**state, "status": "error", "error": str(e)}

        origin = crawl.final_url or url
        has_sitemap, has_robots_txt = await asyncio.gather(
            self.crawler.check_sitemap(origin),
            self.crawler.check_robots_txt(origin),
        )
        return {
            **state,
            "crawl": crawl,
            "has_sitemap": has_sitemap,
            "has_robots_txt": has_robots_txt,
            "status": "crawled",
        }

    async def performance_node(self, state: UrlAuditState, config: RunnableConfig) -> UrlAuditState:
        await _report_step(config, STEP_PERFORMANCE)
        try:
            report = await self.performance.analyze(state["crawl"])
        except Exception as e:
            # Missing metrics are shown as unavailable
            logger.error(f"Performance analysis failed for {state['url']}: {str(e)}")
            report = None
        return {**state, "performance": report, "status": "performance_analyzed"}

    async def content_node(self, state: UrlAuditState, config: RunnableConfig) -> UrlAuditState:
        await _report_step(config, STEP_CONTENT)
        analysis = await self.llm_service.analyze_page_content(state["crawl"], state["language"])
        return {**state, "ai_analysis": analysis, "status": "content_analyzed"}

    async def issues_node(self, state: UrlAuditState) -> UrlAuditState:
        performance = state.get("performance")
        issues = analyze_crawl_result(
            state["crawl"],
            has_sitemap=state.get("has_sitemap"),
            has_robots_txt=state.get("has_robots_txt"),
            lighthouse=performance.lighthouse_scores if performance else None,
            vitals=performance.core_web_vitals if performance else None,
            ai_analysis=state.get("ai_analysis"),
        )
        return {**state, "issues": issues, "status": "completed"}

    @staticmethod
    def after_crawl(state: UrlAuditState) -> Literal["continue", "end"]:
        return "end" if state.get("status") == "error" else "continue"

    # ------------------------------------------------------------------
    # Graph Construction
    # ------------------------------------------------------------------

    def _build_graph(self):
        workflow = StateGraph(UrlAuditState)

        workflow.add_node("crawl", self.crawl_node)
        workflow.add_node("performance", self.performance_node)
        workflow.add_node("content", self.content_node)
        workflow.add_node("issues", self.issues_node)

        workflow.add_edge(START, "crawl")
        workflow.add_conditional_edges(
            "crawl",
            self.after_crawl,
            {"continue": "performance", "end": END},
        )
        workflow.add_edge("performance", "content")
        workflow.add_edge("content", "issues")
        workflow.add_edge("issues", END)

        # No checkpointer: every run is a one-shot audit
        return workflow.compile()

    # ------------------------------------------------------------------
    # Agent Interface
    # ------------------------------------------------------------------

    async def process(
        self,
        url: str,
        job_id: str,
        index: int,
        language: str = "en",
        on_step: Optional[StepCallback] = None,
    ):
        """
        Audit one URL.

        Args:
            url: Validated URL
            job_id: Owning job (screenshot namespace)
            index: Position of the URL in the batch
            language: Language code for AI output
            on_step: Awaited with the name of each stage as it starts

        Returns:
            SuccessResult, or ErrorResult if the page could not be crawled
        """
        initial_state: UrlAuditState = {
            "url": url,
            "job_id": job_id,
            "index": index,
            "language": language,
            "crawl": None,
            "has_sitemap": None,
            "has_robots_txt": None,
            "performance": None,
            "ai_analysis": None,
            "issues": [],
            "status": "initialized",
            "error": None,
        }
        config: Dict[str, Any] = {"configurable": {"on_step": on_step}}
        final_state = await self.graph.ainvoke(initial_state, config=config)

        if final_state.get("status") == "error" or final_state.get("crawl") is None:
            return error_result(url, final_state.get("error") or "Unknown error occurred")

        performance = final_state.get("performance")
        return SuccessResult(
            url=url,
            crawl=final_state["crawl"],
            issues=final_state["issues"],
            lighthouse_scores=performance.lighthouse_scores if performance else None,
            core_web_vitals=performance.core_web_vitals if performance else None,
            ai_analysis=final_state.get("ai_analysis"),
            has_sitemap=final_state.get("has_sitemap"),
            has_robots_txt=final_state.get("has_robots_txt"),
        )


# ============================================================================
# Factory Function
# ============================================================================


def create_agent(
    crawler: SiteCrawler,
    performance: PerformanceAnalyzer,
    llm_service: LLMService,
) -> WebsiteAuditAgent:
    """Factory function to create a new website audit agent instance."""
    return WebsiteAuditAgent(crawler, performance, llm_service)
