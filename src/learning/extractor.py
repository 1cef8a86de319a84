"""LLM-powered insight extraction from job descriptions, SOPs and conversations."""

import json

import structlog

from cli.retry import llm_retry
from llm.base import LLMProvider

from .models import (
    ExtractedInsight,
    InsightCategory,
    InsightValidationError,
    LearningEventType,
    SourceType,
)

logger = structlog.get_logger()

_EXTRACTION_SYSTEM = """You extract durable business insights for a company knowledge base.

Given source material, extract facts about the business that stay true beyond this one document.

Rules:
- Each insight is one or two plain sentences, 10 to 1000 characters.
- Skip one-off logistics, pleasantries and anything specific to a single task.
- Assign exactly one category:
  {categories}
- Assign exactly one event_type:
  {event_types}
- Assign a confidence from 1 to 100:
  90-100: stated explicitly in the source
  80-89: strong inference
  60-79: plausible but indirect
  Below 60: do not extract
- Put structured details in "metadata" using snake_case keys where they apply:
  bottleneck, objection, core_offer, ideal_customer, primary_goal, company_stage,
  growth_indicators, hidden_complexity, new_tool, tools, implicit_need,
  cluster_name, workflow_type, complexity_score, pain_point, documentation_gap,
  process_complexity, recommended_service, service_type, decision_logic, risk,
  severity, evidence, source_section.
- Extract at most {max_insights} insights. Prefer higher confidence.
- Output ONLY a JSON array. No preamble, no markdown fences.

Example output:
[
  {{"insight": "Invoices are assembled by hand each month, delaying cash collection", "category": "business_context", "event_type": "INSIGHT_GENERATED", "confidence": 88, "metadata": {{"bottleneck": "manual invoicing"}}}},
  {{"insight": "The team coordinates daily work in Slack", "category": "workflow_patterns", "event_type": "PATTERN_DETECTED", "confidence": 92, "metadata": {{"new_tool": "Slack"}}}}
]

If there is nothing worth extracting, output: []"""

_SOURCE_CONTEXT = {
    SourceType.JOB_DESCRIPTION.value: "A job description the business wrote for a new hire.",
    SourceType.SOP_GENERATION.value: "A standard operating procedure generated for the business.",
    SourceType.CHAT_CONVERSATION.value: "A conversation between the business owner and an assistant.",
    SourceType.INITIAL_ONBOARDING.value: "Answers given during initial onboarding.",
    SourceType.MANUAL_UPDATE.value: "A manual edit made by the business owner.",
    SourceType.FILE_UPLOAD.value: "A document the business uploaded.",
    SourceType.AI_ENRICHMENT.value: "Notes produced by an automated enrichment pass.",
}

MAX_SOURCE_CHARS = 12000


def _render_source(data) -> str:
    if isinstance(data, str):
        return data
    return json.dumps(data, indent=2, default=str)


class InsightExtractor:
    """Extracts candidate insights from arbitrary source data using an LLM."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        max_insights: int = 15,
        max_attempts: int = 3,
        min_wait: float = 1.0,
        max_wait: float = 30.0,
    ):
        self._provider = provider
        self.max_insights = max_insights
        self._retry = llm_retry(max_attempts=max_attempts, min_wait=min_wait, max_wait=max_wait)

    def _get_provider(self) -> LLMProvider:
        if self._provider:
            return self._provider
        from llm.factory import create_llm_provider

        self._provider = create_llm_provider()
        return self._provider

    def extract(self, source_type: str, data, triggered_by: str | None = None) -> list[ExtractedInsight]:
        """Return validated insights; any LLM or parse failure yields []."""
        text = _render_source(data).strip()
        if len(text) < 20:
            return []

        system = _EXTRACTION_SYSTEM.format(
            categories=", ".join(c.value for c in InsightCategory),
            event_types=", ".join(t.value for t in LearningEventType),
            max_insights=self.max_insights,
        )
        context = _SOURCE_CONTEXT.get(source_type, f"Source type: {source_type}.")
        prompt = f"{context}\n\n{text[:MAX_SOURCE_CHARS]}"

        try:
            provider = self._get_provider()
            generate = self._retry(provider.generate)
            response = generate(
                messages=[{"role": "user", "content": prompt}],
                system=system,
                max_tokens=2000,
            )
        except Exception as e:
            logger.warning(
                "insight_extraction_failed",
                source_type=source_type,
                triggered_by=triggered_by,
                error=str(e),
            )
            return []

        insights = self._parse_response(response)
        logger.info("insights_extracted", source_type=source_type, count=len(insights))
        return insights

    def _parse_response(self, response: str) -> list[ExtractedInsight]:
        """Parse LLM JSON into insights, dropping items that fail validation."""
        text = (response or "").strip()
        # Strip markdown fences if present
        if text.startswith("```"):
            text = text.split("\n", 1)[-1]
        if text.endswith("```"):
            text = text.rsplit("```", 1)[0]
        text = text.strip()

        try:
            items = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("insight_parse_failed", response=text[:200])
            return []

        if not isinstance(items, list):
            return []

        insights = []
        for item in items[: self.max_insights]:
            if not isinstance(item, dict):
                continue
            try:
                insight = ExtractedInsight.from_dict(item)
                insight.validate()
            except (InsightValidationError, AttributeError) as e:
                logger.debug("insight_dropped", error=str(e))
                continue
            insights.append(insight)
        return insights
