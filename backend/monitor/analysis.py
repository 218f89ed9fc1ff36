"""Boundary to the external text-generation service.

Components:
  TextGenerator          - protocol for the single ``generate(prompt) -> text`` call
  MistralTextGenerator   - implementation backed by the Mistral chat API
  build_analysis_prompt  - renders an Overview into the analyst prompt
  parse_analysis         - pulls the JSON result out of free-form model output
  run_analysis           - overview -> prompt -> generate -> parse -> persist

Anything the service returns is validated before it reaches the database, so
a change in the model's output format fails the run instead of corrupting the
recommendation store.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import Optional, Protocol

from mistralai import Mistral
from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import aggregation, recommendations, schemas
from .database import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "mistral-small-latest"
MAX_TOKENS = 4000
TEMPERATURE = 0.2

_FENCED_BLOCK = re.compile(r"```([\w+-]*)[ \t]*\n([\s\S]*?)```")
_JSON_FENCE_TAGS = ("", "json")
_BARE_OBJECT = re.compile(r"(\{[\s\S]*\})")


class AnalysisError(Exception):
    """Raised when an analysis run cannot produce a usable result."""


class AnalysisParseError(AnalysisError):
    """Raised when the generated text does not contain a valid analysis."""


class TextGenerator(Protocol):
    model_name: str

    def generate(self, prompt: str) -> str:
        ...


class MistralTextGenerator:
    """Calls the Mistral chat completion API with a single user turn."""

    def __init__(self, client: Mistral, model: str = DEFAULT_MODEL, max_tokens: int = MAX_TOKENS) -> None:
        self._client = client
        self.model_name = model
        self._max_tokens = max_tokens

    def generate(self, prompt: str) -> str:
        logger.info("Calling Mistral API model=%s prompt_len=%d", self.model_name, len(prompt))
        response = self._client.chat.complete(
            model=self.model_name,
            messages=[{"role": "user", "content": prompt}],
            temperature=TEMPERATURE,
            max_tokens=self._max_tokens,
        )
        text = response.choices[0].message.content or ""
        logger.info("Mistral response received text_len=%d", len(text))
        return text


def _section(title: str, rows) -> str:
    payload = [row.model_dump(by_alias=True, mode="json") for row in rows]
    return f"## {title}\n{json.dumps(payload, indent=2)}"


def build_analysis_prompt(overview: schemas.Overview) -> str:
    summary = overview.summary
    performance = overview.performance.model_dump(by_alias=True, mode="json")
    sections = "\n\n".join(
        [
            _section("Feature Usage (what's being clicked)", overview.feature_usage),
            _section("Top Pages", overview.top_pages),
            _section("UX Issues (rage clicks, dead clicks)", overview.ux_issues),
            f"## Performance\n{json.dumps(performance, indent=2)}",
            _section("JavaScript Errors", overview.errors),
            _section("Device Breakdown", overview.devices),
            _section("Search Queries (what users are searching for)", overview.search_queries),
            _section("Scroll Depth Distribution", overview.scroll_depth),
            _section("Filter Usage", overview.filter_usage),
            _section("Hourly Activity Pattern", overview.hourly_activity),
        ]
    )
    categories = ", ".join(c.value for c in schemas.RecommendationCategory)
    priorities = ", ".join(p.value for p in schemas.Priority)

    return f"""You are an expert UX/UI analyst and product optimization consultant reviewing a web application.

Here is the usage analytics data from the last {overview.period.days} days:

## Summary
- Total Events: {summary.total_events}
- Total Sessions: {summary.total_sessions}
- Unique Users: {summary.unique_users}
- Avg Events/Session: {summary.avg_events_per_session}

{sections}

Based on this data, provide specific, actionable recommendations. For each recommendation, include:
1. Category (one of: {categories})
2. Priority ({priorities})
3. Title (concise)
4. Description (the issue and the recommended fix)
5. Evidence (specific data points that support this recommendation)
6. Impact (high, medium, low - expected impact on user experience)
7. Effort (high, medium, low - estimated implementation effort)

Also identify features that are rarely or never used, areas where users seem frustrated,
performance bottlenecks, workflow improvements, search patterns that suggest content gaps,
and mobile vs desktop patterns.

Format your response as JSON:
{{
  "overallScore": <1-100 score of current app health>,
  "summary": "<2-3 sentence executive summary>",
  "keyInsights": ["<insight>", ...],
  "recommendations": [
    {{
      "category": "<category>",
      "priority": "<priority>",
      "title": "<title>",
      "description": "<description>",
      "evidence": "<evidence>",
      "impact": "<high|medium|low>",
      "effort": "<high|medium|low>"
    }}
  ],
  "unusedFeatures": ["<feature>", ...],
  "frustrationPoints": ["<point>", ...],
  "positivePatterns": ["<pattern>", ...]
}}"""


def extract_json_block(text: str) -> str:
    """Return the JSON document embedded in ``text``.

    Prefers the first fenced block tagged ``json`` or left untagged, then the
    outermost brace-delimited span, and finally the whole text.
    """
    for block in _FENCED_BLOCK.finditer(text):
        if block.group(1).lower() in _JSON_FENCE_TAGS:
            return block.group(2).strip()
    match = _BARE_OBJECT.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def parse_analysis(text: str) -> schemas.AnalysisResult:
    candidate = extract_json_block(text)
    try:
        document = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise AnalysisParseError(f"Response is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise AnalysisParseError("Response JSON is not an object")
    try:
        return schemas.AnalysisResult.model_validate(document)
    except ValidationError as exc:
        raise AnalysisParseError(f"Response does not match the analysis schema: {exc}") from exc


def run_analysis(
    db: Session,
    generator: TextGenerator,
    days: int = 7,
    now: Optional[datetime] = None,
) -> schemas.AnalysisResult:
    """Generate and store recommendations for the trailing ``days`` window.

    Nothing is persisted unless the response parses completely.
    """
    now = now or utcnow()
    overview = aggregation.compute_overview(db, days=days, now=now)
    prompt = build_analysis_prompt(overview)

    try:
        text = generator.generate(prompt)
    except Exception as exc:
        logger.exception("Text generation failed model=%s", generator.model_name)
        raise AnalysisError(f"Text generation failed: {exc}") from exc

    result = parse_analysis(text)
    recommendations.save_analysis(
        db,
        result,
        summary=overview.summary,
        source_model=generator.model_name,
        generated_at=now,
    )
    logger.info(
        "Stored analysis model=%s recommendations=%d score=%s",
        generator.model_name,
        len(result.recommendations),
        result.overall_score,
    )
    return result
