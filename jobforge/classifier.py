"""Two-tier job classification.

Tier 1 rates a job APPROVE / MAYBE / REJECT from a short prompt. Tier 2
writes a six-part analysis for jobs that were not rejected. Both tiers
parse free text, so the parsing here is deliberately literal: token
search for the rating, heading lines for the analysis sections.
"""
from __future__ import annotations

import re
import time
from typing import Callable, NamedTuple

from jobforge.config import AgentConfig, LLMConfiguration, ProfileTexts
from jobforge.errors import ProviderError
from jobforge.log import get_logger
from jobforge.models import (
    ANALYSIS_FIELDS,
    BasicFilterResult,
    CallMetadata,
    DetailedAnalysis,
    DetailedAnalysisResult,
    JobRecord,
    PreferenceProfile,
    Rating,
)
from jobforge.prompts import BASIC_FILTER_TEMPLATE, DETAILED_ANALYSIS_TEMPLATE, build_variables, render
from jobforge.providers import LLMProvider, build_provider
from jobforge.store import JobStore

log = get_logger(__name__)

RATING_PRECEDENCE: tuple[Rating, ...] = (Rating.APPROVE, Rating.MAYBE, Rating.REJECT)
NO_REASONING = "No reasoning provided"
NOT_SPECIFIED = "Not specified"
MAX_TOP_MATCHES = 3

# (field, heading keywords); first match wins.
FIELD_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("why_worth_reviewing", ("worth", "opportunit")),
    ("technical_challenges", ("challeng", "technical")),
    ("career_growth", ("growth", "career")),
    ("company_assessment", ("company", "assessment")),
    ("potential_concerns", ("concern", "risk", "red flag")),
    ("application_recommendations", ("recommend", "strategy")),
)

_HEADING = re.compile(r"^(?:\d+\.|[A-Z\s]+:|#)")
_HEADING_PREFIX = re.compile(r"^(?:\d+\.|#+)\s*")
_TOP_MATCHES = re.compile(r"top\s+matches\s*:?", re.I)
_BULLET = re.compile(r"^(?:[-*•]|\d+[.)])\s*")
_LABEL = re.compile(r"^[A-Za-z][A-Za-z ]{0,30}:")


def parse_rating(response: str) -> tuple[Rating, str]:
    """Case-insensitive token search, APPROVE before MAYBE before REJECT."""
    upper = response.upper()
    for rating in RATING_PRECEDENCE:
        idx = upper.find(rating.value)
        if idx >= 0:
            reasoning = response[idx + len(rating.value):].strip()
            return rating, reasoning or NO_REASONING
    return Rating.REJECT, response if response.strip() else NO_REASONING


def extract_top_matches(response: str, limit: int = MAX_TOP_MATCHES) -> list[str]:
    """Items listed after a "Top Matches" label, inline or as bullets."""
    match = _TOP_MATCHES.search(response)
    if not match:
        return []
    items: list[str] = []
    for raw in response[match.end():].splitlines():
        line = raw.strip()
        if not line:
            if items:
                break
            continue
        bulleted = bool(_BULLET.match(line))
        if items and not bulleted and _LABEL.match(line):
            break
        if bulleted:
            items.append(_BULLET.sub("", line).strip())
        else:
            items.extend(part.strip() for part in re.split(r"[;,]", line))
        if len([i for i in items if i]) >= limit:
            break
    return [i for i in items if i and not i.startswith("[")][:limit]


def field_for_heading(heading: str) -> str | None:
    name = heading.replace("*", "").lower()
    for field_name, keywords in FIELD_KEYWORDS:
        if any(k in name for k in keywords):
            return field_name
    return None


class _Section(NamedTuple):
    heading: str | None
    line: str
    inline: str
    lines: list[str]

    @property
    def body(self) -> list[str]:
        return ([self.inline] if self.inline else []) + self.lines


def _split(text: str) -> list[_Section]:
    sections = [_Section(None, "", "", [])]
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if _HEADING.match(line):
            heading = _HEADING_PREFIX.sub("", line).replace("*", "").strip()
            inline = ""
            if ":" in heading:
                heading, _, inline = heading.partition(":")
            sections.append(_Section(heading.strip(), line, inline.strip(), []))
        else:
            sections[-1].lines.append(line)
    return sections


def split_sections(text: str) -> list[tuple[str | None, str]]:
    """Split on heading lines; returns (heading, body) with heading None for a preamble."""
    return [(s.heading, "\n".join(s.body).strip()) for s in _split(text) if s.body or s.heading]


def parse_detailed_analysis(response: str) -> DetailedAnalysis:
    # A numbered point or unknown heading carries on the section above it.
    blocks: list[tuple[str | None, list[str]]] = []
    for section in _split(response):
        field_name = field_for_heading(section.heading) if section.heading else None
        if section.heading and field_name is None and blocks:
            blocks[-1][1].extend([section.line] + section.lines)
            continue
        blocks.append((field_name, section.body))
    matched = [i for i, (f, _) in enumerate(blocks) if f]

    if not matched:
        text = response.strip() or NOT_SPECIFIED
        return DetailedAnalysis(**{f: NOT_SPECIFIED for f in ANALYSIS_FIELDS} | {"why_worth_reviewing": text})

    collected: dict[str, list[str]] = {f: [] for f in ANALYSIS_FIELDS}
    for i, (field_name, lines) in enumerate(blocks):
        body = "\n".join(lines).strip()
        if not body:
            continue
        if field_name is None:
            # nearest matched section, earlier one on a tie
            nearest = min(matched, key=lambda j: (abs(j - i), j > i))
            field_name = blocks[nearest][0]
        collected[field_name].append(body)

    return DetailedAnalysis(**{
        f: "\n\n".join(parts) if parts else NOT_SPECIFIED for f, parts in collected.items()
    })


def confidence_score(response: str) -> int:
    """Coarse structural heuristic (length, line breaks, numbering, hedging).

    Not a calibrated probability: a long well-formatted answer scores high
    whether or not it is right.
    """
    score = 50
    if len(response) > 500:
        score += 20
    if "\n" in response:
        score += 10
    if re.search(r"\d+\.", response):
        score += 15
    lower = response.lower()
    if "however" in lower or "although" in lower:
        score += 10
    return max(0, min(100, score))


def fallback_analysis(error: str) -> DetailedAnalysis:
    return DetailedAnalysis(
        why_worth_reviewing=f"Error during analysis: {error}",
        technical_challenges="Unable to analyze due to error",
        career_growth="Unable to analyze due to error",
        company_assessment="Unable to analyze due to error",
        potential_concerns="Analysis failed - manual review recommended",
        application_recommendations="Review job manually due to analysis error",
    )


class TwoTierClassifier:
    """Binds Agent 1 and Agent 2 to providers and runs the two tiers.

    Provider failures never escape: Tier 1 falls back to REJECT, Tier 2
    to a placeholder analysis. Each call is recorded in the store's
    analysis log when a store is given.
    """

    def __init__(
        self,
        llm: LLMConfiguration,
        preferences: PreferenceProfile,
        texts: ProfileTexts | None = None,
        store: JobStore | None = None,
        provider_factory: Callable[[AgentConfig], LLMProvider] = build_provider,
    ) -> None:
        self.llm = llm
        self.preferences = preferences
        self.texts = texts or ProfileTexts()
        self.store = store
        self.tier1 = provider_factory(llm.agent1)
        self.tier2 = provider_factory(llm.agent2) if llm.agent2.enabled else None

    @property
    def tier1_enabled(self) -> bool:
        return self.llm.agent1.enabled

    def wants_detailed(self, rating: Rating) -> bool:
        return self.tier2 is not None and rating in (Rating.APPROVE, Rating.MAYBE)

    def _prompt(self, agent: AgentConfig, default: str, job: JobRecord) -> str:
        variables = build_variables(job, self.preferences, self.texts)
        return render(agent.prompt_template or default, variables)

    def _call(self, provider: LLMProvider, prompt: str) -> tuple[str, CallMetadata]:
        started = time.perf_counter()
        meta = CallMetadata(provider=provider.kind.value, model=provider.model)
        try:
            response = provider.generate(prompt)
        finally:
            meta.processing_time_ms = (time.perf_counter() - started) * 1000
        meta.cost_estimate = provider.estimate_cost(prompt, response)
        return response, meta

    def _record(self, job_id: str, tier: int, meta: CallMetadata, **extra) -> None:
        if self.store is None:
            return
        try:
            self.store.record_analysis(job_id, tier, meta, **extra)
        except Exception as exc:
            log.warning("Could not record tier %d call for %s: %s", tier, job_id, exc)

    def basic_filter(self, job: JobRecord) -> BasicFilterResult:
        prompt = self._prompt(self.llm.agent1, BASIC_FILTER_TEMPLATE, job)
        try:
            response, meta = self._call(self.tier1, prompt)
        except ProviderError as exc:
            log.warning("Tier 1 failed for %s (%s), rating REJECT: %s", job.id, job.title, exc)
            meta = CallMetadata(provider=self.tier1.kind.value, model=self.tier1.model)
            result = BasicFilterResult(
                job_id=job.id,
                rating=Rating.REJECT,
                reasoning=f"Basic filtering failed: {exc.message}",
                top_matches=[],
                meta=meta,
                error=str(exc),
            )
        else:
            rating, reasoning = parse_rating(response)
            result = BasicFilterResult(
                job_id=job.id,
                rating=rating,
                reasoning=reasoning,
                top_matches=extract_top_matches(response),
                meta=meta,
            )
            log.info("Tier 1: %s @ %s -> %s", job.title, job.company, rating.value)
        self._record(job.id, 1, result.meta, rating=result.rating)
        return result

    def detailed_analysis(self, job: JobRecord) -> DetailedAnalysisResult:
        if self.tier2 is None:
            raise ValueError("Tier 2 agent is disabled")
        prompt = self._prompt(self.llm.agent2, DETAILED_ANALYSIS_TEMPLATE, job)
        try:
            response, meta = self._call(self.tier2, prompt)
        except ProviderError as exc:
            log.warning("Tier 2 failed for %s (%s): %s", job.id, job.title, exc)
            result = DetailedAnalysisResult(
                job_id=job.id,
                analysis=fallback_analysis(exc.message),
                meta=CallMetadata(provider=self.tier2.kind.value, model=self.tier2.model),
                error=str(exc),
            )
        else:
            result = DetailedAnalysisResult(
                job_id=job.id,
                analysis=parse_detailed_analysis(response),
                meta=meta,
                confidence_score=confidence_score(response),
            )
            log.debug("Tier 2 analysis for %s, confidence %d", job.id, result.confidence_score)
        self._record(job.id, 2, result.meta, confidence=result.confidence_score)
        return result
