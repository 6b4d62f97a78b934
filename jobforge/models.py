"""Data models for jobs, feeds, preferences and classifier results."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from jobforge.status import JobStatus


class Rating(str, Enum):
    REJECT = "REJECT"
    MAYBE = "MAYBE"
    APPROVE = "APPROVE"


class TravelWillingness(str, Enum):
    LIMITED = "limited"
    MODERATE = "moderate"
    EXTENSIVE = "extensive"


@dataclass
class CandidateJob:
    """A posting extracted from a feed, before dedup or persistence."""
    unique_id: str
    title: str
    company: str
    description: str
    source_url: str
    source_name: str
    location: str | None = None
    salary_range: str | None = None
    published_date: str | None = None
    feed_id: str | None = None


@dataclass
class DetailedAnalysis:
    why_worth_reviewing: str = ""
    technical_challenges: str = ""
    career_growth: str = ""
    company_assessment: str = ""
    potential_concerns: str = ""
    application_recommendations: str = ""

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DetailedAnalysis":
        return cls(**{k: str(data.get(k) or "") for k in cls.__dataclass_fields__})


ANALYSIS_FIELDS: tuple[str, ...] = tuple(DetailedAnalysis.__dataclass_fields__)


@dataclass
class JobRecord:
    id: str
    unique_id: str
    title: str
    company: str
    description: str
    source_url: str
    source_name: str
    status: JobStatus = JobStatus.NEW
    location: str | None = None
    salary_range: str | None = None
    published_date: str | None = None
    rating: Rating | None = None
    reasoning: str | None = None
    top_matches: list[str] = field(default_factory=list)
    detailed_analysis: DetailedAnalysis | None = None
    emailed: bool = False
    processing_error: str | None = None
    created_at: str = ""
    updated_at: str = ""
    date_processed: str | None = None


@dataclass
class FeedSource:
    id: str
    url: str
    name: str
    enabled: bool = True
    last_fetched: str | None = None
    last_fetch_status: str | None = None  # "success" | "error"
    last_error: str | None = None
    job_count: int = 0


@dataclass
class PreferenceProfile:
    preferred_locations: list[str] = field(default_factory=list)
    work_mode: list[str] = field(default_factory=list)
    career_level: list[str] = field(default_factory=list)
    tech_stack: list[str] = field(default_factory=list)
    company_size: list[str] = field(default_factory=list)
    travel_willingness: TravelWillingness = TravelWillingness.LIMITED
    salary_range: str = ""
    currency: str = "GBP"

    def salary_bounds(self) -> tuple[str, str]:
        """Split "40000-80000" into ("40000", "80000"); a single amount is a minimum."""
        raw = (self.salary_range or "").strip()
        if "-" in raw:
            low, _, high = raw.partition("-")
            return low.strip(), high.strip()
        return raw, ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PreferenceProfile":
        def _list(key: str) -> list[str]:
            value = data.get(key) or []
            if isinstance(value, str):
                value = [value]
            return list(dict.fromkeys(str(v).strip() for v in value if str(v).strip()))

        return cls(
            preferred_locations=_list("preferred_locations"),
            work_mode=_list("work_mode"),
            career_level=_list("career_level"),
            tech_stack=_list("tech_stack"),
            company_size=_list("company_size"),
            travel_willingness=TravelWillingness(str(data.get("travel_willingness") or "limited").lower()),
            salary_range=str(data.get("salary_range") or ""),
            currency=str(data.get("currency") or "GBP"),
        )


@dataclass
class ProcessingRunStats:
    run_date: str
    jobs_processed: int = 0
    jobs_approved: int = 0
    jobs_filtered: int = 0
    jobs_emailed: int = 0
    errors_count: int = 0
    processing_time_seconds: float = 0.0


@dataclass
class CallMetadata:
    """Latency and cost of one model call; informational only."""
    provider: str
    model: str
    processing_time_ms: float = 0.0
    cost_estimate: float = 0.0


@dataclass
class BasicFilterResult:
    job_id: str
    rating: Rating
    reasoning: str
    top_matches: list[str]
    meta: CallMetadata
    error: str | None = None


@dataclass
class DetailedAnalysisResult:
    job_id: str
    analysis: DetailedAnalysis
    meta: CallMetadata
    confidence_score: int = 0
    error: str | None = None
