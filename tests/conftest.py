"""Shared fixtures: a file-backed store, fake providers and a fake feed gateway."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Iterator

import pytest

from jobforge.config import AgentConfig, LLMConfiguration, PipelineSettings
from jobforge.errors import FeedError
from jobforge.feeds import FeedGateway
from jobforge.models import CandidateJob, FeedSource, PreferenceProfile
from jobforge.providers import OllamaProvider, ProviderKind
from jobforge.store import JobStore

FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeProvider(OllamaProvider):
    """Answers from a callable or a fixed string; records every prompt."""

    def __init__(self, agent: AgentConfig, reply: str | Callable[[str], str] = "REJECT") -> None:
        super().__init__(agent)
        self.reply = reply
        self.prompts: list[str] = []

    def _complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if callable(self.reply):
            return self.reply(prompt)
        return self.reply

    def _probe(self) -> dict[str, Any]:
        return {"fake": True}


class FakeGateway(FeedGateway):
    """Serves canned candidates per feed id instead of fetching over HTTP."""

    def __init__(self, store: JobStore, items: dict[str, list[CandidateJob] | Exception]) -> None:
        super().__init__(store, PipelineSettings(feed_pacing_seconds=0))
        self.items = items
        self.reads: list[str] = []

    def read(self, feed: FeedSource) -> Iterator[CandidateJob]:
        self.reads.append(feed.id)
        items = self.items.get(feed.id, [])
        if isinstance(items, Exception):
            raise FeedError(feed.name, str(items))
        yield from items


def make_candidate(n: int = 1, **overrides: Any) -> CandidateJob:
    data = dict(
        unique_id=f"guid-{n}",
        title=f"Backend Engineer {n}",
        company=f"Company {n}",
        description="Python, PostgreSQL and AWS. Location: London",
        source_url=f"https://jobs.example.com/{n}",
        source_name="Example Feed",
        location="London",
    )
    data.update(overrides)
    return CandidateJob(**data)


def make_agent(name: str, *, enabled: bool = True, provider: ProviderKind = ProviderKind.OLLAMA,
               model: str = "llama3.1:8b", **kw: Any) -> AgentConfig:
    return AgentConfig(name=name, provider=provider, model=model, enabled=enabled, **kw)


@pytest.fixture
def no_sleep(monkeypatch) -> list[float]:
    """Record retry back-off delays instead of sleeping."""
    delays: list[float] = []
    monkeypatch.setattr("jobforge.retry.time.sleep", delays.append)
    return delays


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store(tmp_path, clock) -> Iterator[JobStore]:
    s = JobStore(tmp_path / "jobs.db", clock=clock)
    yield s
    s.close()


@pytest.fixture
def preferences() -> PreferenceProfile:
    return PreferenceProfile.from_dict({
        "preferred_locations": ["London", "Remote"],
        "work_mode": ["remote", "hybrid"],
        "career_level": ["senior"],
        "tech_stack": ["Python", "AWS"],
        "company_size": ["startup"],
        "travel_willingness": "limited",
        "salary_range": "70000-90000",
    })


@pytest.fixture
def llm() -> LLMConfiguration:
    return LLMConfiguration(agent1=make_agent("agent1"), agent2=make_agent("agent2"))


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings(feed_pacing_seconds=0)


def provider_factory(tier1: str | Callable[[str], str], tier2: str | Callable[[str], str] = "") -> Callable:
    """Build a provider_factory whose fakes are kept on the returned callable."""
    created: dict[str, FakeProvider] = {}

    def factory(agent: AgentConfig) -> FakeProvider:
        reply = tier1 if agent.name == "agent1" else tier2
        created[agent.name] = FakeProvider(agent, reply)
        return created[agent.name]

    factory.created = created  # type: ignore[attr-defined]
    return factory
