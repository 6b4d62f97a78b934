"""Orchestrator behaviour end to end over a real store with fake feeds and models."""
from __future__ import annotations

import threading

import pytest

from conftest import FakeGateway, make_agent, make_candidate, provider_factory
from jobforge.classifier import TwoTierClassifier
from jobforge.config import LLMConfiguration, PipelineSettings
from jobforge.errors import ConfigurationError
from jobforge.models import FeedSource, Rating
from jobforge.pipeline import Pipeline
from jobforge.providers import ProviderKind, build_provider
from jobforge.status import JobStatus
from jobforge.store import JobStore

ANALYSIS = "1. Why worth it\nGood team.\n2. Technical Challenges\nScale.\n5. Risks\nNone."
TODAY = "2024-03-01"


def _by_title(verdicts: dict[str, str], default: str = "REJECT"):
    def reply(prompt: str) -> str:
        for needle, verdict in verdicts.items():
            if needle in prompt:
                return verdict
        return default
    return reply


@pytest.fixture
def feeds(store):
    for fid in ("a", "b"):
        store.upsert_feed(FeedSource(id=fid, url=f"https://{fid}.example.com/rss", name=f"Feed {fid.upper()}"))
    return store.list_feeds()


def make_pipeline(store, preferences, llm, settings=None, items=None, tier1="REJECT", tier2=ANALYSIS, **kw):
    gateway = FakeGateway(store, items or {})
    factory = provider_factory(tier1, tier2)
    pipeline = Pipeline(
        store, preferences, llm, settings or PipelineSettings(feed_pacing_seconds=0),
        gateway=gateway, provider_factory=factory, **kw,
    )
    return pipeline, gateway, factory


class TestIngest:
    def test_ingests_enabled_feeds(self, store, preferences, llm, feeds):
        items = {"a": [make_candidate(1), make_candidate(2)], "b": [make_candidate(3)]}
        pipeline, gateway, _ = make_pipeline(store, preferences, llm, items=items)

        result = pipeline.ingest()

        assert result.added == 3
        assert sorted(gateway.reads) == ["a", "b"]
        assert store.status_counts() == {"new": 3}

    def test_second_pass_adds_nothing(self, store, preferences, llm, feeds):
        items = {"a": [make_candidate(1), make_candidate(2)]}
        pipeline, _, _ = make_pipeline(store, preferences, llm, items=items)
        pipeline.ingest()
        again = pipeline.ingest()
        assert again.added == 0
        assert again.duplicates == 2
        assert store.count_jobs() == 2

    def test_failing_feed_does_not_stop_others(self, store, preferences, llm, feeds):
        items = {"a": RuntimeError("502 Bad Gateway"), "b": [make_candidate(1)]}
        pipeline, _, _ = make_pipeline(store, preferences, llm, items=items)

        result = pipeline.ingest()

        assert result.added == 1
        assert len(result.errors) == 1 and "502" in result.errors[0]
        assert store.get_feed("a").last_fetch_status == "error"
        assert store.get_feed("b").last_fetch_status == "success"

    def test_disabled_feed_is_ignored(self, store, preferences, llm, feeds):
        store.upsert_feed(FeedSource(id="b", url="https://b.example.com/rss", name="Feed B", enabled=False))
        pipeline, gateway, _ = make_pipeline(store, preferences, llm, items={"b": [make_candidate(1)]})
        assert pipeline.ingest().added == 0
        assert gateway.reads == ["a"]

    def test_parallel_workers(self, store, preferences, llm, feeds):
        items = {"a": [make_candidate(n) for n in range(1, 4)], "b": [make_candidate(n) for n in range(4, 7)]}
        settings = PipelineSettings(feed_pacing_seconds=0, feed_workers=2)
        pipeline, _, _ = make_pipeline(store, preferences, llm, settings, items=items)
        assert pipeline.ingest().added == 6

    def test_ingest_single_feed(self, store, preferences, llm, feeds):
        pipeline, gateway, _ = make_pipeline(store, preferences, llm, items={"b": [make_candidate(1)]})
        assert pipeline.ingest_feed("b").added == 1
        assert gateway.reads == ["b"]

    def test_ingest_unknown_or_disabled_feed_is_noop(self, store, preferences, llm, feeds):
        store.upsert_feed(FeedSource(id="off", url="https://off/rss", name="Off", enabled=False))
        pipeline, gateway, _ = make_pipeline(store, preferences, llm)
        assert "not found" in pipeline.ingest_feed("nope").errors[0]
        assert "disabled" in pipeline.ingest_feed("off").errors[0]
        assert gateway.reads == []

    def test_cancel_stops_between_feeds(self, store, preferences, llm, feeds):
        event = threading.Event()
        event.set()
        pipeline, gateway, _ = make_pipeline(
            store, preferences, llm, items={"a": [make_candidate(1)]}, cancel_event=event,
        )
        result = pipeline.ingest()
        assert result.cancelled
        assert gateway.reads == []


class TestClassify:
    def _seed(self, store, n=3):
        from jobforge.dedup import DedupGate

        gate = DedupGate(store)
        return [gate.admit(make_candidate(i)).job for i in range(1, n + 1)]

    def test_approve_without_tier2_leaves_analysis_empty(self, store, preferences):
        llm = LLMConfiguration(agent1=make_agent("agent1"), agent2=make_agent("agent2", enabled=False))
        (job,) = self._seed(store, 1)
        pipeline, _, _ = make_pipeline(store, preferences, llm, tier1="Rating: APPROVE — strong tech match")

        result = pipeline.classify()

        job = store.get_job(job.id)
        assert result.approved == 1
        assert job.status is JobStatus.APPROVED
        assert job.rating is Rating.APPROVE
        assert job.reasoning == "— strong tech match"
        assert job.detailed_analysis is None
        assert job.date_processed

    def test_analysis_present_iff_not_rejected(self, store, preferences, llm):
        jobs = self._seed(store, 3)
        reply = _by_title({"Engineer 1": "APPROVE", "Engineer 2": "MAYBE"})
        pipeline, _, _ = make_pipeline(store, preferences, llm, tier1=reply)

        result = pipeline.classify()

        assert (result.approved, result.filtered, result.analyzed) == (2, 1, 2)
        for job in (store.get_job(j.id) for j in jobs):
            assert (job.detailed_analysis is not None) == (job.rating is not Rating.REJECT)
        approved = store.get_job(jobs[0].id)
        assert approved.detailed_analysis.technical_challenges == "Scale."

    def test_maybe_can_route_to_review(self, store, preferences, llm):
        (job,) = self._seed(store, 1)
        settings = PipelineSettings(feed_pacing_seconds=0, maybe_status=JobStatus.NEEDS_REVIEW)
        pipeline, _, _ = make_pipeline(store, preferences, llm, settings, tier1="MAYBE")
        result = pipeline.classify()
        assert result.needs_review == 1
        assert store.get_job(job.id).status is JobStatus.NEEDS_REVIEW

    def test_provider_failure_rejects(self, store, preferences, llm):
        (job,) = self._seed(store, 1)

        def down(prompt):
            raise ConnectionError("ollama down")

        pipeline, _, factory = make_pipeline(store, preferences, llm, tier1=down)
        result = pipeline.classify()

        job = store.get_job(job.id)
        assert job.status is JobStatus.FILTERED_OUT
        assert "ollama down" in job.reasoning
        assert factory.created["agent2"].prompts == []
        assert result.errors == []

    def test_tier2_failure_keeps_tier1_transition(self, store, preferences, llm):
        (job,) = self._seed(store, 1)

        def broken(prompt):
            raise TimeoutError("analysis timed out")

        pipeline, _, _ = make_pipeline(store, preferences, llm, tier1="APPROVE", tier2=broken)
        pipeline.classify()

        job = store.get_job(job.id)
        assert job.status is JobStatus.APPROVED
        assert job.detailed_analysis.application_recommendations == "Review job manually due to analysis error"

    def test_one_bad_job_does_not_abort_batch(self, store, preferences, llm, monkeypatch):
        jobs = self._seed(store, 3)
        original = TwoTierClassifier.basic_filter

        def flaky(self, job):
            if job.title.endswith(" 2"):
                raise RuntimeError("prompt blew up")
            return original(self, job)

        monkeypatch.setattr(TwoTierClassifier, "basic_filter", flaky)
        pipeline, _, _ = make_pipeline(store, preferences, llm, tier1="REJECT")

        result = pipeline.classify()

        assert result.processed == 2
        assert result.needs_review == 1
        assert len(result.errors) == 1
        bad = store.get_job(jobs[1].id)
        assert bad.status is JobStatus.NEEDS_REVIEW
        assert "prompt blew up" in bad.processing_error
        assert store.get_job(jobs[2].id).status is JobStatus.FILTERED_OUT

    def test_claimed_job_is_skipped(self, store, preferences, llm):
        (job,) = self._seed(store, 1)
        pipeline, _, _ = make_pipeline(store, preferences, llm, tier1="APPROVE")
        with store.claim(job.id):
            result = pipeline.classify()
        assert result.skipped == 1
        assert store.get_job(job.id).status is JobStatus.NEW

    def test_job_claimed_by_another_process_is_skipped(self, store, preferences, llm, clock):
        (job,) = self._seed(store, 1)
        other = JobStore(store.path, clock)
        try:
            pipeline, _, factory = make_pipeline(other, preferences, llm, tier1="APPROVE")
            with store.claim(job.id):
                result = pipeline.classify()
        finally:
            other.close()

        assert result.skipped == 1
        assert factory.created["agent1"].prompts == []
        assert store.usage_summary() == []
        assert store.get_job(job.id).status is JobStatus.NEW

    def test_cancel_lets_current_job_finish(self, store, preferences, llm):
        jobs = self._seed(store, 3)
        event = threading.Event()

        def reply(prompt):
            event.set()
            return "REJECT"

        pipeline, _, _ = make_pipeline(store, preferences, llm, tier1=reply, cancel_event=event)
        result = pipeline.classify()

        assert result.cancelled
        assert result.processed == 1
        statuses = [store.get_job(j.id).status for j in jobs]
        assert statuses == [JobStatus.FILTERED_OUT, JobStatus.NEW, JobStatus.NEW]

    def test_disabled_tier1_is_a_noop(self, store, preferences):
        self._seed(store, 1)
        llm = LLMConfiguration(agent1=make_agent("agent1", enabled=False), agent2=make_agent("agent2"))
        pipeline, _, _ = make_pipeline(store, preferences, llm, tier1="APPROVE")
        result = pipeline.classify()
        assert result.processed == 0 and not result.errors
        assert store.status_counts() == {"new": 1}

    def test_batch_limit(self, store, preferences, llm):
        self._seed(store, 3)
        settings = PipelineSettings(feed_pacing_seconds=0, classify_batch_limit=2)
        pipeline, _, _ = make_pipeline(store, preferences, llm, settings)
        assert pipeline.classify().processed == 2

    def test_run_stats_accumulate_per_day(self, store, preferences, llm):
        from jobforge.dedup import DedupGate

        self._seed(store, 2)
        pipeline, _, _ = make_pipeline(store, preferences, llm, tier1=_by_title({"Engineer 1": "APPROVE"}))
        pipeline.classify()
        DedupGate(store).admit(make_candidate(9))
        pipeline.classify()

        stats = store.get_run_stats(TODAY)
        assert stats.jobs_processed == 3
        assert stats.jobs_approved == 1
        assert stats.jobs_filtered == 2


class TestFullRun:
    def test_full_run_emails_approved_jobs(self, store, preferences, llm, feeds):
        delivered = []
        items = {"a": [make_candidate(1), make_candidate(2)]}
        pipeline, _, _ = make_pipeline(
            store, preferences, llm, items=items,
            tier1=_by_title({"Engineer 1": "APPROVE"}),
            deliver=lambda jobs: delivered.extend(jobs) or True,
        )

        result = pipeline.run_full()

        assert (result.ingest.added, result.processed, result.approved, result.emailed) == (2, 2, 1, 1)
        assert [j.title for j in delivered] == ["Backend Engineer 1"]
        job = store.get_job(delivered[0].id)
        assert job.status is JobStatus.EMAILED
        assert job.emailed is True
        assert job.detailed_analysis is not None
        stats = store.get_run_stats(TODAY)
        assert (stats.jobs_processed, stats.jobs_approved, stats.jobs_emailed) == (2, 1, 1)

    def test_failed_delivery_keeps_jobs_approved(self, store, preferences, llm, feeds):
        pipeline, _, _ = make_pipeline(
            store, preferences, llm, items={"a": [make_candidate(1)]}, tier1="APPROVE",
            deliver=lambda jobs: False,
        )
        result = pipeline.run_full()
        assert result.emailed == 0
        assert store.status_counts() == {"approved": 1}
        assert store.list_jobs(JobStatus.APPROVED)[0].emailed is False

    def test_delivery_exception_is_reported(self, store, preferences, llm, feeds):
        def explode(jobs):
            raise OSError("smtp refused")

        pipeline, _, _ = make_pipeline(
            store, preferences, llm, items={"a": [make_candidate(1)]}, tier1="APPROVE", deliver=explode,
        )
        result = pipeline.run_full()
        assert any("smtp refused" in e for e in result.errors)
        assert store.status_counts() == {"approved": 1}
        assert store.get_run_stats(TODAY).errors_count == 1

    def test_nothing_new_skips_classification(self, store, preferences, llm, feeds):
        pipeline, _, factory = make_pipeline(store, preferences, llm, items={})
        result = pipeline.run_full()
        assert result.classify is None
        assert "agent1" not in factory.created or factory.created["agent1"].prompts == []
        assert store.get_run_stats(TODAY) is not None

    def test_partial_failure_still_reports_counts(self, store, preferences, llm, feeds):
        items = {"a": RuntimeError("feed gone"), "b": [make_candidate(1)]}
        pipeline, _, _ = make_pipeline(store, preferences, llm, items=items, tier1="REJECT")
        result = pipeline.run_full()
        assert result.ingest.added == 1
        assert result.filtered == 1
        assert any("feed gone" in e for e in result.errors)
        assert store.get_run_stats(TODAY).errors_count == 1


class TestProbes:
    def test_status(self, store, preferences, llm, feeds):
        pipeline, _, _ = make_pipeline(store, preferences, llm, items={"a": [make_candidate(1)]}, tier1="APPROVE")
        pipeline.run_full()

        status = pipeline.status()

        assert status["counts"] == {"approved": 1}
        assert {f["id"] for f in status["feeds"]} == {"a", "b"}
        assert status["today"]["jobs_approved"] == 1
        tiers = {row["tier"] for row in status["llm_usage"]}
        assert tiers == {1, 2}

    def test_agent_connectivity(self, store, preferences):
        llm = LLMConfiguration(agent1=make_agent("agent1"), agent2=make_agent("agent2", enabled=False))
        pipeline, _, _ = make_pipeline(store, preferences, llm)
        results = pipeline.test_agents()
        assert results["agent1"].success
        assert results["agent2"] is None

    def test_model_listing_only_for_local_endpoint(self, store, preferences):
        llm = LLMConfiguration(
            agent1=make_agent("agent1", provider=ProviderKind.OPENAI, model="gpt-4o-mini"),
            agent2=make_agent("agent2"),
        )
        pipeline = Pipeline(store, preferences, llm, provider_factory=build_provider)
        with pytest.raises(ConfigurationError):
            pipeline.list_models("agent1")
