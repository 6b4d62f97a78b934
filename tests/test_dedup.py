"""Duplicate detection, the trailing window and concurrent admission."""
from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from conftest import make_candidate
from jobforge.dedup import AdmitOutcome, DedupGate
from jobforge.errors import DuplicateIdentityError
from jobforge.status import JobStatus


class TestDedupGate:
    def test_new_candidate_is_saved_as_new(self, store):
        result = DedupGate(store).admit(make_candidate())
        assert result.admitted
        assert result.job.status is JobStatus.NEW
        assert store.count_jobs() == 1

    def test_same_link_twice_is_a_duplicate(self, store):
        gate = DedupGate(store)
        gate.admit(make_candidate(1))
        again = gate.admit(make_candidate(2, source_url="https://jobs.example.com/1"))

        assert again.outcome is AdmitOutcome.DUPLICATE
        assert again.matched_on == "source_url"
        assert store.count_jobs() == 1

    def test_title_company_match_is_case_insensitive(self, store):
        gate = DedupGate(store)
        gate.admit(make_candidate(1, title="Backend Engineer", company="Acme"))
        again = gate.admit(make_candidate(2, title="BACKEND engineer", company="acme"))
        assert again.matched_on == "title_company"

    def test_title_company_outside_window_is_new(self, store, clock):
        gate = DedupGate(store, window_days=30)
        gate.admit(make_candidate(1, title="Backend Engineer", company="Acme"))

        clock.now += timedelta(days=31)
        again = gate.admit(make_candidate(2, title="Backend Engineer", company="Acme"))

        assert again.admitted
        assert store.count_jobs() == 2

    def test_window_is_configurable(self, store, clock):
        gate = DedupGate(store, window_days=7)
        gate.admit(make_candidate(1, title="Backend Engineer", company="Acme"))
        clock.now += timedelta(days=8)
        assert gate.admit(make_candidate(2, title="Backend Engineer", company="Acme")).admitted

    def test_existing_unique_id_is_a_duplicate(self, store):
        gate = DedupGate(store)
        gate.admit(make_candidate(1))
        again = gate.admit(make_candidate(2, unique_id="guid-1"))
        assert again.matched_on == "unique_id"

    def test_ingesting_same_content_twice_adds_nothing(self, store):
        gate = DedupGate(store)
        batch = [make_candidate(n) for n in range(5)]
        first = [gate.admit(c).admitted for c in batch]
        second = [gate.admit(c).admitted for c in batch]
        assert all(first)
        assert not any(second)
        assert store.count_jobs() == 5

    def test_lookup_failure_fails_open(self, store, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("index corrupted")

        monkeypatch.setattr(store, "find_by_source_url", broken)
        result = DedupGate(store).admit(make_candidate())
        assert result.admitted
        assert store.count_jobs() == 1

    def test_identity_clash_on_insert_is_raised(self, store, monkeypatch):
        gate = DedupGate(store)
        gate.admit(make_candidate(1))
        monkeypatch.setattr(gate, "find_duplicate", lambda c: None)

        with pytest.raises(DuplicateIdentityError):
            gate.admit(make_candidate(2, unique_id="guid-1"))
        assert store.count_jobs() == 1

    def test_concurrent_admission_inserts_once(self, store):
        gate = DedupGate(store)
        barrier = threading.Barrier(8)
        outcomes: list[bool] = []
        lock = threading.Lock()

        def worker(n: int) -> None:
            barrier.wait()
            result = gate.admit(make_candidate(n, source_url="https://jobs.example.com/same"))
            with lock:
                outcomes.append(result.admitted)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(True) == 1
        assert store.count_jobs() == 1
