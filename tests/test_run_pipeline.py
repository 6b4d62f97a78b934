"""Exit codes of the entry script, with the pipeline replaced by a mock."""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest

import run_pipeline
from jobforge.errors import ConfigurationError
from jobforge.pipeline import ClassifyResult, FullRunResult, IngestResult


@pytest.fixture
def wired(monkeypatch):
    store, pipeline = MagicMock(), MagicMock()
    monkeypatch.setattr(run_pipeline, "_build", lambda: (store, pipeline))
    monkeypatch.setattr(run_pipeline.signal, "signal", lambda *args: None)
    return store, pipeline


def test_full_run_exits_zero(wired):
    store, pipeline = wired
    pipeline.run_full.return_value = FullRunResult(
        ingest=IngestResult(), classify=ClassifyResult(processed=2, approved=1), emailed=1,
    )
    assert run_pipeline.main(["full"]) == 0
    store.close.assert_called_once()


def test_full_run_with_violation_exits_nonzero(wired):
    _, pipeline = wired
    pipeline.run_full.return_value = FullRunResult(
        ingest=IngestResult(),
        classify=ClassifyResult(processed=1, violations=["job_1: IllegalTransitionError: emailed -> new"]),
    )
    assert run_pipeline.main(["full"]) == 1


def test_feed_errors_alone_do_not_fail_the_run(wired):
    _, pipeline = wired
    pipeline.run_full.return_value = FullRunResult(ingest=IngestResult(errors=["Feed A: 502"]), errors=["Feed A: 502"])
    assert run_pipeline.main(["full"]) == 0


def test_unknown_command_prints_usage(wired):
    assert run_pipeline.main(["explode"]) == 2
    assert run_pipeline.main([]) == 2


def test_configuration_error(monkeypatch):
    def broken():
        raise ConfigurationError("Missing configuration file config/llm.yaml")

    monkeypatch.setattr(run_pipeline, "_build", broken)
    assert run_pipeline.main(["classify"]) == 1
