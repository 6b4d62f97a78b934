#!/usr/bin/env python3
"""Entry point: run_pipeline.py [ingest|classify|full|status|test-agents|models] [args]."""
from __future__ import annotations

import json
import signal
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from jobforge.config import CONFIG_DIR, db_path, ensure_dirs, load_app_config
from jobforge.errors import ConfigurationError
from jobforge.log import get_logger

log = get_logger(__name__)

COMMANDS = ("ingest", "classify", "full", "status", "test-agents", "models")


def _usage() -> int:
    print()
    print("  Usage: python run_pipeline.py <command> [feed_id | agent]")
    print("  Commands: " + ", ".join(COMMANDS))
    print()
    return 2


def _build():
    from jobforge.email_report import deliver_digest
    from jobforge.pipeline import Pipeline
    from jobforge.store import JobStore

    cfg = load_app_config(CONFIG_DIR)
    ensure_dirs()
    store = JobStore(db_path())
    for feed in cfg.feeds:
        store.upsert_feed(feed)
    pipeline = Pipeline(
        store, cfg.preferences, cfg.llm, cfg.settings, cfg.texts, deliver=deliver_digest,
    )
    return store, pipeline


def main(argv: list[str]) -> int:
    if not argv or argv[0] not in COMMANDS:
        return _usage()
    command, args = argv[0], argv[1:]

    try:
        store, pipeline = _build()
    except ConfigurationError as exc:
        log.error("Configuration error: %s", exc)
        return 1

    # Ctrl-C finishes the job in flight, then stops
    signal.signal(signal.SIGINT, lambda *_: pipeline.cancel())

    try:
        if command == "ingest":
            result = pipeline.ingest_feed(args[0]) if args else pipeline.ingest()
            log.info("  Feeds: %d", len(result.feeds))
            log.info("  New jobs: %d (duplicates %d)", result.added, result.duplicates)
            for err in result.errors:
                log.warning("  Error: %s", err)
            return 0 if not result.violations else 1

        if command == "classify":
            result = pipeline.classify()
            log.info("  Processed: %d", result.processed)
            log.info("  Approved: %d, filtered: %d, review: %d", result.approved, result.filtered, result.needs_review)
            for err in result.errors + result.violations:
                log.warning("  Error: %s", err)
            return 0 if not result.violations else 1

        if command == "full":
            result = pipeline.run_full()
            log.info("Run complete.")
            log.info("  New jobs: %d", result.ingest.added)
            log.info("  Processed: %d", result.processed)
            log.info("  Approved: %d, filtered: %d", result.approved, result.filtered)
            log.info("  Emailed: %d", result.emailed)
            for err in result.errors + result.violations:
                log.warning("  Error: %s", err)
            return 0 if not result.violations else 1

        if command == "status":
            print(json.dumps(pipeline.status(), indent=2, default=str))
            return 0

        if command == "test-agents":
            ok = True
            for name, res in pipeline.test_agents().items():
                if res is None:
                    log.info("  %s: disabled", name)
                    continue
                ok = ok and res.success
                log.info("  %s: %s %s/%s %.0fms %s", name, "OK" if res.success else "FAILED",
                         res.provider, res.model, res.latency_ms, res.error or "")
            return 0 if ok else 1

        if command == "models":
            for model in pipeline.list_models(args[0] if args else "agent1"):
                print(model["name"])
            return 0
    except ConfigurationError as exc:
        log.error("%s", exc)
        return 1
    finally:
        store.close()
    return _usage()


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
