"""jobforge: feed ingestion, deduplication and two-tier LLM job classification."""
