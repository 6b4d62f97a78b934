"""Build the markdown digest of approved jobs."""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

from jobforge.config import REPORTS_DIR
from jobforge.log import get_logger
from jobforge.models import JobRecord, Rating

log = get_logger(__name__)

_EXCERPT = 240


def _short_url_label(url: str) -> str:
    host = (urlparse(url).hostname or "").replace("www.", "")
    parts = host.split(".")
    return parts[0].capitalize() if parts and parts[0] else "Link"


def _clip(text: str, n: int) -> str:
    text = " ".join((text or "").split())
    return text[:n] + ("…" if len(text) > n else "")


def build_digest(jobs: list[JobRecord], *, date: str | None = None) -> str:
    date = date or datetime.now(timezone.utc).strftime("%Y-%m-%d")
    approve = sum(1 for j in jobs if j.rating is Rating.APPROVE)
    lines: list[str] = [f"# Job Digest — {date}", ""]
    lines.append(f"**{len(jobs)}** approved jobs | **{approve}** strong matches | **{len(jobs) - approve}** worth a look")
    lines.append("")

    if jobs:
        lines.append("## Approved Jobs")
        lines.append("")
        for job in jobs:
            badge = "✅" if job.rating is Rating.APPROVE else "\U0001f914"
            lines.append(f"### {badge} {job.title} @ {job.company}")
            lines.append(f"- **Rating:** {job.rating.value if job.rating else 'n/a'}")
            lines.append(f"- **Location:** {job.location or 'Not specified'}")
            if job.salary_range:
                lines.append(f"- **Salary:** {job.salary_range}")
            if job.top_matches:
                lines.append(f"- **Why:** {', '.join(job.top_matches)}")
            if job.reasoning:
                lines.append(f"- **Reasoning:** {_clip(job.reasoning, _EXCERPT)}")
            analysis = job.detailed_analysis
            if analysis:
                lines.append(f"- **Worth reviewing:** {_clip(analysis.why_worth_reviewing, _EXCERPT)}")
                lines.append(f"- **Concerns:** {_clip(analysis.potential_concerns, _EXCERPT)}")
                lines.append(f"- **Approach:** {_clip(analysis.application_recommendations, _EXCERPT)}")
            lines.append(f"- **Source:** {job.source_name} — [{_short_url_label(job.source_url)}]({job.source_url})")
            lines.append("")

        lines.append("---")
        lines.append("")
        lines.append("## Quick Reference")
        lines.append("")
        lines.append("| # | Role | Company | Location | Rating | Link |")
        lines.append("|--:|------|---------|----------|--------|------|")
        for i, job in enumerate(jobs, 1):
            loc = (job.location or "—").split(",")[0][:18]
            rating = job.rating.value if job.rating else "—"
            link = f"[{_short_url_label(job.source_url)}]({job.source_url})"
            lines.append(f"| {i} | {_clip(job.title, 40)} | {_clip(job.company, 22)} | {loc} | {rating} | {link} |")
        lines.append("")

    log.info("Built digest: %d approved jobs", len(jobs))
    return "\n".join(lines)


def write_digest(content: str, reports_dir: Path = REPORTS_DIR) -> Path:
    reports_dir.mkdir(parents=True, exist_ok=True)
    date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    path = reports_dir / f"digest_{date}.md"
    path.write_text(content, encoding="utf-8")
    log.info("Digest written → %s", path)
    return path
