"""Fetch syndication feeds and normalize their items into candidate jobs.

Feed items are messy: titles carry the employer ("Engineer at Acme",
"Acme - Engineer"), locations hide in the body text, and descriptions
arrive as HTML. The rules below pull out what a job record needs and
leave optional fields empty when nothing usable is found.
"""
from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterator
from urllib.parse import urljoin, urlparse

import feedparser
import requests
from dateutil import parser as date_parser

from jobforge.config import PipelineSettings
from jobforge.errors import FeedError, InvariantViolation
from jobforge.log import get_logger
from jobforge.models import CandidateJob, FeedSource
from jobforge.retry import retry
from jobforge.store import JobStore

log = get_logger(__name__)

UNKNOWN_COMPANY = "Unknown Company"
ELLIPSIS = "..."
USER_AGENT = "jobforge/0.1 (+feed reader)"

TITLE_FIELDS = ("title", "job_title", "jobtitle", "job-title")
COMPANY_FIELDS = ("company", "job_company", "hiring_organization", "author", "dc_creator", "creator")
LOCATION_FIELDS = ("location", "job_location", "joblocation", "job-location", "region")
SALARY_FIELDS = ("salary", "job_salary", "salary_range")

_AT_PATTERN = re.compile(r"^(?P<title>.+?)\s+at\s+(?P<company>[^|\-–]+?)\s*(?:[-|–].*)?$", re.I)
_DASH_PATTERN = re.compile(r"^(?P<company>[^|\-–]+?)\s+[-–]\s+(?P<title>.+)$")

_LOCATION_PATTERNS = (
    re.compile(r"Location:\s*([^\n,]+)", re.I),
    re.compile(r"Based in\s*([^\n,]+)", re.I),
    re.compile(r"\b([A-Z][a-z]+,\s*[A-Z]{2,})\b"),
)
_SALARY_PATTERN = re.compile(
    r"[£$€]\s?\d[\d,.]*\s?[kK]?\s*(?:-|–|to)\s*[£$€]?\s?\d[\d,.]*\s?[kK]?"
)

_BLOCK_TAGS = re.compile(r"<\s*(?:br\s*/?|/p|/div|/li|/h[1-6]|/tr)\s*>", re.I)
_TAGS = re.compile(r"<[^>]*>")
_ENTITIES: tuple[tuple[str, str], ...] = (
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&apos;", "'"),
    ("&nbsp;", " "),
)


def clean_description(raw: str, max_length: int = 2000) -> str:
    """Strip markup, decode the common entities and cap the length."""
    text = _BLOCK_TAGS.sub("\n", raw or "")
    text = _TAGS.sub("", text)
    for entity, char in _ENTITIES:
        text = text.replace(entity, char)
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text).strip()
    if len(text) > max_length:
        return text[:max_length] + ELLIPSIS
    return text


def split_title_company(title: str) -> tuple[str, str] | None:
    """("Engineer at Acme") -> ("Engineer", "Acme"); "at" wins over the dash form."""
    title = title.strip()
    match = _AT_PATTERN.match(title)
    if match:
        return match.group("title").strip(), match.group("company").strip()
    match = _DASH_PATTERN.match(title)
    if match:
        return match.group("title").strip(), match.group("company").strip()
    return None


def location_from_text(text: str) -> str | None:
    for pattern in _LOCATION_PATTERNS:
        match = pattern.search(text or "")
        if match:
            value = match.group(1).strip(" .;:-")
            if value:
                return value[:120]
    return None


def salary_from_text(text: str) -> str | None:
    match = _SALARY_PATTERN.search(text or "")
    return match.group(0).strip() if match else None


def content_hash_id(title: str, link: str, published: str | None) -> str:
    digest = hashlib.sha256(f"{title}|{link}|{published or ''}".encode("utf-8")).hexdigest()
    return f"hash_{digest[:16]}"


def _first(entry: dict, keys: tuple[str, ...]) -> str:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, dict):
            value = value.get("name") or value.get("value")
        if value and str(value).strip():
            return str(value).strip()
    return ""


def _published(entry: dict) -> str | None:
    raw = entry.get("published") or entry.get("updated") or entry.get("pubdate")
    if raw:
        try:
            dt = date_parser.parse(str(raw))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.isoformat()
        except (ValueError, OverflowError):
            log.debug("Unparseable publish date %r", raw)
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if parsed:
        return datetime(*parsed[:6], tzinfo=timezone.utc).isoformat()
    return None


def _resolve_link(entry: dict, feed_url: str) -> str:
    link = (entry.get("link") or "").strip()
    if not link:
        return ""
    link = urljoin(feed_url, link)
    parts = urlparse(link)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return ""
    return link


def entry_to_candidate(entry: dict, feed: FeedSource, max_length: int = 2000) -> CandidateJob | None:
    """Map one parsed feed item to a candidate; None when title or link is missing."""
    title = _first(entry, TITLE_FIELDS)
    link = _resolve_link(entry, feed.url)
    if not title or not link:
        return None

    company = _first(entry, COMPANY_FIELDS)
    if not company:
        split = split_title_company(title)
        if split:
            title, company = split
        else:
            company = UNKNOWN_COMPANY

    raw_body = ""
    if entry.get("content"):
        raw_body = entry["content"][0].get("value", "")
    raw_body = raw_body or entry.get("summary") or entry.get("description") or ""
    full_text = clean_description(raw_body, max_length=len(raw_body) + 1)

    published = _published(entry)
    return CandidateJob(
        unique_id=str(entry.get("id") or "").strip() or content_hash_id(title, link, published),
        title=title,
        company=company,
        description=clean_description(raw_body, max_length),
        source_url=link,
        source_name=feed.name,
        location=_first(entry, LOCATION_FIELDS) or location_from_text(full_text),
        salary_range=_first(entry, SALARY_FIELDS) or salary_from_text(full_text),
        published_date=published,
        feed_id=feed.id,
    )


@dataclass
class FeedIngestResult:
    feed_id: str
    feed_name: str
    found: int = 0
    added: int = 0
    duplicates: int = 0
    error: str | None = None
    item_errors: list[str] = field(default_factory=list)
    violations: list[str] = field(default_factory=list)
    skipped: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class FeedGateway:
    """Reads one feed at a time; failures are recorded on the feed row, never raised."""

    def __init__(
        self,
        store: JobStore,
        settings: PipelineSettings | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or PipelineSettings()
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)

    @retry(max_attempts=3, base_delay=2.0)
    def _download(self, url: str) -> bytes:
        r = self.session.get(url, timeout=self.settings.feed_timeout)
        r.raise_for_status()
        return r.content

    def fetch(self, feed: FeedSource) -> feedparser.FeedParserDict:
        try:
            body = self._download(feed.url)
        except requests.RequestException as exc:
            raise FeedError(feed.name, f"fetch failed: {exc}") from exc
        parsed = feedparser.parse(body)
        if not parsed.entries and (parsed.get("bozo") or not parsed.get("version")):
            reason = parsed.get("bozo_exception") or "not a recognised feed format"
            raise FeedError(feed.name, f"unparseable feed: {reason}")
        if parsed.get("bozo"):
            log.warning("[%s] feed has markup problems, using %d readable entries",
                        feed.name, len(parsed.entries))
        return parsed

    def read(self, feed: FeedSource) -> Iterator[CandidateJob]:
        """Lazily yield candidates; raises FeedError if the feed itself is unusable."""
        parsed = self.fetch(feed)
        for entry in parsed.entries:
            try:
                candidate = entry_to_candidate(entry, feed, self.settings.description_max_length)
            except Exception as exc:
                log.warning("[%s] skipping malformed item: %s", feed.name, exc)
                continue
            if candidate is None:
                log.debug("[%s] item without title or link skipped", feed.name)
                continue
            yield candidate

    def process(
        self,
        feed: FeedSource,
        admit: Callable[[CandidateJob], bool],
        should_stop: Callable[[], bool] | None = None,
    ) -> FeedIngestResult:
        """Read ``feed`` and pass each candidate to ``admit`` (True = newly saved)."""
        result = FeedIngestResult(feed_id=feed.id, feed_name=feed.name)
        if not feed.enabled:
            result.skipped = True
            return result

        try:
            for candidate in self.read(feed):
                if should_stop and should_stop():
                    result.cancelled = True
                    break
                result.found += 1
                try:
                    if admit(candidate):
                        result.added += 1
                    else:
                        result.duplicates += 1
                except InvariantViolation as exc:
                    log.error("[%s] invariant violation storing %r: %s", feed.name, candidate.title, exc)
                    result.violations.append(f"{type(exc).__name__}: {exc}")
                except Exception as exc:
                    msg = f"{candidate.title!r}: {type(exc).__name__}: {exc}"
                    log.error("[%s] could not store %s", feed.name, msg)
                    result.item_errors.append(msg)
        except FeedError as exc:
            result.error = exc.message
        except Exception as exc:
            result.error = f"{type(exc).__name__}: {exc}"

        if result.error:
            log.error("[%s] FAILED: %s", feed.name, result.error)
        else:
            log.info("[%s] %d items, %d new, %d duplicates",
                     feed.name, result.found, result.added, result.duplicates)
        try:
            self.store.record_feed_fetch(
                feed.id, success=result.ok, jobs_added=result.added, error=result.error,
            )
        except Exception as exc:
            log.error("[%s] could not record fetch outcome: %s", feed.name, exc)
        return result
