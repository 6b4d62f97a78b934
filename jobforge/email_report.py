"""Send the approved-jobs digest by email (HTML-formatted)."""
from __future__ import annotations

import re
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from jobforge.config import get_env
from jobforge.log import get_logger
from jobforge.models import JobRecord
from jobforge.report import build_digest, write_digest
from jobforge.retry import retry

log = get_logger(__name__)

_HEADING_STYLES = {
    "#": "margin:0 0 8px;color:#2c3e50",
    "##": "margin:18px 0 6px;color:#2c3e50;border-bottom:1px solid #ddd;padding-bottom:4px",
    "###": "margin:12px 0 4px;color:#1a1a1a",
}
_CELL = "border:1px solid #ddd;padding:5px 8px"
_TABLE = '<table style="border-collapse:collapse;width:100%;font-size:13px;margin:8px 0">'
_RULE = '<hr style="border:none;border-top:1px solid #e0e0e0;margin:16px 0">'


def _table_html(rows: list[list[str]]) -> list[str]:
    head, *body = rows
    html = [_TABLE, "<tr>" + "".join(
        f'<th style="{_CELL};background:#f5f7fa;text-align:left">{_inline(c)}</th>' for c in head
    ) + "</tr>"]
    for cells in body:
        # APPROVE rows tinted
        bg = "#e8f5e9" if "APPROVE" in cells else "#fff"
        html.append("<tr>" + "".join(f'<td style="{_CELL};background:{bg}">{_inline(c)}</td>' for c in cells) + "</tr>")
    html.append("</table>")
    return html


def _md_to_html(md: str) -> str:
    """Render the digest's markdown: headings, bullets, the quick-reference table and rules."""
    html: list[str] = []
    rows: list[list[str]] = []

    for line in md.split("\n") + [""]:
        stripped = line.strip()
        if stripped.startswith("|"):
            cells = [c.strip() for c in stripped.strip("|").split("|")]
            if not all(set(c) <= {"-", ":"} for c in cells):
                rows.append(cells)
            continue
        if rows:
            html += _table_html(rows)
            rows = []

        marker, _, text = stripped.partition(" ")
        if marker in _HEADING_STYLES:
            n = len(marker)
            html.append(f'<h{n} style="{_HEADING_STYLES[marker]}">{_inline(text)}</h{n}>')
        elif stripped == "---":
            html.append(_RULE)
        elif marker == "-":
            html.append(f'<div style="margin:2px 0 2px 16px">• {_inline(text)}</div>')
        elif stripped:
            html.append(f"<p style='margin:4px 0'>{_inline(stripped)}</p>")
        else:
            html.append("<br>")

    return "\n".join(html)


def _inline(text: str) -> str:
    """Escape, then render the digest's inline markdown (bold and links)."""
    text = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    text = re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", text)
    text = re.sub(r"\[([^\]]+)\]\(([^)]+)\)", r'<a href="\2" style="color:#1a73e8">\1</a>', text)
    return text


def smtp_configured() -> bool:
    return all(get_env(k) for k in ("SMTP_HOST", "SMTP_USER", "SMTP_PASSWORD", "TO_EMAIL"))


@retry(max_attempts=3, base_delay=3.0, retryable=(smtplib.SMTPException, OSError))
def _smtp_send(
    host: str, port: int, user: str, password: str,
    from_addr: str, to_addr: str, msg: MIMEMultipart,
) -> None:
    with smtplib.SMTP(host, port, timeout=30) as server:
        server.starttls()
        server.login(user, password)
        server.sendmail(from_addr, [to_addr], msg.as_string())


def send_email(body: str, subject: str | None = None, to_email: str | None = None) -> tuple[bool, str]:
    host = get_env("SMTP_HOST")
    user = get_env("SMTP_USER")
    password = get_env("SMTP_PASSWORD")
    from_addr = get_env("FROM_EMAIL", user) or user
    to_addr = (to_email or get_env("TO_EMAIL")).strip()

    if not all([host, user, password, to_addr]):
        return False, "SMTP not configured (set SMTP_HOST, SMTP_USER, SMTP_PASSWORD, TO_EMAIL in .env)"

    try:
        port = int(get_env("SMTP_PORT", "587"))
    except ValueError:
        port = 587

    if not subject:
        subject = f"Job Digest – {datetime.now(timezone.utc).strftime('%Y-%m-%d')}"

    html_body = f"""<div style="font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;max-width:900px;margin:0 auto;padding:16px;color:#333">
{_md_to_html(body)}
<hr style="border:none;border-top:1px solid #e0e0e0;margin:20px 0 8px">
<p style="font-size:11px;color:#999">Sent by jobforge</p>
</div>"""

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg.attach(MIMEText(body, "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))

    try:
        _smtp_send(host, port, user, password, from_addr, to_addr, msg)
        log.info("Email sent to %s", to_addr)
        return True, "Email sent"
    except Exception as e:
        log.error("Email failed: %s", e)
        return False, str(e)[:150]


def deliver_digest(jobs: list[JobRecord]) -> bool:
    """Email collaborator for the pipeline: True only when the digest went out."""
    if not smtp_configured():
        log.warning("SMTP not configured, %d approved job(s) left for the next run", len(jobs))
        return False
    content = build_digest(jobs)
    write_digest(content)
    ok, msg = send_email(content, subject=f"{len(jobs)} approved job(s) – {datetime.now(timezone.utc):%Y-%m-%d}")
    log.info("Email: %s", msg)
    return ok
