"""Tracking comments: the durable per-issue pointer to session, branch and PR.

A tracking comment starts with a hidden marker carrying the record as JSON,
followed by a short human-readable summary::

    <!-- autopilot:tracking {"stage": "started", "session_id": "sess_1", ...} -->
    **Autopilot** started work on this issue.

The newest marker comment written by the daemon's own account is authoritative.
"""

import json
import re
from dataclasses import asdict, fields

import structlog

from repo_autopilot.models.domain import Comment, TrackingRecord

log = structlog.get_logger(__name__)

MARKER = "autopilot:tracking"
_MARKER_RE = re.compile(r"<!--\s*autopilot:tracking\s+(\{.*?\})\s*-->", re.DOTALL)
_RECORD_FIELDS = {f.name for f in fields(TrackingRecord)}

_STAGE_HEADLINES = {
    "started": "started work on this issue.",
    "rework": "started rework on this issue.",
    "in_review": "opened a pull request for this issue.",
    "reverted": "moved this issue back to the backlog.",
    "conflict_resolution": "started resolving merge conflicts.",
    "approved": "reviewed the pull request.",
    "changes_requested": "requested changes on the pull request.",
    "conflict_unresolved": "could not resolve merge conflicts automatically.",
    "merged": "merged the pull request.",
}


def format_tracking_comment(record: TrackingRecord, details: str | None = None) -> str:
    """Render ``record`` as a tracking comment body.

    Args:
        record: Record to embed
        details: Optional extra markdown appended after the summary

    Returns:
        Comment body with the hidden marker on its first line
    """
    payload = json.dumps(asdict(record), sort_keys=True)
    headline = _STAGE_HEADLINES.get(record.stage, f"recorded stage `{record.stage}`.")

    lines = [f"<!-- {MARKER} {payload} -->", f"**Autopilot** {headline}", ""]
    if record.session_id:
        session = f"[{record.session_id}]({record.web_url})" if record.web_url else f"`{record.session_id}`"
        lines.append(f"- Session: {session}")
    if record.branch:
        lines.append(f"- Branch: `{record.branch}`")
    if record.pr_number is not None:
        lines.append(f"- Pull request: #{record.pr_number}")
    if record.error_count:
        lines.append(f"- Attempts failed: {record.error_count}")
    if record.last_error:
        lines.append(f"- Last error: {record.last_error}")
    if details:
        lines.extend(["", details])

    return "\n".join(lines).rstrip() + "\n"


def parse_tracking_record(body: str) -> TrackingRecord | None:
    """Extract the record from a comment body, or None if it has no valid marker."""
    match = _MARKER_RE.search(body)
    if not match:
        return None

    try:
        raw = json.loads(match.group(1))
    except json.JSONDecodeError as e:
        log.debug("tracking_marker_unparseable", error=str(e))
        return None

    if not isinstance(raw, dict) or "stage" not in raw:
        return None

    return TrackingRecord(**{key: value for key, value in raw.items() if key in _RECORD_FIELDS})


def latest_tracking_record(comments: list[Comment], author: str | None = None) -> TrackingRecord | None:
    """The record in the newest tracking comment.

    Ordered by creation time; comments created in the same instant fall back
    to their position in ``comments``. When ``author`` is given, markers in
    anyone else's comments are ignored.
    """
    ordered = sorted(enumerate(comments), key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
    for _, comment in ordered:
        if author is not None and comment.author != author:
            continue
        record = parse_tracking_record(comment.body)
        if record is not None:
            return record
    return None
