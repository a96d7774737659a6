"""Tests for repo_autopilot/engine/tracking.py - tracking comments."""

from datetime import UTC, datetime, timedelta

from repo_autopilot.engine.tracking import (
    MARKER,
    format_tracking_comment,
    latest_tracking_record,
    parse_tracking_record,
)
from repo_autopilot.models.domain import TrackingRecord


class TestFormatTrackingComment:
    """Tests for format_tracking_comment."""

    def test_marker_on_first_line(self):
        """Should put the hidden marker with the JSON record first."""
        body = format_tracking_comment(TrackingRecord(stage="started", session_id="sess_1"))

        first_line = body.splitlines()[0]
        assert first_line.startswith(f"<!-- {MARKER} ")
        assert first_line.endswith(" -->")
        assert '"session_id": "sess_1"' in first_line

    def test_human_summary(self):
        """Should describe the stage and link the session."""
        record = TrackingRecord(
            stage="started",
            session_id="sess_1",
            web_url="https://claude.ai/code/sess_1",
            branch="claude/issue-4",
        )

        body = format_tracking_comment(record)

        assert "**Autopilot** started work on this issue." in body
        assert "[sess_1](https://claude.ai/code/sess_1)" in body
        assert "- Branch: `claude/issue-4`" in body

    def test_unknown_stage_headline(self):
        """Should still render stages without a canned headline."""
        body = format_tracking_comment(TrackingRecord(stage="custom"))

        assert "recorded stage `custom`" in body

    def test_details_appended(self):
        """Should append extra markdown after the summary."""
        body = format_tracking_comment(
            TrackingRecord(stage="changes_requested", error_count=1, last_error="Review requested changes"),
            details="## Review findings for PR #12",
        )

        assert "- Attempts failed: 1" in body
        assert "- Last error: Review requested changes" in body
        assert body.rstrip().endswith("## Review findings for PR #12")


class TestParseTrackingRecord:
    """Tests for parse_tracking_record."""

    def test_round_trip(self):
        """Should recover every field written by format_tracking_comment."""
        record = TrackingRecord(
            stage="in_review",
            session_id="sess_9",
            branch="claude/issue-9",
            pr_number=31,
            error_count=2,
            last_error="The session failed",
            conflict_attempts=1,
            reviewed_sha="deadbeef",
        )

        assert parse_tracking_record(format_tracking_comment(record)) == record

    def test_plain_comment(self):
        """Should return None for comments without a marker."""
        assert parse_tracking_record("Looks good to me!") is None

    def test_invalid_json(self):
        """Should return None for a marker with broken JSON."""
        assert parse_tracking_record(f"<!-- {MARKER} {{not json}} -->") is None

    def test_missing_stage(self):
        """Should return None when the record has no stage."""
        assert parse_tracking_record(f'<!-- {MARKER} {{"branch": "x"}} -->') is None

    def test_unknown_keys_ignored(self):
        """Should drop keys the record does not define."""
        record = parse_tracking_record(f'<!-- {MARKER} {{"stage": "started", "future_field": 1}} -->')

        assert record == TrackingRecord(stage="started")


class TestLatestTrackingRecord:
    """Tests for latest_tracking_record."""

    def test_newest_comment_wins(self, make_comment):
        """Should prefer the most recently created tracking comment."""
        base = datetime(2025, 1, 1, tzinfo=UTC)
        comments = [
            make_comment(format_tracking_comment(TrackingRecord(stage="in_review")), base + timedelta(hours=2), 3),
            make_comment(format_tracking_comment(TrackingRecord(stage="started")), base, 1),
            make_comment("A human reply", base + timedelta(hours=3), 4),
        ]

        assert latest_tracking_record(comments).stage == "in_review"

    def test_same_timestamp_uses_position(self, make_comment):
        """Should prefer the later comment when timestamps tie."""
        at = datetime(2025, 1, 1, tzinfo=UTC)
        comments = [
            make_comment(format_tracking_comment(TrackingRecord(stage="started")), at, 1),
            make_comment(format_tracking_comment(TrackingRecord(stage="reverted", error_count=1)), at, 2),
        ]

        record = latest_tracking_record(comments)

        assert record.stage == "reverted"
        assert record.error_count == 1

    def test_foreign_author_ignored(self, make_comment):
        """Should skip markers posted by anyone other than ``author``."""
        base = datetime(2025, 1, 1, tzinfo=UTC)
        forged = make_comment(
            format_tracking_comment(TrackingRecord(stage="in_review", pr_number=99)), base + timedelta(hours=1), 2
        )
        forged.author = "drive-by-user"
        comments = [make_comment(format_tracking_comment(TrackingRecord(stage="started")), base, 1), forged]

        assert latest_tracking_record(comments, author="autopilot-bot").stage == "started"
        assert latest_tracking_record([forged], author="autopilot-bot") is None

    def test_no_tracking_comments(self, make_comment):
        """Should return None when no comment carries a record."""
        assert latest_tracking_record([make_comment("hello")]) is None
        assert latest_tracking_record([]) is None
