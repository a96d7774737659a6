"""Automated code review models.

Findings are produced by the pattern-based reviewer and rendered into the
review body and, on rejection, into the comment that drives rework.
"""

from enum import Enum

from pydantic import BaseModel, Field

from repo_autopilot.enums import ReviewVerdict


class FindingSeverity(str, Enum):
    """How serious a review finding is.

    Any ERROR rejects the pull request. Everything else is advisory.
    """

    ERROR = "error"
    WARNING = "warning"
    SUGGESTION = "suggestion"
    INFO = "info"

    @property
    def rank(self) -> int:
        """Sort position, most severe first."""
        return [
            FindingSeverity.ERROR,
            FindingSeverity.WARNING,
            FindingSeverity.SUGGESTION,
            FindingSeverity.INFO,
        ].index(self)


class ReviewFinding(BaseModel):
    """A single problem spotted in a pull request diff."""

    severity: FindingSeverity
    category: str = Field(..., description="security, bug, maintainability, style, documentation")
    file: str
    line: int | None = Field(default=None, description="Line within the file's patch")
    message: str
    suggestion: str | None = None

    @property
    def location(self) -> str:
        return f"{self.file}:{self.line}" if self.line is not None else self.file


class CodeReview(BaseModel):
    """Review verdict plus its findings, sorted most severe first."""

    pr_number: int
    verdict: ReviewVerdict
    findings: list[ReviewFinding] = Field(default_factory=list)
    files_reviewed: int = 0

    @property
    def approved(self) -> bool:
        """Anything short of a change request lets the merge proceed."""
        return self.verdict is not ReviewVerdict.REQUEST_CHANGES

    def count(self, severity: FindingSeverity) -> int:
        return sum(1 for finding in self.findings if finding.severity is severity)
