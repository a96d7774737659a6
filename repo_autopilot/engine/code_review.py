"""Pattern-based automated review of pull request diffs.

Only added lines are inspected. Any ERROR finding produces a change request,
a clean diff is approved, and anything in between is posted as a comment
review (which still lets the merge proceed).
"""

import re
from fnmatch import fnmatch
from posixpath import basename

import structlog

from repo_autopilot.enums import ReviewVerdict
from repo_autopilot.models.domain import Comment, FileChange
from repo_autopilot.models.review import CodeReview, FindingSeverity, ReviewFinding
from repo_autopilot.providers.base import IssueTracker

log = structlog.get_logger(__name__)

DEFAULT_EXCLUDE_PATTERNS = [
    "*.lock",
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "*.min.js",
    "*.min.css",
    "*.map",
    "dist/**",
    "build/**",
    "node_modules/**",
    ".git/**",
]

REVIEW_FINDINGS_HEADING = "## Review findings"
MAX_LINE_LENGTH = 150
LARGE_FILE_ADDITIONS = 500

_DEBUG_PATTERNS = [
    re.compile(r"console\.(log|debug)\b"),
    re.compile(r"^print\("),
    re.compile(r"\bbreakpoint\(\)"),
    re.compile(r"\bpdb\.set_trace\(\)"),
]

_CREDENTIAL_PATTERNS = [
    re.compile(r"password\s*=\s*['\"][^'\"]+['\"]", re.IGNORECASE),
    re.compile(r"api[_-]?key\s*=\s*['\"][^'\"]+['\"]", re.IGNORECASE),
    re.compile(r"secret\s*=\s*['\"][^'\"]+['\"]", re.IGNORECASE),
    re.compile(r"token\s*=\s*['\"][a-zA-Z0-9]{20,}['\"]", re.IGNORECASE),
]

_SQL_KEYWORDS = r"(?:SELECT|INSERT|UPDATE|DELETE|DROP)"
_SQL_INJECTION_PATTERNS = [
    re.compile(rf"\$\{{.*\}}.*{_SQL_KEYWORDS}", re.IGNORECASE),
    re.compile(rf"\bf['\"].*{_SQL_KEYWORDS}.*\{{.*\}}", re.IGNORECASE),
]

_EMPTY_HANDLER_PATTERNS = [
    re.compile(r"catch\s*\([^)]*\)\s*\{\s*\}"),
    re.compile(r"^except(\s+[^:]*)?:\s*pass\s*$"),
]


class CodeReviewer:
    """Reviews a pull request's changed files against a fixed set of checks."""

    def __init__(
        self,
        tracker: IssueTracker,
        exclude_patterns: list[str] | None = None,
        max_files: int = 50,
    ):
        self.tracker = tracker
        self.exclude_patterns = DEFAULT_EXCLUDE_PATTERNS + list(exclude_patterns or [])
        self.max_files = max_files

    async def review(self, pr_number: int) -> CodeReview:
        """Fetch the PR's files and analyze them."""
        files = await self.tracker.get_pull_request_files(pr_number)
        review = self.analyze(pr_number, files)
        log.info(
            "code_review_complete",
            pr=pr_number,
            verdict=review.verdict.value,
            findings=len(review.findings),
            files_reviewed=review.files_reviewed,
        )
        return review

    def analyze(self, pr_number: int, files: list[FileChange]) -> CodeReview:
        findings: list[ReviewFinding] = []
        reviewed = 0

        for change in files:
            if self._is_excluded(change.filename):
                continue
            if reviewed >= self.max_files:
                log.debug("review_max_files_reached", pr=pr_number, max_files=self.max_files)
                break
            reviewed += 1

            if change.patch:
                findings.extend(self._check_patch(change.filename, change.patch))

            if change.status == "added" and change.additions > LARGE_FILE_ADDITIONS:
                findings.append(
                    ReviewFinding(
                        severity=FindingSeverity.SUGGESTION,
                        category="maintainability",
                        file=change.filename,
                        message=(
                            f"Large file added ({change.additions} lines). "
                            "Consider breaking into smaller modules."
                        ),
                    )
                )

        findings.sort(key=lambda f: f.severity.rank)

        if any(f.severity is FindingSeverity.ERROR for f in findings):
            verdict = ReviewVerdict.REQUEST_CHANGES
        elif not findings:
            verdict = ReviewVerdict.APPROVE
        else:
            verdict = ReviewVerdict.COMMENT

        return CodeReview(pr_number=pr_number, verdict=verdict, findings=findings, files_reviewed=reviewed)

    def _is_excluded(self, filename: str) -> bool:
        name = basename(filename)
        return any(fnmatch(filename, pattern) or fnmatch(name, pattern) for pattern in self.exclude_patterns)

    def _check_patch(self, filename: str, patch: str) -> list[ReviewFinding]:
        findings: list[ReviewFinding] = []

        def add(severity: FindingSeverity, category: str, line: int, message: str) -> None:
            findings.append(
                ReviewFinding(severity=severity, category=category, file=filename, line=line, message=message)
            )

        for line_number, raw in enumerate(patch.split("\n"), start=1):
            if not raw.startswith("+") or raw.startswith("+++"):
                continue
            line = raw[1:].strip()

            if any(p.search(line) for p in _DEBUG_PATTERNS):
                add(
                    FindingSeverity.WARNING,
                    "maintainability",
                    line_number,
                    "Debug logging statement detected. Consider removing before production.",
                )

            upper = line.upper()
            if "TODO" in upper or "FIXME" in upper:
                add(
                    FindingSeverity.INFO,
                    "documentation",
                    line_number,
                    "TODO/FIXME comment detected. Ensure this is tracked appropriately.",
                )

            if any(p.search(line) for p in _CREDENTIAL_PATTERNS):
                add(
                    FindingSeverity.ERROR,
                    "security",
                    line_number,
                    "Potential hardcoded credential detected. Use environment variables instead.",
                )

            if any(p.search(line) for p in _SQL_INJECTION_PATTERNS):
                add(
                    FindingSeverity.ERROR,
                    "security",
                    line_number,
                    "Potential SQL injection vulnerability. Use parameterized queries.",
                )

            if len(line) > MAX_LINE_LENGTH:
                add(
                    FindingSeverity.SUGGESTION,
                    "style",
                    line_number,
                    f"Line exceeds {MAX_LINE_LENGTH} characters. Consider breaking it up for readability.",
                )

            if any(p.search(line) for p in _EMPTY_HANDLER_PATTERNS):
                add(
                    FindingSeverity.WARNING,
                    "bug",
                    line_number,
                    "Empty exception handler swallows errors. Consider logging or handling the error.",
                )

        return findings


def format_review_summary(review: CodeReview) -> str:
    """Review body submitted to the tracker."""
    parts = ["## Code Review Summary", ""]
    if not review.findings:
        parts.append("No issues found. Code looks good!")
        return "\n".join(parts)

    parts.append(f"Found {len(review.findings)} issue(s):")
    parts.append("")
    for severity, label in (
        (FindingSeverity.ERROR, "Errors"),
        (FindingSeverity.WARNING, "Warnings"),
        (FindingSeverity.SUGGESTION, "Suggestions"),
        (FindingSeverity.INFO, "Info"),
    ):
        count = review.count(severity)
        if count:
            parts.append(f"- **{label}:** {count}")
    return "\n".join(parts)


def format_findings_comment(review: CodeReview) -> str:
    """Findings grouped by severity, used as the rework instructions.

    Suggestions are listed alongside info findings.
    """
    groups = [
        ("Errors", [f for f in review.findings if f.severity is FindingSeverity.ERROR]),
        ("Warnings", [f for f in review.findings if f.severity is FindingSeverity.WARNING]),
        (
            "Info",
            [f for f in review.findings if f.severity in (FindingSeverity.SUGGESTION, FindingSeverity.INFO)],
        ),
    ]

    lines = [f"{REVIEW_FINDINGS_HEADING} for PR #{review.pr_number}", ""]
    for heading, findings in groups:
        if not findings:
            continue
        lines.append(f"### {heading}")
        for finding in findings:
            lines.append(f"- `{finding.location}` ({finding.category}): {finding.message}")
            if finding.suggestion:
                lines.append(f"  - Suggestion: {finding.suggestion}")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def extract_review_feedback(comments: list[Comment], author: str | None = None) -> str | None:
    """Findings section of the newest comment that carries one.

    With ``author`` set, only that account's comments are considered.
    """
    for comment in sorted(comments, key=lambda c: c.created_at, reverse=True):
        if author is not None and comment.author != author:
            continue
        index = comment.body.find(REVIEW_FINDINGS_HEADING)
        if index != -1:
            return comment.body[index:].strip()
    return None
