"""Core domain models for the autopilot daemon.

Key Models:
    - Issue, Comment, PullRequest: Tracker entities
    - ProjectItem, BoardItem, BoardSnapshot: Board rows and the per-cycle view
    - TrackingRecord: Durable pointer kept in a tracking comment
    - SessionHandle, SessionInfo: Remote coding sessions
    - MergeAttemptResult, CycleResult: Outcomes reported by the engine
    - CodeReview, ReviewFinding: Automated review results

Enums:
    - IssueState: Issue state (open, closed)
    - BoardStatus: Board column (backlog, ready, in progress, in review, done)
    - FindingSeverity: Review finding severity
"""

from repo_autopilot.models.domain import (
    BoardItem,
    BoardSnapshot,
    BoardStatus,
    Comment,
    CycleResult,
    FileChange,
    Issue,
    IssueState,
    MergeAttemptResult,
    MergeOutcome,
    ProjectItem,
    PullRequest,
    SessionHandle,
    SessionInfo,
    TrackingRecord,
)
from repo_autopilot.models.review import CodeReview, FindingSeverity, ReviewFinding

__all__ = [
    "BoardItem",
    "BoardSnapshot",
    "BoardStatus",
    "CodeReview",
    "Comment",
    "CycleResult",
    "FileChange",
    "FindingSeverity",
    "Issue",
    "IssueState",
    "MergeAttemptResult",
    "MergeOutcome",
    "ProjectItem",
    "PullRequest",
    "ReviewFinding",
    "SessionHandle",
    "SessionInfo",
    "TrackingRecord",
]
