"""Workflow engine for the autopilot daemon.

Key Components:
    - Daemon: Runs discover/promote/start/poll/review cycles until stopped
    - StateManager: Board snapshot, guarded column transitions, tracking comments
    - MergeCoordinator: Merges approved PRs and starts conflict resolution
    - CodeReviewer: Pattern-based review of pull request diffs
    - BranchInferrer: Finds the branch a finished session pushed to
    - MarkerScanner: Discovers TODO-style markers through the analysis cache
"""

from repo_autopilot.engine.branch_inference import BranchInference, BranchInferrer
from repo_autopilot.engine.code_review import CodeReviewer
from repo_autopilot.engine.daemon import Daemon
from repo_autopilot.engine.discovery import MarkerScanner
from repo_autopilot.engine.merge_coordinator import MergeCoordinator
from repo_autopilot.engine.state_manager import StateManager

__all__ = [
    "BranchInference",
    "BranchInferrer",
    "CodeReviewer",
    "Daemon",
    "MarkerScanner",
    "MergeCoordinator",
    "StateManager",
]
