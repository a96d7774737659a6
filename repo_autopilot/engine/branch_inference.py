"""Work out which branch a finished session pushed.

Sessions report their branch in different places depending on how they
ended. The matchers below are tried in order and the first one that finds
a branch wins:

1. ``outcome_metadata``: branches listed in the session's structured outcome.
2. ``push_command``: the last ``git push`` the agent ran in a shell.
3. ``branch_mention``: branch names in command output or agent messages.

When every matcher comes up empty the result says so explicitly. Guessing a
branch would risk attributing someone else's pull request to the task.
"""

import re
import shlex
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from repo_autopilot.models.domain import SessionInfo

_PUSH_RE = re.compile(r"\bgit\s+push\b([^;&|\n]*)")
_BACKTICK_BRANCH_RE = re.compile(r"branch `([A-Za-z0-9_./-]+)`")
_TEXT_KEYS = ("text", "stdout", "content", "result")
# git push options whose value is the following argument.
_PUSH_OPTIONS_WITH_VALUE = frozenset({"-o", "--push-option", "--repo", "--receive-pack", "--exec"})


@dataclass
class BranchInference:
    """Result of running the matcher chain."""

    branch: str | None
    source: str | None = None
    """Name of the matcher that produced ``branch``."""

    @property
    def found(self) -> bool:
        return self.branch is not None


Matcher = Callable[[SessionInfo, list[dict[str, Any]]], str | None]


class BranchInferrer:
    """Prioritized chain of branch matchers for one agent's naming scheme."""

    def __init__(self, agent_name: str = "claude"):
        self.agent_name = agent_name
        self._mention_re = re.compile(rf"\b{re.escape(agent_name)}/[A-Za-z0-9_-]+")
        self.matchers: list[tuple[str, Matcher]] = [
            ("outcome_metadata", self.from_outcome_metadata),
            ("push_command", self.from_push_commands),
            ("branch_mention", self.from_branch_mentions),
        ]

    def infer(self, session: SessionInfo, events: list[dict[str, Any]]) -> BranchInference:
        for name, matcher in self.matchers:
            branch = matcher(session, events)
            if branch:
                return BranchInference(branch=branch, source=name)
        return BranchInference(branch=None)

    def from_outcome_metadata(self, session: SessionInfo, events: list[dict[str, Any]]) -> str | None:
        for branch in session.outcome_branches:
            if branch and not branch.endswith("/"):
                return branch
        return None

    def from_push_commands(self, session: SessionInfo, events: list[dict[str, Any]]) -> str | None:
        """Target branch of the most recent ``git push <remote> <refspec>``."""
        pushed: str | None = None
        for event in events:
            for command in _iter_values(event, ("command",)):
                for match in _PUSH_RE.finditer(command):
                    branch = _push_target(match.group(1))
                    if branch:
                        pushed = branch
        return pushed

    def from_branch_mentions(self, session: SessionInfo, events: list[dict[str, Any]]) -> str | None:
        for event in events:
            # Prompts name the branch we asked for, not the one that was pushed.
            if _is_user_event(event):
                continue
            for args in _iter_values(event, ("args",)):
                match = _BACKTICK_BRANCH_RE.search(args)
                if match:
                    return match.group(1)
            for text in _iter_values(event, _TEXT_KEYS):
                match = _BACKTICK_BRANCH_RE.search(text) or self._mention_re.search(text)
                if match:
                    return match.group(1) if match.re is _BACKTICK_BRANCH_RE else match.group(0)
        return None


def has_error_events(events: list[dict[str, Any]]) -> bool:
    """Whether the session reported an error at any point."""
    for event in events:
        for candidate in (event, event.get("data") or {}):
            if not isinstance(candidate, dict):
                continue
            if candidate.get("type") == "error" or candidate.get("is_error") is True:
                return True
            if str(candidate.get("subtype", "")).startswith("error"):
                return True
    return False


def _is_user_event(event: dict[str, Any]) -> bool:
    data = event.get("data")
    return event.get("type") == "user" or (isinstance(data, dict) and data.get("type") == "user")


def _push_target(args: str) -> str | None:
    """Branch named by the arguments of a ``git push``, if any."""
    try:
        tokens = shlex.split(args)
    except ValueError:
        tokens = args.split()

    positional = []
    tokens_iter = iter(tokens)
    for token in tokens_iter:
        if token in _PUSH_OPTIONS_WITH_VALUE:
            next(tokens_iter, None)
        elif not token.startswith("-"):
            positional.append(token)
    if len(positional) < 2:
        return None

    refspec = positional[1].lstrip("+")
    target = refspec.split(":", 1)[1] if ":" in refspec else refspec
    target = target.removeprefix("refs/heads/")
    if not target or target == "HEAD":
        return None
    return target


def _iter_values(obj: Any, keys: tuple[str, ...]) -> Iterator[str]:
    """Yield string values stored under ``keys`` anywhere inside ``obj``.

    List values under a matching key are joined with spaces.
    """
    if isinstance(obj, dict):
        for key, value in obj.items():
            if key in keys:
                if isinstance(value, str):
                    yield value
                elif isinstance(value, list) and all(isinstance(item, str) for item in value):
                    yield " ".join(value)
                    continue
            if isinstance(value, dict | list):
                yield from _iter_values(value, keys)
    elif isinstance(obj, list):
        for item in obj:
            yield from _iter_values(item, keys)
