"""Prompt builders for remote coding sessions."""

from repo_autopilot.models.domain import Issue


def build_task_prompt(issue: Issue, repo_full_name: str, branch_prefix: str) -> str:
    """Prompt for fresh work on an issue."""
    return f"""You are working on issue #{issue.number} in the {repo_full_name} repository.

**Issue Title**: {issue.title}

**Issue Description**:
{issue.body or "(no description)"}

**Instructions**:
1. Create a new branch whose name starts with `{branch_prefix}`
2. Implement the change the issue asks for
3. Add or update tests covering the change
4. Run the existing test suite and fix anything you broke
5. Commit with a message referencing #{issue.number}
6. Push the branch to origin

Keep the change focused on this issue. Do not open a pull request; that is
handled for you once the branch is pushed.
"""


def build_rework_prompt(issue: Issue, repo_full_name: str, branch: str, review_feedback: str | None) -> str:
    """Prompt for continuing work on a branch that already exists."""
    feedback = review_feedback or "(no review feedback was recorded; re-check the issue requirements)"
    return f"""You are reworking issue #{issue.number} in the {repo_full_name} repository.

Work already exists on branch `{branch}`. Check it out and continue from there.

**Issue Title**: {issue.title}

**Issue Description**:
{issue.body or "(no description)"}

**Review Feedback to Address**:
{feedback}

**Instructions**:
1. Check out the existing branch `{branch}` (do not create a new branch)
2. Address every error and warning in the feedback above
3. Run the test suite and fix any failures
4. Commit and push to `{branch}`
"""


def build_conflict_resolution_prompt(
    repo_full_name: str,
    branch: str,
    base_branch: str,
    pr_number: int,
    pr_title: str,
) -> str:
    """Prompt for resolving merge conflicts on an existing pull request branch."""
    return f"""Pull request #{pr_number} ("{pr_title}") in the {repo_full_name} repository
has merge conflicts with `{base_branch}`.

**Instructions**:
1. Check out the existing branch `{branch}`
2. Run `git fetch origin {base_branch}`
3. Run `git merge origin/{base_branch}` into `{branch}`
4. Resolve every conflict, keeping the intent of both sides
5. Run the test suite and fix any failures introduced by the merge
6. Commit the merge and push to `{branch}`

Push to `{branch}` only. Never create a new branch: the pull request tracks
`{branch}` and will not see commits anywhere else.
"""
