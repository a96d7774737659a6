"""GitHub tracker implementation using PyGithub for REST and httpx for Projects v2 GraphQL."""

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
import structlog
from github import Auth, Github, GithubException  # type: ignore[import-not-found]
from github.Issue import Issue as GHIssue  # type: ignore[import-not-found]
from github.IssueComment import IssueComment as GHComment  # type: ignore[import-not-found]
from github.PullRequest import PullRequest as GHPullRequest  # type: ignore[import-not-found]
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]

from repo_autopilot.exceptions import ConfigurationError, ExternalServiceError
from repo_autopilot.models.domain import (
    Comment,
    FileChange,
    Issue,
    IssueState,
    MergeOutcome,
    ProjectItem,
    PullRequest,
)
from repo_autopilot.providers.base import IssueTracker

log = structlog.get_logger(__name__)

T = TypeVar("T")

STATUS_FIELD_QUERY = """
query($projectId: ID!) {
  node(id: $projectId) {
    ... on ProjectV2 {
      fields(first: 50) {
        nodes {
          ... on ProjectV2SingleSelectField { id name options { id name } }
        }
      }
    }
  }
}
"""

PROJECT_ITEMS_QUERY = """
query($projectId: ID!, $fieldName: String!, $cursor: String) {
  node(id: $projectId) {
    ... on ProjectV2 {
      items(first: 100, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          fieldValueByName(name: $fieldName) {
            ... on ProjectV2ItemFieldSingleSelectValue { name }
          }
          content {
            ... on Issue {
              number
              title
              state
              labels(first: 20) { nodes { name } }
              repository { nameWithOwner }
            }
          }
        }
      }
    }
  }
}
"""

UPDATE_STATUS_MUTATION = """
mutation($projectId: ID!, $itemId: ID!, $fieldId: ID!, $optionId: String!) {
  updateProjectV2ItemFieldValue(
    input: {projectId: $projectId, itemId: $itemId, fieldId: $fieldId, value: {singleSelectOptionId: $optionId}}
  ) { projectV2Item { id } }
}
"""

ADD_ITEM_MUTATION = """
mutation($projectId: ID!, $contentId: ID!) {
  addProjectV2ItemById(input: {projectId: $projectId, contentId: $contentId}) { item { id } }
}
"""


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a synchronous PyGithub call in a thread pool."""
    return await asyncio.to_thread(func)


class GitHubRestProvider(IssueTracker):
    """GitHub implementation of :class:`IssueTracker`."""

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        base_url: str = "https://api.github.com",
        graphql_url: str = "https://api.github.com/graphql",
    ):
        """Initialize GitHub provider.

        Args:
            token: GitHub personal access token or App token
            owner: Repository owner (user or organization)
            repo: Repository name
            base_url: REST API base URL (for GitHub Enterprise)
            graphql_url: GraphQL endpoint used for project boards
        """
        self.token = token.strip() if token else token
        self.owner = owner
        self.repo = repo
        self.base_url = base_url.rstrip("/")
        self.graphql_url = graphql_url
        self.rate_limit_remaining: int | None = None
        self.login: str | None = None
        self._client: Github | None = None
        self._repo: GHRepository | None = None
        self._http: httpx.AsyncClient | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    async def connect(self) -> None:
        """Initialize REST and GraphQL clients."""
        if not self.token:
            raise ConfigurationError("GitHub token is required to read the project board")

        def _connect() -> tuple[Github, GHRepository, str]:
            client = Github(auth=Auth.Token(self.token), base_url=self.base_url)
            repo = client.get_repo(self.full_name)
            return client, repo, client.get_user().login

        self._client, self._repo, self.login = await _run_sync(_connect)
        self._http = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {self.token}",
                "Content-Type": "application/json",
            },
            timeout=30.0,
        )
        log.info("github_connected", base_url=self.base_url, repo=self.full_name, login=self.login)

    async def disconnect(self) -> None:
        """Close both clients."""
        if self._client:
            await _run_sync(self._client.close)
            self._client = None
            self._repo = None
        if self._http:
            await self._http.aclose()
            self._http = None

    async def get_issue(self, issue_number: int) -> Issue:
        """Get single issue by number."""
        try:
            gh_issue = await self._call(lambda: self._repo.get_issue(issue_number))
            return self._convert_issue(gh_issue)
        except GithubException as e:
            log.error("github_get_issue_failed", number=issue_number, error=str(e))
            raise

    async def create_issue(self, title: str, body: str, labels: list[str] | None = None) -> Issue:
        """Create a new issue."""
        log.info("create_issue", title=title, labels=labels)
        try:
            gh_issue = await self._call(lambda: self._repo.create_issue(title=title, body=body, labels=labels or []))
            return self._convert_issue(gh_issue)
        except GithubException as e:
            log.error("github_create_issue_failed", error=str(e))
            raise

    async def list_open_issues(self, labels: list[str]) -> list[Issue]:
        """List open issues with all of ``labels``; pull requests are skipped."""
        try:

            def _list() -> list[GHIssue]:
                return [i for i in self._repo.get_issues(state="open", labels=labels) if i.pull_request is None]

            gh_issues = await self._call(_list)
            return [self._convert_issue(i) for i in gh_issues]
        except GithubException as e:
            log.error("github_list_issues_failed", labels=labels, error=str(e))
            raise

    async def close_issue(self, issue_number: int) -> None:
        """Close an issue."""
        log.info("close_issue", number=issue_number)
        try:
            await self._call(lambda: self._repo.get_issue(issue_number).edit(state="closed"))
        except GithubException as e:
            log.error("github_close_issue_failed", number=issue_number, error=str(e))
            raise

    async def add_labels(self, issue_number: int, labels: list[str]) -> None:
        """Add labels to an issue."""
        try:
            await self._call(lambda: self._repo.get_issue(issue_number).add_to_labels(*labels))
        except GithubException as e:
            log.error("github_add_labels_failed", number=issue_number, error=str(e))
            raise

    async def add_comment(self, issue_number: int, body: str) -> Comment:
        """Add comment to issue."""
        log.info("add_comment", number=issue_number)
        try:
            gh_comment = await self._call(lambda: self._repo.get_issue(issue_number).create_comment(body))
            return self._convert_comment(gh_comment)
        except GithubException as e:
            log.error("github_add_comment_failed", number=issue_number, error=str(e))
            raise

    async def get_comments(self, issue_number: int) -> list[Comment]:
        """Retrieve all comments for an issue."""
        try:

            def _get_comments() -> list[GHComment]:
                return list(self._repo.get_issue(issue_number).get_comments())

            gh_comments = await self._call(_get_comments)
            return [self._convert_comment(c) for c in gh_comments]
        except GithubException as e:
            log.error("github_get_comments_failed", number=issue_number, error=str(e))
            raise

    async def find_pull_request(self, head: str) -> PullRequest | None:
        """Find the open pull request for a head branch."""
        try:

            def _find() -> GHPullRequest | None:
                pulls = self._repo.get_pulls(state="open", head=f"{self.owner}:{head}")
                for gh_pr in pulls:
                    return gh_pr
                return None

            gh_pr = await self._call(_find)
            return self._convert_pull_request(gh_pr) if gh_pr else None
        except GithubException as e:
            log.error("github_find_pr_failed", head=head, error=str(e))
            raise

    async def create_pull_request(self, title: str, body: str, head: str, base: str) -> PullRequest:
        """Create a pull request."""
        log.info("create_pull_request", title=title, head=head, base=base)
        try:
            gh_pr = await self._call(lambda: self._repo.create_pull(title=title, body=body, head=head, base=base))
            return self._convert_pull_request(gh_pr)
        except GithubException as e:
            log.error("github_create_pr_failed", head=head, error=str(e))
            raise

    async def get_pull_request(self, pr_number: int) -> PullRequest:
        """Get pull request by number."""
        try:
            gh_pr = await self._call(lambda: self._repo.get_pull(pr_number))
            return self._convert_pull_request(gh_pr)
        except GithubException as e:
            log.error("github_get_pr_failed", number=pr_number, error=str(e))
            raise

    async def get_pull_request_files(self, pr_number: int) -> list[FileChange]:
        """List files changed by a pull request."""
        try:

            def _get_files() -> list[FileChange]:
                return [
                    FileChange(
                        filename=f.filename,
                        status=f.status,
                        additions=f.additions,
                        deletions=f.deletions,
                        patch=f.patch,
                    )
                    for f in self._repo.get_pull(pr_number).get_files()
                ]

            return await self._call(_get_files)
        except GithubException as e:
            log.error("github_get_pr_files_failed", number=pr_number, error=str(e))
            raise

    async def create_review(self, pr_number: int, body: str, event: str) -> None:
        """Submit a pull request review."""
        log.info("create_review", number=pr_number, review_event=event)
        try:
            await self._call(lambda: self._repo.get_pull(pr_number).create_review(body=body, event=event))
        except GithubException as e:
            log.error("github_create_review_failed", number=pr_number, error=str(e))
            raise

    async def merge_pull_request(self, pr_number: int, title: str, method: str = "squash") -> MergeOutcome:
        """Merge a pull request."""
        log.info("merge_pull_request", number=pr_number, method=method)
        try:
            status = await self._call(
                lambda: self._repo.get_pull(pr_number).merge(commit_title=title, merge_method=method)
            )
            return MergeOutcome(merged=bool(status.merged), sha=status.sha, message=status.message or "")
        except GithubException as e:
            log.error("github_merge_pr_failed", number=pr_number, error=str(e))
            raise

    async def get_combined_status(self, ref: str) -> str:
        """Combined commit status for ``ref``.

        GitHub reports "pending" for commits with no statuses at all; those
        are reported as "success" so repositories without CI can merge.
        """

        def _get_status() -> str:
            combined = self._repo.get_commit(ref).get_combined_status()
            return combined.state if combined.total_count else "success"

        try:
            return await self._call(_get_status)
        except GithubException as e:
            log.error("github_get_status_failed", ref=ref, error=str(e))
            raise

    async def delete_branch(self, branch: str) -> None:
        """Delete a branch ref."""
        log.info("delete_branch", branch=branch)
        try:
            await self._call(lambda: self._repo.get_git_ref(f"heads/{branch}").delete())
        except GithubException as e:
            log.error("github_delete_branch_failed", branch=branch, error=str(e))
            raise

    async def get_status_field(self, project_id: str, field_name: str) -> tuple[str, dict[str, str]]:
        """Resolve the status field id and its option ids."""
        data = await self._graphql(STATUS_FIELD_QUERY, {"projectId": project_id})
        node = data.get("node") or {}
        for field in (node.get("fields") or {}).get("nodes") or []:
            if field and field.get("name") == field_name and "options" in field:
                options = {option["name"]: option["id"] for option in field["options"]}
                return field["id"], options

        raise ConfigurationError(f"Project {project_id} has no single-select field named '{field_name}'")

    async def get_project_items(self, project_id: str, status_field: str = "Status") -> list[ProjectItem]:
        """List all issue items on the board that belong to this repository."""
        items: list[ProjectItem] = []
        cursor: str | None = None

        while True:
            data = await self._graphql(
                PROJECT_ITEMS_QUERY,
                {"projectId": project_id, "fieldName": status_field, "cursor": cursor},
            )
            page = ((data.get("node") or {}).get("items")) or {}

            for node in page.get("nodes") or []:
                content = node.get("content") or {}
                if "number" not in content:
                    continue
                if (content.get("repository") or {}).get("nameWithOwner", "").lower() != self.full_name.lower():
                    continue
                status_value = node.get("fieldValueByName") or {}
                items.append(
                    ProjectItem(
                        item_id=node["id"],
                        issue_number=content["number"],
                        title=content.get("title", ""),
                        status_name=status_value.get("name"),
                        issue_state=IssueState.OPEN if content.get("state") == "OPEN" else IssueState.CLOSED,
                        labels=[label["name"] for label in (content.get("labels") or {}).get("nodes") or []],
                    )
                )

            page_info = page.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            cursor = page_info.get("endCursor")

        log.debug("project_items_loaded", project_id=project_id, count=len(items))
        return items

    async def set_item_status(self, project_id: str, item_id: str, field_id: str, option_id: str) -> None:
        """Update the single-select status of a board item."""
        await self._graphql(
            UPDATE_STATUS_MUTATION,
            {"projectId": project_id, "itemId": item_id, "fieldId": field_id, "optionId": option_id},
        )

    async def add_issue_to_project(self, project_id: str, issue_number: int) -> str:
        """Add an existing issue to the board."""
        node_id = await self._call(lambda: self._repo.get_issue(issue_number).node_id)
        data = await self._graphql(ADD_ITEM_MUTATION, {"projectId": project_id, "contentId": node_id})
        return data["addProjectV2ItemById"]["item"]["id"]

    async def _call(self, func: Callable[[], T]) -> T:
        """Run a PyGithub call and record the remaining rate-limit budget."""
        result = await _run_sync(func)
        if self._client is not None:
            remaining, _ = self._client.rate_limiting
            self.rate_limit_remaining = remaining
        return result

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Execute a GraphQL request.

        Raises:
            ExternalServiceError: On HTTP errors or GraphQL-level errors
        """
        if self._http is None:
            raise ExternalServiceError("GitHub provider is not connected")

        try:
            response = await self._http.post(self.graphql_url, json={"query": query, "variables": variables})
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"GitHub GraphQL request failed: {e}") from e

        remaining = response.headers.get("x-ratelimit-remaining")
        if remaining is not None and remaining.isdigit():
            self.rate_limit_remaining = int(remaining)

        if response.status_code >= 400:
            raise ExternalServiceError(
                "GitHub GraphQL request failed",
                status_code=response.status_code,
                response_text=response.text,
            )

        payload = response.json()
        if payload.get("errors"):
            messages = "; ".join(error.get("message", "unknown error") for error in payload["errors"])
            raise ExternalServiceError(f"GitHub GraphQL error: {messages}")

        return payload.get("data") or {}

    def _convert_issue(self, gh_issue: GHIssue) -> Issue:
        """Convert GitHub Issue to our Issue model."""
        return Issue(
            id=gh_issue.id,
            number=gh_issue.number,
            title=gh_issue.title,
            body=gh_issue.body or "",
            state=IssueState.CLOSED if gh_issue.state == "closed" else IssueState.OPEN,
            labels=[label.name for label in gh_issue.labels],
            created_at=gh_issue.created_at,
            updated_at=gh_issue.updated_at,
            author=gh_issue.user.login if gh_issue.user else "unknown",
            url=gh_issue.html_url,
        )

    def _convert_comment(self, gh_comment: GHComment) -> Comment:
        """Convert GitHub Comment to our Comment model."""
        return Comment(
            id=gh_comment.id,
            body=gh_comment.body or "",
            author=gh_comment.user.login if gh_comment.user else "unknown",
            created_at=gh_comment.created_at,
        )

    def _convert_pull_request(self, gh_pr: GHPullRequest) -> PullRequest:
        """Convert GitHub PullRequest to our PullRequest model."""
        return PullRequest(
            id=gh_pr.id,
            number=gh_pr.number,
            title=gh_pr.title,
            body=gh_pr.body or "",
            head=gh_pr.head.ref,
            base=gh_pr.base.ref,
            state=gh_pr.state,
            url=gh_pr.html_url,
            created_at=gh_pr.created_at,
            author=gh_pr.user.login if gh_pr.user else "",
            head_sha=gh_pr.head.sha,
            mergeable=gh_pr.mergeable,
            mergeable_state=gh_pr.mergeable_state,
            merged=bool(gh_pr.merged),
        )
