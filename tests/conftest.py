"""Shared fixtures: an in-memory GitHub and local git stand-in, and spec builders."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from repo_agents.config import AgentSpec, RuntimeSettings
from repo_agents.outputs.base import RunContext


def _http_error(status: int, path: str) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", f"https://api.github.com{path}")
    return httpx.HTTPStatusError(
        f"{status} error", request=request, response=httpx.Response(status, request=request)
    )


@dataclass
class FakeGitHub:
    """Implements the GitHubClient methods the dispatcher, outputs and audit use."""

    permissions: dict[str, str] = field(default_factory=dict)
    org_members: set[str] = field(default_factory=set)
    team_members: set[tuple[str, str, str]] = field(default_factory=set)
    runs: list[dict] = field(default_factory=list)
    repo_labels: list[str] = field(default_factory=lambda: ["bug", "enhancement", "triage"])
    issue_labels: dict[int, list[str]] = field(default_factory=dict)
    issues: dict[int, dict] = field(default_factory=dict)
    blocked_by: dict[int, list[dict]] = field(default_factory=dict)
    blocking: dict[int, list[dict]] = field(default_factory=dict)
    pulls: list[dict] = field(default_factory=list)
    categories: dict[str, str] = field(default_factory=lambda: {"General": "DIC_general"})
    files: dict[str, str] = field(default_factory=dict)

    calls: list[tuple[str, tuple]] = field(default_factory=list)
    fail_on: set[str] = field(default_factory=set)

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.fail_on:
            raise _http_error(500, f"/{name}")

    def called(self, name: str) -> list[tuple]:
        return [args for call, args in self.calls if call == name]

    # authorization
    async def get_collaborator_permission(self, owner, repo, username):
        self._record("get_collaborator_permission", username)
        return self.permissions.get(username, "none")

    async def is_org_member(self, org, username):
        self._record("is_org_member", org, username)
        return username in self.org_members

    async def is_team_member(self, org, team_slug, username):
        self._record("is_team_member", org, team_slug, username)
        return (org, team_slug, username) in self.team_members

    # runs
    async def list_workflow_runs(self, owner, repo, workflow_file, *, status="completed", per_page=20):
        self._record("list_workflow_runs", workflow_file)
        return list(self.runs)

    # issues and labels
    async def list_repo_labels(self, owner, repo):
        self._record("list_repo_labels")
        return list(self.repo_labels)

    async def get_issue_labels(self, owner, repo, issue_number):
        self._record("get_issue_labels", issue_number)
        return list(self.issue_labels.get(issue_number, []))

    async def set_issue_labels(self, owner, repo, issue_number, labels):
        self._record("set_issue_labels", issue_number, list(labels))
        self.issue_labels[issue_number] = list(labels)
        return list(labels)

    async def list_blocked_by(self, owner, repo, issue_number):
        self._record("list_blocked_by", issue_number)
        return self.blocked_by.get(issue_number, [])

    async def list_blocking(self, owner, repo, issue_number):
        self._record("list_blocking", issue_number)
        return self.blocking.get(issue_number, [])

    async def get_issue(self, owner, repo, issue_number):
        self._record("get_issue", issue_number)
        return self.issues.get(issue_number, {"number": issue_number, "state": "open"})

    async def list_issues(self, owner, repo, *, labels=None, state="open", per_page=100):
        self._record("list_issues", labels, state)
        wanted = set(labels.split(",")) if labels else set()
        return [
            i
            for i in self.issues.values()
            if i.get("state", "open") == state
            and wanted <= {label["name"] for label in i.get("labels", [])}
        ]

    async def create_issue(self, owner, repo, title, body, labels=None, assignees=None):
        self._record("create_issue", title, body, labels or [], assignees or [])
        number = max([100, *self.issues]) + 1
        issue = {
            "number": number,
            "title": title,
            "body": body,
            "state": "open",
            "labels": [{"name": label} for label in labels or []],
            "html_url": f"https://github.com/acme/widgets/issues/{number}",
        }
        self.issues[number] = issue
        return issue

    async def comment_on_issue(self, owner, repo, issue_number, body):
        self._record("comment_on_issue", issue_number, body)
        return {"id": len(self.calls), "html_url": f"https://github.com/acme/widgets/issues/{issue_number}#c"}

    async def close_issue(self, owner, repo, issue_number, *, state_reason=None):
        self._record("close_issue", issue_number, state_reason)
        self.issues.setdefault(issue_number, {"number": issue_number})["state"] = "closed"
        return self.issues[issue_number]

    # pull requests
    async def list_pull_requests(self, owner, repo, *, state="open", head=None, per_page=100):
        self._record("list_pull_requests", state, head)
        return [p for p in self.pulls if head is None or p["head"] == head]

    async def create_pull_request(self, owner, repo, title, body, head, base):
        self._record("create_pull_request", title, body, head, base)
        pr = {"number": 200 + len(self.pulls), "head": f"{owner}:{head}", "html_url": "https://github.com/acme/widgets/pull/1"}
        self.pulls.append(pr)
        return pr

    async def merge_pull_request(self, owner, repo, pr_number, *, merge_method="squash"):
        self._record("merge_pull_request", pr_number, merge_method)
        return {"merged": True}

    async def close_pull_request(self, owner, repo, pr_number):
        self._record("close_pull_request", pr_number)
        return {"state": "closed"}

    async def delete_branch(self, owner, repo, branch):
        self._record("delete_branch", branch)
        return False

    # repository
    async def get_repo(self, owner, repo):
        self._record("get_repo")
        return {"default_branch": "main"}

    async def get_file_sha(self, owner, repo, path, *, ref=None):
        self._record("get_file_sha", path, ref)
        return "sha-" + path if path in self.files else None

    async def put_file(self, owner, repo, path, content, message, *, sha=None, branch=None):
        self._record("put_file", path, content, message, sha, branch)
        self.files[path] = content
        return {"commit": {"sha": f"c-{len(self.files)}"}}

    async def get_discussion_categories(self, owner, repo):
        self._record("get_discussion_categories")
        return "R_repo", dict(self.categories)

    async def create_discussion(self, repository_id, category_id, title, body):
        self._record("create_discussion", repository_id, category_id, title, body)
        return {"number": 7, "url": "https://github.com/acme/widgets/discussions/7"}


@dataclass
class FakeGit:
    """Stands in for GitWorkspace without touching a repository."""

    signing_key: bool = False
    calls: list[tuple[str, tuple]] = field(default_factory=list)

    async def can_sign(self) -> bool:
        return self.signing_key

    async def delete_local_branch(self, branch):
        self.calls.append(("delete_local_branch", (branch,)))
        return False

    async def checkout_new_branch(self, branch, base):
        self.calls.append(("checkout_new_branch", (branch, base)))

    def write_files(self, files):
        self.calls.append(("write_files", tuple(f["path"] for f in files)))
        return [f["path"] for f in files]

    async def commit(self, message, paths, *, sign=False):
        self.calls.append(("commit", (message, tuple(paths), sign)))
        return "abc123"

    async def push(self, branch):
        self.calls.append(("push", (branch,)))


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def make_spec():
    """Build an AgentSpec from frontmatter-shaped keyword arguments."""

    def _make(name: str = "Issue Triage", **fields: Any) -> AgentSpec:
        return AgentSpec(name=name, **fields)

    return _make


@pytest.fixture
def settings(tmp_path) -> RuntimeSettings:
    return RuntimeSettings(
        repository="acme/widgets",
        run_id="9001",
        run_number="17",
        workflow="Repo Agents",
        outputs_dir=tmp_path / "outputs",
        audit_dir=tmp_path / "audit",
        github_output=tmp_path / "github_output",
        step_summary=tmp_path / "step_summary.md",
    )


@pytest.fixture
def make_run(fake_github, fake_git, settings):
    """RunContext bound to the fakes, for a given agent."""

    def _make(spec: AgentSpec, *, target_number: int | None = 42, git=fake_git) -> RunContext:
        return RunContext.from_settings(
            settings, fake_github, spec, target_number=target_number, git=git
        )

    return _make


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
