"""GitHub API client for repo-agents.

Authenticates with a GitHub App installation token when App credentials are
available and falls back to the workflow's ``GITHUB_TOKEN`` otherwise.
Tracks rate limits and exposes async REST/GraphQL operations via httpx.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from datetime import datetime, timezone

import httpx
import jwt as pyjwt

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"


class GitHubClient:
    """Async GitHub API client."""

    def __init__(
        self,
        *,
        token: str | None = None,
        app_id: str | None = None,
        private_key: str | None = None,
        installation_id: str | None = None,
        owner: str | None = None,
        repo: str | None = None,
        base_url: str = GITHUB_API,
    ):
        self.app_id = app_id
        self.private_key = private_key
        self.installation_id = installation_id
        self.base_url = base_url

        # Repository the app installation is looked up for
        self.owner = owner
        self.repo = repo

        # Static workflow token, used when no App is configured or App auth fails
        self._fallback_token = token

        # Installation access token (cached, 1-hour TTL)
        self._token: str | None = None
        self._token_expires_at: float = 0

        # Rate limit tracking
        self._rate_limit_remaining: int = 5000
        self._rate_limit_reset: float = 0
        self._rate_limit_reserve: int = 50
        self._rate_limit_lock: asyncio.Lock | None = None

        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "repo-agents/0.1.0",
            },
            timeout=30.0,
        )
        self._rate_limit_lock = asyncio.Lock()
        logger.info("GitHub client started")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> GitHubClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GitHub client not started")
        return self._client

    @property
    def uses_app_auth(self) -> bool:
        return bool(self.app_id and self.private_key)

    # ── Authentication ───────────────────────────────────────────────────

    async def _ensure_token(self) -> str:
        """Get a valid access token, refreshing the installation token if expired.

        GitHub App auth flow:
        1. Generate JWT from App ID + private key
        2. Resolve the installation for the repository (if not given)
        3. Exchange JWT for installation access token (valid 1 hour)

        Any failure in the App flow falls back to the static token when one
        is configured.
        """
        if self._token and time.time() < self._token_expires_at - 60:
            return self._token

        if not self.uses_app_auth:
            if not self._fallback_token:
                raise RuntimeError("No GitHub credentials configured. Set GITHUB_TOKEN")
            return self._fallback_token

        try:
            return await self._exchange_installation_token()
        except (httpx.HTTPError, pyjwt.PyJWTError, ValueError) as e:
            if not self._fallback_token:
                raise
            logger.warning("GitHub App token unavailable (%s), falling back to GITHUB_TOKEN", e)
            self.app_id = None
            return self._fallback_token

    async def _exchange_installation_token(self) -> str:
        jwt = self._generate_jwt()
        headers = {"Authorization": f"Bearer {jwt}"}

        if not self.installation_id:
            if not self.owner or not self.repo:
                raise ValueError("owner/repo required to resolve the App installation")
            resp = await self.client.get(
                f"/repos/{self.owner}/{self.repo}/installation", headers=headers
            )
            resp.raise_for_status()
            self.installation_id = str(resp.json()["id"])

        last_error: httpx.Response | None = None
        max_retries = 3
        for attempt in range(max_retries):
            resp = await self.client.post(
                f"/app/installations/{self.installation_id}/access_tokens",
                headers=headers,
            )
            if resp.status_code == 201:
                self._token = resp.json()["token"]
                self._token_expires_at = time.time() + 3500  # ~58 min (conservative)
                logger.info("Refreshed GitHub installation token (expires in ~58m)")
                return self._token
            last_error = resp
            wait = min(2**attempt, 4)
            logger.warning(
                "Token exchange attempt %d/%d failed (%d): %s; retrying in %ds",
                attempt + 1,
                max_retries,
                resp.status_code,
                resp.text[:100],
                wait,
            )
            await asyncio.sleep(wait)
            jwt = self._generate_jwt()
            headers = {"Authorization": f"Bearer {jwt}"}

        last_error.raise_for_status()
        raise RuntimeError(f"Installation token exchange failed ({last_error.status_code})")

    def _generate_jwt(self) -> str:
        """Generate a JWT for GitHub App authentication."""
        now = int(time.time())
        payload = {
            "iat": now - 10,  # Issued 10 seconds in the past for clock skew
            "exp": now + 540,  # Expires in 9 minutes (keep under 10-min GitHub limit)
            "iss": self.app_id,
        }
        return pyjwt.encode(payload, self.private_key, algorithm="RS256")

    async def _auth_headers(self) -> dict[str, str]:
        token = await self._ensure_token()
        return {"Authorization": f"token {token}"}

    # ── Rate Limit Tracking ──────────────────────────────────────────────

    def _update_rate_limit(self, response: httpx.Response) -> None:
        """Track rate limits from response headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining:
            self._rate_limit_remaining = int(remaining)
        if reset:
            self._rate_limit_reset = float(reset)

        if self._rate_limit_remaining < 100:
            logger.warning(
                "GitHub API rate limit low: %d remaining (resets at %s)",
                self._rate_limit_remaining,
                datetime.fromtimestamp(self._rate_limit_reset, tz=timezone.utc).isoformat(),
            )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Make an authenticated API request with rate limit throttling.

        When remaining quota drops below the reserve threshold, requests
        are serialized through a lock. If quota is fully exhausted, we sleep
        until the reset window.
        """
        if self._rate_limit_lock and self._rate_limit_remaining <= self._rate_limit_reserve:
            async with self._rate_limit_lock:
                await self._wait_for_rate_limit_reset()
                return await self._do_request(method, path, **kwargs)
        return await self._do_request(method, path, **kwargs)

    async def _do_request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = await self._auth_headers()
        headers.update(kwargs.pop("headers", {}))
        resp = await self.client.request(method, path, headers=headers, **kwargs)
        self._update_rate_limit(resp)
        resp.raise_for_status()
        return resp

    async def _wait_for_rate_limit_reset(self) -> None:
        if self._rate_limit_remaining > 0:
            return
        wait = max(0, self._rate_limit_reset - time.time()) + 1  # +1s buffer
        logger.warning("Rate limit exhausted, sleeping %.1fs until reset", wait)
        await asyncio.sleep(wait)
        self._rate_limit_remaining = 100  # optimistic reset

    # ── Actor Authorization ──────────────────────────────────────────────

    async def get_collaborator_permission(self, owner: str, repo: str, username: str) -> str:
        """Return 'admin', 'maintain', 'write', 'triage', 'read' or 'none'."""
        try:
            resp = await self._request(
                "GET", f"/repos/{owner}/{repo}/collaborators/{username}/permission"
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return "none"
            raise
        data = resp.json()
        # role_name distinguishes maintain/triage; permission collapses them
        return data.get("role_name") or data.get("permission", "none")

    async def is_org_member(self, org: str, username: str) -> bool:
        try:
            resp = await self._request(
                "GET", f"/orgs/{org}/members/{username}", follow_redirects=False
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (302, 404):
                return False
            raise
        return resp.status_code == 204

    async def is_team_member(self, org: str, team_slug: str, username: str) -> bool:
        try:
            resp = await self._request(
                "GET", f"/orgs/{org}/teams/{team_slug}/memberships/{username}"
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return False
            raise
        return resp.json().get("state") == "active"

    # ── Workflow Runs ────────────────────────────────────────────────────

    async def list_workflow_runs(
        self,
        owner: str,
        repo: str,
        workflow_file: str,
        *,
        status: str | None = "completed",
        per_page: int = 20,
    ) -> list[dict]:
        """List runs of a workflow file, most recent first."""
        params: dict[str, str | int] = {"per_page": per_page}
        if status:
            params["status"] = status
        resp = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/actions/workflows/{workflow_file}/runs",
            params=params,
        )
        return resp.json().get("workflow_runs", [])

    # ── Issue Operations ─────────────────────────────────────────────────

    async def list_issues(
        self,
        owner: str,
        repo: str,
        *,
        labels: str | None = None,
        state: str = "open",
        per_page: int = 100,
        max_pages: int = 10,
    ) -> list[dict]:
        """List issues for a repository, optionally filtered by labels.

        Follows pages until a short page or ``max_pages`` is reached.

        Args:
            labels: Comma-separated label names, e.g. ``"agent-failure"``.
            state: ``"open"``, ``"closed"``, or ``"all"``.
        """
        params: dict[str, str | int] = {"state": state, "per_page": per_page}
        if labels:
            params["labels"] = labels
        issues: list[dict] = []
        for page in range(1, max_pages + 1):
            resp = await self._request(
                "GET", f"/repos/{owner}/{repo}/issues", params={**params, "page": page}
            )
            batch = resp.json()
            # Filter out pull requests (GitHub returns PRs in the issues endpoint)
            issues.extend(i for i in batch if "pull_request" not in i)
            if len(batch) < per_page:
                break
        return issues

    async def get_issue(self, owner: str, repo: str, issue_number: int) -> dict:
        resp = await self._request("GET", f"/repos/{owner}/{repo}/issues/{issue_number}")
        return resp.json()

    async def create_issue(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        labels: list[str] | None = None,
        assignees: list[str] | None = None,
    ) -> dict:
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues",
            json={
                "title": title,
                "body": body,
                "labels": labels or [],
                "assignees": assignees or [],
            },
        )
        return resp.json()

    async def comment_on_issue(self, owner: str, repo: str, issue_number: int, body: str) -> dict:
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            json={"body": body},
        )
        return resp.json()

    async def close_issue(
        self, owner: str, repo: str, issue_number: int, *, state_reason: str | None = None
    ) -> dict:
        payload: dict = {"state": "closed"}
        if state_reason:
            payload["state_reason"] = state_reason
        resp = await self._request(
            "PATCH", f"/repos/{owner}/{repo}/issues/{issue_number}", json=payload
        )
        return resp.json()

    async def list_blocked_by(self, owner: str, repo: str, issue_number: int) -> list[dict]:
        """Issues recorded as blocking this one."""
        resp = await self._request(
            "GET", f"/repos/{owner}/{repo}/issues/{issue_number}/dependencies/blocked_by"
        )
        return resp.json()

    async def list_blocking(self, owner: str, repo: str, issue_number: int) -> list[dict]:
        """Issues this one is recorded as blocking."""
        resp = await self._request(
            "GET", f"/repos/{owner}/{repo}/issues/{issue_number}/dependencies/blocking"
        )
        return resp.json()

    # ── Labels ───────────────────────────────────────────────────────────

    async def list_repo_labels(self, owner: str, repo: str) -> list[str]:
        resp = await self._request(
            "GET", f"/repos/{owner}/{repo}/labels", params={"per_page": 100}
        )
        return [label["name"] for label in resp.json()]

    async def get_issue_labels(self, owner: str, repo: str, issue_number: int) -> list[str]:
        resp = await self._request(
            "GET", f"/repos/{owner}/{repo}/issues/{issue_number}/labels", params={"per_page": 100}
        )
        return [label["name"] for label in resp.json()]

    async def set_issue_labels(
        self, owner: str, repo: str, issue_number: int, labels: list[str]
    ) -> list[str]:
        """Replace the full label set of an issue or PR."""
        resp = await self._request(
            "PUT",
            f"/repos/{owner}/{repo}/issues/{issue_number}/labels",
            json={"labels": labels},
        )
        return [label["name"] for label in resp.json()]

    # ── PR Operations ────────────────────────────────────────────────────

    async def list_pull_requests(
        self,
        owner: str,
        repo: str,
        *,
        state: str = "open",
        head: str | None = None,
        per_page: int = 100,
    ) -> list[dict]:
        """List pull requests for a repository.

        Args:
            state: ``"open"``, ``"closed"``, or ``"all"``.
            head: Filter by head user/branch, e.g. ``"user:branch"``.
        """
        params: dict[str, str | int] = {"state": state, "per_page": per_page}
        if head:
            params["head"] = head
        resp = await self._request("GET", f"/repos/{owner}/{repo}/pulls", params=params)
        return resp.json()

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> dict:
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )
        return resp.json()

    async def merge_pull_request(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        *,
        merge_method: str = "squash",
    ) -> dict:
        """Merge a pull request.

        Args:
            merge_method: 'merge', 'squash', or 'rebase'.
        """
        resp = await self._request(
            "PUT",
            f"/repos/{owner}/{repo}/pulls/{pr_number}/merge",
            json={"merge_method": merge_method},
        )
        return resp.json()

    async def close_pull_request(self, owner: str, repo: str, pr_number: int) -> dict:
        resp = await self._request(
            "PATCH", f"/repos/{owner}/{repo}/pulls/{pr_number}", json={"state": "closed"}
        )
        return resp.json()

    # ── Repository Operations ────────────────────────────────────────────

    async def get_repo(self, owner: str, repo: str) -> dict:
        resp = await self._request("GET", f"/repos/{owner}/{repo}")
        return resp.json()

    async def delete_branch(self, owner: str, repo: str, branch: str) -> bool:
        """Delete a branch from the repository.

        Returns:
            True if deleted successfully, False if branch didn't exist.
        """
        try:
            await self._request("DELETE", f"/repos/{owner}/{repo}/git/refs/heads/{branch}")
            logger.info("Deleted branch %s/%s:%s", owner, repo, branch)
            return True
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (404, 422):  # Reference does not exist
                logger.debug("Branch %s does not exist (already deleted?)", branch)
                return False
            raise

    async def get_file_sha(
        self, owner: str, repo: str, path: str, *, ref: str | None = None
    ) -> str | None:
        """Blob SHA of a file, or None if it doesn't exist yet."""
        params = {"ref": ref} if ref else None
        try:
            resp = await self._request(
                "GET", f"/repos/{owner}/{repo}/contents/{path}", params=params
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise
        return resp.json().get("sha")

    async def put_file(
        self,
        owner: str,
        repo: str,
        path: str,
        content: str,
        message: str,
        *,
        sha: str | None = None,
        branch: str | None = None,
    ) -> dict:
        """Create or update a file through the Contents API."""
        payload: dict = {
            "message": message,
            "content": base64.b64encode(content.encode()).decode(),
        }
        if sha:
            payload["sha"] = sha
        if branch:
            payload["branch"] = branch
        resp = await self._request(
            "PUT", f"/repos/{owner}/{repo}/contents/{path}", json=payload
        )
        return resp.json()

    # ── Discussions (GraphQL) ────────────────────────────────────────────

    async def graphql(self, query: str, variables: dict | None = None) -> dict:
        resp = await self._request(
            "POST", "/graphql", json={"query": query, "variables": variables or {}}
        )
        body = resp.json()
        if body.get("errors"):
            raise RuntimeError(f"GraphQL error: {body['errors'][0].get('message')}")
        return body.get("data", {})

    async def get_discussion_categories(self, owner: str, repo: str) -> tuple[str, dict[str, str]]:
        """Return (repository node id, {category name: category id})."""
        data = await self.graphql(
            """
            query($owner: String!, $repo: String!) {
              repository(owner: $owner, name: $repo) {
                id
                discussionCategories(first: 50) { nodes { id name } }
              }
            }
            """,
            {"owner": owner, "repo": repo},
        )
        repository = data["repository"]
        categories = {
            node["name"]: node["id"] for node in repository["discussionCategories"]["nodes"]
        }
        return repository["id"], categories

    async def create_discussion(
        self, repository_id: str, category_id: str, title: str, body: str
    ) -> dict:
        data = await self.graphql(
            """
            mutation($repositoryId: ID!, $categoryId: ID!, $title: String!, $body: String!) {
              createDiscussion(input: {
                repositoryId: $repositoryId, categoryId: $categoryId, title: $title, body: $body
              }) { discussion { number url } }
            }
            """,
            {
                "repositoryId": repository_id,
                "categoryId": category_id,
                "title": title,
                "body": body,
            },
        )
        return data["createDiscussion"]["discussion"]
