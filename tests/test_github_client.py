"""Contract tests for GitHubClient: verify HTTP request shapes.

Uses `respx` to intercept httpx requests at the transport level.
These tests verify that GitHubClient methods send the correct:
- HTTP method
- URL path
- JSON payload structure
- Authorization headers

and map GitHub's "not found" style responses to plain return values.
"""

from __future__ import annotations

import base64
import json
import time

import httpx
import pytest
import respx

from repo_agents.github_client import GitHubClient

API = "https://api.github.com"


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def github():
    """GitHubClient with a pre-set installation token (skips JWT auth)."""
    client = GitHubClient(
        app_id="12345",
        private_key="fake",
        installation_id="67890",
        owner="acme",
        repo="widgets",
    )
    # Pre-set a fake token so we skip the JWT exchange in tests
    client._token = "ghs_fake_installation_token"
    client._token_expires_at = time.time() + 3600
    return client


@pytest.fixture
async def started_github(github):
    """Client with httpx started."""
    await github.start()
    yield github
    await github.close()


# ── Authentication ───────────────────────────────────────────────────────────


class TestAuthentication:
    @respx.mock
    async def test_installation_token_header(self, started_github):
        route = respx.get(f"{API}/repos/acme/widgets/issues/42").mock(
            return_value=httpx.Response(200, json={"number": 42})
        )

        await started_github.get_issue("acme", "widgets", 42)

        request = route.calls[0].request
        assert request.headers["Authorization"] == "token ghs_fake_installation_token"

    @respx.mock
    async def test_static_token_without_app(self):
        route = respx.get(f"{API}/repos/acme/widgets").mock(
            return_value=httpx.Response(200, json={"default_branch": "main"})
        )
        async with GitHubClient(token="ghs_workflow") as client:
            repo = await client.get_repo("acme", "widgets")

        assert repo["default_branch"] == "main"
        assert route.calls[0].request.headers["Authorization"] == "token ghs_workflow"

    async def test_no_credentials(self):
        async with GitHubClient() as client:
            with pytest.raises(RuntimeError, match="No GitHub credentials"):
                await client.get_repo("acme", "widgets")

    @respx.mock
    async def test_app_failure_falls_back_to_static_token(self, monkeypatch):
        client = GitHubClient(
            token="ghs_workflow", app_id="1", private_key="key", owner="acme", repo="widgets"
        )
        monkeypatch.setattr(client, "_generate_jwt", lambda: "jwt")
        respx.get(f"{API}/repos/acme/widgets/installation").mock(
            return_value=httpx.Response(404, json={"message": "Not Found"})
        )
        route = respx.get(f"{API}/repos/acme/widgets").mock(
            return_value=httpx.Response(200, json={"default_branch": "main"})
        )

        async with client:
            await client.get_repo("acme", "widgets")

        assert route.calls[0].request.headers["Authorization"] == "token ghs_workflow"
        assert not client.uses_app_auth

    @respx.mock
    async def test_exchanges_installation_token(self, monkeypatch):
        client = GitHubClient(app_id="1", private_key="key", owner="acme", repo="widgets")
        monkeypatch.setattr(client, "_generate_jwt", lambda: "jwt")
        lookup = respx.get(f"{API}/repos/acme/widgets/installation").mock(
            return_value=httpx.Response(200, json={"id": 555})
        )
        exchange = respx.post(f"{API}/app/installations/555/access_tokens").mock(
            return_value=httpx.Response(201, json={"token": "ghs_minted"})
        )
        route = respx.get(f"{API}/repos/acme/widgets").mock(
            return_value=httpx.Response(200, json={"default_branch": "main"})
        )

        async with client:
            await client.get_repo("acme", "widgets")

        assert route.calls[0].request.headers["Authorization"] == "token ghs_minted"
        assert lookup.calls[0].request.headers["Authorization"] == "Bearer jwt"
        assert exchange.called
        assert client.installation_id == "555"


# ── Actor Authorization ──────────────────────────────────────────────────────


class TestCollaboratorPermission:
    @respx.mock
    async def test_prefers_role_name(self, started_github):
        respx.get(f"{API}/repos/acme/widgets/collaborators/alice/permission").mock(
            return_value=httpx.Response(200, json={"permission": "write", "role_name": "maintain"})
        )
        assert await started_github.get_collaborator_permission("acme", "widgets", "alice") == "maintain"

    @respx.mock
    async def test_not_a_collaborator(self, started_github):
        respx.get(f"{API}/repos/acme/widgets/collaborators/mallory/permission").mock(
            return_value=httpx.Response(404, json={"message": "Not Found"})
        )
        assert await started_github.get_collaborator_permission("acme", "widgets", "mallory") == "none"

    @respx.mock
    async def test_server_error_propagates(self, started_github):
        respx.get(f"{API}/repos/acme/widgets/collaborators/alice/permission").mock(
            return_value=httpx.Response(502)
        )
        with pytest.raises(httpx.HTTPStatusError):
            await started_github.get_collaborator_permission("acme", "widgets", "alice")


class TestOrgMembership:
    @respx.mock
    async def test_member(self, started_github):
        respx.get(f"{API}/orgs/acme/members/alice").mock(return_value=httpx.Response(204))
        assert await started_github.is_org_member("acme", "alice") is True

    @respx.mock
    async def test_not_member(self, started_github):
        respx.get(f"{API}/orgs/acme/members/mallory").mock(return_value=httpx.Response(404))
        assert await started_github.is_org_member("acme", "mallory") is False

    @respx.mock
    async def test_redirect_means_not_visible(self, started_github):
        respx.get(f"{API}/orgs/acme/members/bob").mock(
            return_value=httpx.Response(302, headers={"Location": f"{API}/orgs/acme/public_members/bob"})
        )
        assert await started_github.is_org_member("acme", "bob") is False

    @respx.mock
    async def test_team_membership_active(self, started_github):
        respx.get(f"{API}/orgs/acme/teams/core/memberships/alice").mock(
            return_value=httpx.Response(200, json={"state": "active", "role": "member"})
        )
        assert await started_github.is_team_member("acme", "core", "alice") is True

    @respx.mock
    async def test_team_membership_pending(self, started_github):
        respx.get(f"{API}/orgs/acme/teams/core/memberships/bob").mock(
            return_value=httpx.Response(200, json={"state": "pending"})
        )
        assert await started_github.is_team_member("acme", "core", "bob") is False


# ── Workflow Runs ────────────────────────────────────────────────────────────


class TestListWorkflowRuns:
    @respx.mock
    async def test_request_shape(self, started_github):
        route = respx.get(f"{API}/repos/acme/widgets/actions/workflows/agents.yml/runs").mock(
            return_value=httpx.Response(
                200, json={"total_count": 1, "workflow_runs": [{"id": 1, "conclusion": "success"}]}
            )
        )

        runs = await started_github.list_workflow_runs("acme", "widgets", "agents.yml")

        assert runs == [{"id": 1, "conclusion": "success"}]
        params = route.calls[0].request.url.params
        assert params["status"] == "completed"
        assert params["per_page"] == "20"


# ── Issue Operations ─────────────────────────────────────────────────────────


class TestIssues:
    @respx.mock
    async def test_create_issue(self, started_github):
        route = respx.post(f"{API}/repos/acme/widgets/issues").mock(
            return_value=httpx.Response(201, json={"number": 99, "title": "New issue"})
        )

        result = await started_github.create_issue(
            "acme", "widgets", "New issue", "Body text", labels=["bug"], assignees=["alice"]
        )

        assert result["number"] == 99
        body = json.loads(route.calls[0].request.content)
        assert body == {
            "title": "New issue",
            "body": "Body text",
            "labels": ["bug"],
            "assignees": ["alice"],
        }

    @respx.mock
    async def test_list_issues_filters_pull_requests(self, started_github):
        route = respx.get(f"{API}/repos/acme/widgets/issues").mock(
            return_value=httpx.Response(
                200,
                json=[
                    {"number": 1, "title": "Issue"},
                    {"number": 2, "title": "PR", "pull_request": {"url": "..."}},
                ],
            )
        )

        issues = await started_github.list_issues("acme", "widgets", labels="agent-failure")

        assert [i["number"] for i in issues] == [1]
        assert route.calls[0].request.url.params["labels"] == "agent-failure"

    @respx.mock
    async def test_list_issues_follows_pages(self, started_github):
        def page(request):
            number = int(request.url.params["page"])
            if number == 1:
                return httpx.Response(200, json=[{"number": n, "title": "x"} for n in range(1, 101)])
            return httpx.Response(200, json=[{"number": 150, "title": "Tracker"}])

        route = respx.get(f"{API}/repos/acme/widgets/issues").mock(side_effect=page)

        issues = await started_github.list_issues("acme", "widgets")

        assert len(issues) == 101
        assert issues[-1]["title"] == "Tracker"
        assert [c.request.url.params["page"] for c in route.calls] == ["1", "2"]

    @respx.mock
    async def test_close_issue_with_reason(self, started_github):
        route = respx.patch(f"{API}/repos/acme/widgets/issues/5").mock(
            return_value=httpx.Response(200, json={"number": 5, "state": "closed"})
        )

        await started_github.close_issue("acme", "widgets", 5, state_reason="not_planned")

        body = json.loads(route.calls[0].request.content)
        assert body == {"state": "closed", "state_reason": "not_planned"}

    @respx.mock
    async def test_comment(self, started_github):
        route = respx.post(f"{API}/repos/acme/widgets/issues/42/comments").mock(
            return_value=httpx.Response(201, json={"id": 1})
        )
        await started_github.comment_on_issue("acme", "widgets", 42, "Hello")
        assert json.loads(route.calls[0].request.content) == {"body": "Hello"}

    @respx.mock
    async def test_blocked_by(self, started_github):
        respx.get(f"{API}/repos/acme/widgets/issues/10/dependencies/blocked_by").mock(
            return_value=httpx.Response(200, json=[{"number": 3, "state": "open"}])
        )
        result = await started_github.list_blocked_by("acme", "widgets", 10)
        assert result == [{"number": 3, "state": "open"}]


# ── Labels ───────────────────────────────────────────────────────────────────


class TestLabels:
    @respx.mock
    async def test_set_labels_replaces_full_set(self, started_github):
        route = respx.put(f"{API}/repos/acme/widgets/issues/42/labels").mock(
            return_value=httpx.Response(200, json=[{"name": "bug"}, {"name": "triage"}])
        )

        labels = await started_github.set_issue_labels("acme", "widgets", 42, ["bug", "triage"])

        assert labels == ["bug", "triage"]
        assert json.loads(route.calls[0].request.content) == {"labels": ["bug", "triage"]}

    @respx.mock
    async def test_repo_labels_are_names(self, started_github):
        respx.get(f"{API}/repos/acme/widgets/labels").mock(
            return_value=httpx.Response(200, json=[{"name": "bug", "color": "f00"}])
        )
        assert await started_github.list_repo_labels("acme", "widgets") == ["bug"]


# ── PR Operations ────────────────────────────────────────────────────────────


class TestPullRequests:
    @respx.mock
    async def test_list_by_head(self, started_github):
        route = respx.get(f"{API}/repos/acme/widgets/pulls").mock(
            return_value=httpx.Response(200, json=[])
        )
        await started_github.list_pull_requests("acme", "widgets", head="acme:agents/fix")
        params = route.calls[0].request.url.params
        assert params["head"] == "acme:agents/fix"
        assert params["state"] == "open"

    @respx.mock
    async def test_merge(self, started_github):
        route = respx.put(f"{API}/repos/acme/widgets/pulls/7/merge").mock(
            return_value=httpx.Response(200, json={"merged": True})
        )
        await started_github.merge_pull_request("acme", "widgets", 7, merge_method="rebase")
        assert json.loads(route.calls[0].request.content) == {"merge_method": "rebase"}

    @respx.mock
    async def test_close(self, started_github):
        route = respx.patch(f"{API}/repos/acme/widgets/pulls/7").mock(
            return_value=httpx.Response(200, json={"state": "closed"})
        )
        await started_github.close_pull_request("acme", "widgets", 7)
        assert json.loads(route.calls[0].request.content) == {"state": "closed"}


# ── Repository Operations ────────────────────────────────────────────────────


class TestRepositoryContents:
    @respx.mock
    async def test_delete_missing_branch(self, started_github):
        respx.delete(f"{API}/repos/acme/widgets/git/refs/heads/agents/fix").mock(
            return_value=httpx.Response(422, json={"message": "Reference does not exist"})
        )
        assert await started_github.delete_branch("acme", "widgets", "agents/fix") is False

    @respx.mock
    async def test_file_sha_missing(self, started_github):
        respx.get(f"{API}/repos/acme/widgets/contents/docs/new.md").mock(
            return_value=httpx.Response(404)
        )
        assert await started_github.get_file_sha("acme", "widgets", "docs/new.md") is None

    @respx.mock
    async def test_put_file_encodes_content(self, started_github):
        route = respx.put(f"{API}/repos/acme/widgets/contents/docs/a.md").mock(
            return_value=httpx.Response(200, json={"commit": {"sha": "abc"}})
        )

        await started_github.put_file(
            "acme", "widgets", "docs/a.md", "hello\n", "docs: update", sha="old", branch="main"
        )

        body = json.loads(route.calls[0].request.content)
        assert base64.b64decode(body["content"]).decode() == "hello\n"
        assert body["sha"] == "old"
        assert body["branch"] == "main"
        assert body["message"] == "docs: update"


# ── Discussions ──────────────────────────────────────────────────────────────


class TestDiscussions:
    @respx.mock
    async def test_categories(self, started_github):
        respx.post(f"{API}/graphql").mock(
            return_value=httpx.Response(
                200,
                json={
                    "data": {
                        "repository": {
                            "id": "R_1",
                            "discussionCategories": {
                                "nodes": [{"id": "C_1", "name": "General"}]
                            },
                        }
                    }
                },
            )
        )
        repo_id, categories = await started_github.get_discussion_categories("acme", "widgets")
        assert repo_id == "R_1"
        assert categories == {"General": "C_1"}

    @respx.mock
    async def test_graphql_errors_raise(self, started_github):
        respx.post(f"{API}/graphql").mock(
            return_value=httpx.Response(200, json={"errors": [{"message": "boom"}]})
        )
        with pytest.raises(RuntimeError, match="boom"):
            await started_github.get_discussion_categories("acme", "widgets")


# ── Rate Limits ──────────────────────────────────────────────────────────────


class TestRateLimitTracking:
    @respx.mock
    async def test_headers_update_remaining(self, started_github):
        respx.get(f"{API}/repos/acme/widgets").mock(
            return_value=httpx.Response(
                200,
                json={},
                headers={"X-RateLimit-Remaining": "4321", "X-RateLimit-Reset": "1700000000"},
            )
        )
        await started_github.get_repo("acme", "widgets")
        assert started_github._rate_limit_remaining == 4321
        assert started_github._rate_limit_reset == 1700000000.0
