"""create-issue / close-issue."""

from __future__ import annotations

from repo_agents.config import OutputConfig
from repo_agents.models import OutputKind
from repo_agents.outputs.base import (
    ApplyResult,
    OutputHandler,
    RunContext,
    optional_int,
    require_string,
)

MAX_TITLE_LENGTH = 256

CLOSE_REASONS = ("completed", "not_planned")


class CreateIssueHandler(OutputHandler):
    kind = OutputKind.CREATE_ISSUE
    summary = "Open a new issue. Labels must already exist in the repository."
    example = {
        "title": "Flaky test: test_parser_handles_unicode",
        "body": "Seen failing in 3 of the last 10 runs.",
        "labels": ["bug"],
        "assignees": [],
    }

    async def context(self, run: RunContext) -> str | None:
        labels = await run.repo_labels()
        if not labels:
            return None
        return "Labels available for new issues: " + ", ".join(sorted(labels))

    async def validate_instance(self, config: OutputConfig, run: RunContext, data: dict) -> list[str]:
        reasons = require_string(data, "title", max_length=MAX_TITLE_LENGTH)
        reasons += require_string(data, "body")
        for key in ("labels", "assignees"):
            value = data.get(key, [])
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                reasons.append(f"'{key}' must be an array of strings")

        labels = data.get("labels") or []
        if isinstance(labels, list) and labels:
            existing = set(await run.repo_labels())
            for label in labels:
                if isinstance(label, str) and label not in existing:
                    reasons.append(f"label '{label}' does not exist in this repository")
        return reasons

    async def apply(self, config: OutputConfig, run: RunContext, data: dict) -> ApplyResult:
        issue = await run.github.create_issue(
            run.owner,
            run.repo,
            data["title"],
            run.with_footer(data["body"]),
            labels=data.get("labels") or [],
            assignees=data.get("assignees") or [],
        )
        return ApplyResult.applied(
            f"opened #{issue['number']}", number=issue["number"], url=issue.get("html_url")
        )


class CloseIssueHandler(OutputHandler):
    kind = OutputKind.CLOSE_ISSUE
    summary = (
        "Close the triggering issue (or `issue_number`), optionally leaving a comment. "
        "`state_reason` is `completed` or `not_planned`."
    )
    example = {"state_reason": "completed", "comment": "Fixed by #123."}

    async def validate_instance(self, config: OutputConfig, run: RunContext, data: dict) -> list[str]:
        reasons = optional_int(data, "issue_number")
        reason = data.get("state_reason", "completed")
        if reason not in CLOSE_REASONS:
            reasons.append(f"'state_reason' must be one of {', '.join(CLOSE_REASONS)}")
        if "comment" in data:
            reasons += require_string(data, "comment")
        if run.target(data) is None:
            reasons.append("no issue to close")
        return reasons

    async def apply(self, config: OutputConfig, run: RunContext, data: dict) -> ApplyResult:
        number = run.target(data)
        issue = await run.github.get_issue(run.owner, run.repo, number)
        if issue.get("state") == "closed":
            return ApplyResult.skipped(f"#{number} is already closed")
        if data.get("comment"):
            await run.github.comment_on_issue(
                run.owner, run.repo, number, run.with_footer(data["comment"])
            )
        await run.github.close_issue(
            run.owner, run.repo, number, state_reason=data.get("state_reason", "completed")
        )
        return ApplyResult.applied(f"closed #{number}")
