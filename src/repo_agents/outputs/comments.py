"""add-comment: post a comment on an issue or pull request."""

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

# GitHub rejects comment bodies longer than this
MAX_COMMENT_LENGTH = 65536


class AddCommentHandler(OutputHandler):
    kind = OutputKind.ADD_COMMENT
    summary = (
        "Post a comment on the issue or pull request that triggered this run, "
        "or on the one given by `issue_number`."
    )
    example = {"body": "Thanks for the report. I could reproduce this on main."}

    async def validate_instance(self, config: OutputConfig, run: RunContext, data: dict) -> list[str]:
        reasons = require_string(data, "body") + optional_int(data, "issue_number")
        if not reasons and len(run.with_footer(data["body"])) > MAX_COMMENT_LENGTH:
            reasons.append(f"'body' exceeds {MAX_COMMENT_LENGTH} characters")
        if run.target(data) is None:
            reasons.append("no issue or pull request to comment on")
        return reasons

    async def apply(self, config: OutputConfig, run: RunContext, data: dict) -> ApplyResult:
        number = run.target(data)
        comment = await run.github.comment_on_issue(
            run.owner, run.repo, number, run.with_footer(data["body"])
        )
        return ApplyResult.applied(f"commented on #{number}", url=comment.get("html_url"))
