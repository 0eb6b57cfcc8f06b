"""create-pr / close-pr."""

from __future__ import annotations

import logging
import re

from repo_agents.config import OutputConfig
from repo_agents.models import OutputKind
from repo_agents.outputs.base import (
    ApplyResult,
    OutputHandler,
    RunContext,
    optional_int,
    require_string,
)
from repo_agents.outputs.files import signing_reasons, validate_files

logger = logging.getLogger(__name__)

BRANCH_PATTERN = re.compile(r"^[a-zA-Z0-9/_.-]+$")

MERGE_METHODS = ("merge", "squash", "rebase")


class CreatePullRequestHandler(OutputHandler):
    kind = OutputKind.CREATE_PR
    summary = (
        "Commit files to a new branch and open a pull request against the default branch. "
        "Re-running with the same branch does not open a second pull request."
    )
    example = {
        "branch": "agents/fix-typo-readme",
        "title": "Fix typo in README",
        "body": "Fixes #42.",
        "files": [{"path": "README.md", "content": "..."}],
    }

    def limits(self, config: OutputConfig) -> list[str]:
        limits = super().limits(config)
        if config.allowed_paths:
            limits.append("allowed paths: " + ", ".join(config.allowed_paths))
        if config.sign:
            limits.append("commits are signed")
        return limits

    async def validate_instance(self, config: OutputConfig, run: RunContext, data: dict) -> list[str]:
        reasons = require_string(data, "branch")
        if not reasons and not BRANCH_PATTERN.match(data["branch"]):
            reasons.append(f"branch '{data['branch']}' may only contain letters, digits, /, _, . and -")
        elif not reasons and data["branch"] == run.base_branch:
            reasons.append("branch must differ from the base branch")
        reasons += require_string(data, "title") + require_string(data, "body")
        reasons += validate_files(data.get("files"), config.allowed_paths or None)
        if run.git is None:
            reasons.append("no local checkout is available to commit from")
        else:
            reasons += await signing_reasons(config, run)
        return reasons

    async def apply(self, config: OutputConfig, run: RunContext, data: dict) -> ApplyResult:
        branch = data["branch"]
        base = data.get("base") or run.base_branch

        existing = await run.github.list_pull_requests(
            run.owner, run.repo, state="open", head=f"{run.owner}:{branch}"
        )
        if existing:
            pr = existing[0]
            return ApplyResult.skipped(f"pull request #{pr['number']} already exists for {branch}")

        # Leftovers from an earlier attempt that failed before opening the PR
        await run.github.delete_branch(run.owner, run.repo, branch)
        await run.git.delete_local_branch(branch)

        await run.git.checkout_new_branch(branch, base)
        paths = run.git.write_files(data["files"])
        message = data.get("commit_message") or data["title"]
        sha = await run.git.commit(message, paths, sign=config.sign)
        await run.git.push(branch)

        pr = await run.github.create_pull_request(
            run.owner, run.repo, data["title"], run.with_footer(data["body"]), head=branch, base=base
        )
        return ApplyResult.applied(
            f"opened #{pr['number']} from {branch}",
            number=pr["number"],
            url=pr.get("html_url"),
            commit=sha,
        )


class ClosePullRequestHandler(OutputHandler):
    kind = OutputKind.CLOSE_PR
    summary = (
        "Close the triggering pull request (or `pr_number`). Set `merge: true` to merge it "
        "instead of closing it unmerged."
    )
    example = {"merge": False, "comment": "Superseded by #57."}

    async def validate_instance(self, config: OutputConfig, run: RunContext, data: dict) -> list[str]:
        reasons = optional_int(data, "pr_number")
        if "merge" in data and not isinstance(data["merge"], bool):
            reasons.append("'merge' must be true or false")
        if data.get("merge_method", "squash") not in MERGE_METHODS:
            reasons.append(f"'merge_method' must be one of {', '.join(MERGE_METHODS)}")
        if "comment" in data:
            reasons += require_string(data, "comment")
        if run.target(data, "pr_number") is None:
            reasons.append("no pull request to close")
        return reasons

    async def apply(self, config: OutputConfig, run: RunContext, data: dict) -> ApplyResult:
        number = run.target(data, "pr_number")
        if data.get("comment"):
            await run.github.comment_on_issue(
                run.owner, run.repo, number, run.with_footer(data["comment"])
            )
        if data.get("merge"):
            await run.github.merge_pull_request(
                run.owner, run.repo, number, merge_method=data.get("merge_method", "squash")
            )
            return ApplyResult.applied(f"merged #{number}")
        await run.github.close_pull_request(run.owner, run.repo, number)
        return ApplyResult.applied(f"closed #{number}")
