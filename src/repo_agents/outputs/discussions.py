"""create-discussion: start a GitHub Discussion in an existing category."""

from __future__ import annotations

from repo_agents.config import OutputConfig
from repo_agents.models import OutputKind
from repo_agents.outputs.base import ApplyResult, OutputHandler, RunContext, require_string


async def _categories(run: RunContext) -> tuple[str, dict[str, str]]:
    if "discussion_categories" not in run.cache:
        run.cache["discussion_categories"] = await run.github.get_discussion_categories(
            run.owner, run.repo
        )
    return run.cache["discussion_categories"]


class CreateDiscussionHandler(OutputHandler):
    kind = OutputKind.CREATE_DISCUSSION
    summary = "Start a discussion in one of the repository's existing categories."
    example = {"title": "Weekly dependency report", "body": "...", "category": "General"}

    async def context(self, run: RunContext) -> str | None:
        _, categories = await _categories(run)
        if not categories:
            return None
        return "Discussion categories: " + ", ".join(sorted(categories))

    async def validate_instance(self, config: OutputConfig, run: RunContext, data: dict) -> list[str]:
        reasons = require_string(data, "title") + require_string(data, "body")
        category_errors = require_string(data, "category")
        if category_errors:
            return reasons + category_errors

        _, categories = await _categories(run)
        if data["category"] not in categories:
            reasons.append(f"discussion category '{data['category']}' does not exist")
        return reasons

    async def apply(self, config: OutputConfig, run: RunContext, data: dict) -> ApplyResult:
        repository_id, categories = await _categories(run)
        discussion = await run.github.create_discussion(
            repository_id,
            categories[data["category"]],
            data["title"],
            run.with_footer(data["body"]),
        )
        return ApplyResult.applied(
            f"started discussion #{discussion['number']}",
            number=discussion["number"],
            url=discussion.get("url"),
        )
