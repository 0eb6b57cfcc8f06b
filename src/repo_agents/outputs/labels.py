"""add-label / remove-label.

Both read the item's current labels immediately before writing and merge
against them, so labels another actor changed since the run started are
kept.
"""

from __future__ import annotations

from repo_agents.config import OutputConfig
from repo_agents.models import OutputKind
from repo_agents.outputs.base import (
    ApplyResult,
    OutputHandler,
    RunContext,
    optional_int,
    require_string_list,
)


class AddLabelHandler(OutputHandler):
    kind = OutputKind.ADD_LABEL
    summary = "Add existing repository labels to the triggering issue or pull request."
    example = {"labels": ["bug", "needs-triage"]}

    async def context(self, run: RunContext) -> str | None:
        labels = await run.repo_labels()
        if not labels:
            return None
        return "Labels available in this repository: " + ", ".join(sorted(labels))

    def limits(self, config: OutputConfig) -> list[str]:
        limits = super().limits(config)
        if config.blocked_labels:
            limits.append("these labels may not be added: " + ", ".join(config.blocked_labels))
        return limits

    async def validate_instance(self, config: OutputConfig, run: RunContext, data: dict) -> list[str]:
        reasons = require_string_list(data, "labels") + optional_int(data, "issue_number")
        if run.target(data) is None:
            reasons.append("no issue or pull request to label")
        if reasons:
            return reasons

        existing = set(await run.repo_labels())
        for label in data["labels"]:
            if label in config.blocked_labels:
                reasons.append(f"label '{label}' is blocked for this agent")
            elif label not in existing:
                reasons.append(f"label '{label}' does not exist in this repository")
        return reasons

    async def apply(self, config: OutputConfig, run: RunContext, data: dict) -> ApplyResult:
        number = run.target(data)
        current = await run.github.get_issue_labels(run.owner, run.repo, number)
        added = [label for label in data["labels"] if label not in current]
        if not added:
            return ApplyResult.skipped(f"#{number} already has {', '.join(data['labels'])}")
        labels = await run.github.set_issue_labels(run.owner, run.repo, number, current + added)
        return ApplyResult.applied(f"added {', '.join(added)} to #{number}", labels=labels)


class RemoveLabelHandler(OutputHandler):
    kind = OutputKind.REMOVE_LABEL
    summary = "Remove labels from the triggering issue or pull request."
    example = {"labels": ["needs-triage"]}

    async def validate_instance(self, config: OutputConfig, run: RunContext, data: dict) -> list[str]:
        reasons = require_string_list(data, "labels") + optional_int(data, "issue_number")
        if run.target(data) is None:
            reasons.append("no issue or pull request to unlabel")
        return reasons

    async def apply(self, config: OutputConfig, run: RunContext, data: dict) -> ApplyResult:
        number = run.target(data)
        current = await run.github.get_issue_labels(run.owner, run.repo, number)
        remaining = [label for label in current if label not in data["labels"]]
        if remaining == current:
            return ApplyResult.skipped(f"#{number} has none of {', '.join(data['labels'])}")
        labels = await run.github.set_issue_labels(run.owner, run.repo, number, remaining)
        removed = [label for label in current if label not in remaining]
        return ApplyResult.applied(f"removed {', '.join(removed)} from #{number}", labels=labels)
