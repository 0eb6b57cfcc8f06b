"""Concurrency planning: event debouncing for the compiled workflow.

Runs for the same work item share a debounce key; a newer run cancels an
older in-flight one, except when the newer run was caused by an automated
actor editing or relabelling that item (typically an agent's own output).

The policy is expressed twice over one definition: as expression trees for
the workflow document, and as plain functions over an :class:`InboundEvent`
for the dispatcher and for tests. ``github_context`` bridges the two.
"""

from __future__ import annotations

from typing import Any, Iterable

from repo_agents.config import AgentSpec
from repo_agents.models import SELF_TRIGGER_ACTIONS, InboundEvent
from repo_agents.workflow.document import Concurrency
from repo_agents.workflow.expressions import (
    Expr,
    Template,
    all_of,
    any_of,
    call,
    eq,
    lit,
    not_,
    ref,
)

GROUP_PREFIX = "agents"

ITEM_NUMBER_REFS = (
    "github.event.issue.number",
    "github.event.pull_request.number",
    "github.event.discussion.number",
)


def debounce_group() -> Template:
    """``agents-<event>-<item number, or run id when there is none>``."""
    identity = any_of(*(ref(path) for path in ITEM_NUMBER_REFS), ref("github.run_id"))
    return Template((f"{GROUP_PREFIX}-", ref("github.event_name"), "-", identity))


def self_trigger_condition() -> Expr:
    """True when an automated actor edited or relabelled the item."""
    return all_of(
        call("endsWith", ref("github.actor"), lit("[bot]")),
        any_of(*(eq(ref("github.event.action"), a) for a in sorted(SELF_TRIGGER_ACTIONS))),
    )


def cancel_in_progress() -> Expr:
    return not_(self_trigger_condition())


def plan_concurrency(specs: Iterable[AgentSpec]) -> Concurrency | None:
    """Whole-document concurrency block, or None when any agent opts out."""
    specs = list(specs)
    if any(not spec.concurrency for spec in specs):
        return None
    return Concurrency(group=debounce_group(), cancel_in_progress=cancel_in_progress())


# ── Evaluation for a concrete event ──────────────────────────────────────────


def debounce_key(event: InboundEvent, run_id: str | int) -> str:
    number = event.item_number
    identity = str(number) if number is not None else str(run_id)
    return f"{GROUP_PREFIX}-{event.event_name}-{identity}"


def cancels_in_progress(event: InboundEvent) -> bool:
    return not event.is_self_trigger


def github_context(event: InboundEvent, run_id: str | int) -> dict[str, Any]:
    """Expression evaluation context equivalent to the runner's ``github``."""
    return {
        "github": {
            "event_name": event.event_name,
            "event": event.payload,
            "actor": event.actor,
            "run_id": str(run_id),
        }
    }
