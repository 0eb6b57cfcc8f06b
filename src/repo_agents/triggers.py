"""Trigger aggregation: merge every agent's triggers into one ``on:`` block.

The compiled workflow listens to the union of all agents' events; the
dispatcher later decides per agent whether an event concerns it
(:func:`matches_event`).
"""

from __future__ import annotations

from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict

from repo_agents.config import AgentSpec, slugify
from repo_agents.models import InboundEvent

ITEM_EVENTS = ("issues", "pull_request", "discussion")

MANUAL_INPUT_DESCRIPTION = "Specific agent to run (leave empty to auto-route)"


class TriggerSet(BaseModel):
    """Union of triggers across agents. Every collection is sorted."""

    model_config = ConfigDict(frozen=True)

    issues: tuple[str, ...] = ()
    pull_request: tuple[str, ...] = ()
    discussion: tuple[str, ...] = ()
    schedule: tuple[str, ...] = ()
    repository_dispatch: tuple[str, ...] = ()

    def to_document(self) -> dict[str, Any]:
        """The workflow ``on:`` mapping."""
        on: dict[str, Any] = {}
        for event in ITEM_EVENTS:
            types = getattr(self, event)
            if types:
                on[event] = {"types": list(types)}
        if self.schedule:
            on["schedule"] = [{"cron": cron} for cron in self.schedule]
        if self.repository_dispatch:
            on["repository_dispatch"] = {"types": list(self.repository_dispatch)}
        on["workflow_dispatch"] = {
            "inputs": {
                "agent": {
                    "description": MANUAL_INPUT_DESCRIPTION,
                    "required": False,
                    "type": "string",
                }
            }
        }
        return on


def aggregate_triggers(specs: Iterable[AgentSpec]) -> TriggerSet:
    """Union all agents' triggers.

    An agent that retries when a blocker closes needs ``issues: closed``
    even if no agent declares it.
    """
    item_types: dict[str, set[str]] = {event: set() for event in ITEM_EVENTS}
    crons: set[str] = set()
    dispatch_types: set[str] = set()

    for spec in specs:
        for event in ITEM_EVENTS:
            item_types[event].update(getattr(spec.on, event))
        crons.update(spec.on.schedule)
        dispatch_types.update(spec.on.repository_dispatch)
        if spec.check_blocking_issues:
            item_types["issues"].add("closed")

    return TriggerSet(
        issues=tuple(sorted(item_types["issues"])),
        pull_request=tuple(sorted(item_types["pull_request"])),
        discussion=tuple(sorted(item_types["discussion"])),
        schedule=tuple(sorted(crons)),
        repository_dispatch=tuple(sorted(dispatch_types)),
    )


def names_agent(spec: AgentSpec, requested: str) -> bool:
    return requested in (spec.name, spec.slug) or slugify(requested) == spec.slug


def matches_event(spec: AgentSpec, event: InboundEvent) -> bool:
    """Whether the agent's own trigger declaration covers this event."""
    match event.event_name:
        case "workflow_dispatch":
            if event.requested_agent:
                return names_agent(spec, event.requested_agent)
            return spec.on.workflow_dispatch
        case "schedule":
            if event.schedule is None:
                return bool(spec.on.schedule)
            return event.schedule in spec.on.schedule
        case "repository_dispatch":
            return event.action in spec.on.repository_dispatch
        case "issues" | "pull_request" | "discussion":
            return event.action in getattr(spec.on, event.event_name)
        case _:
            return False
