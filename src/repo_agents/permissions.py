"""Permission aggregation for the compiled workflow's token."""

from __future__ import annotations

from typing import Iterable

from pydantic import BaseModel, ConfigDict

from repo_agents.config import AgentSpec
from repo_agents.models import OutputKind

# The dispatcher reads runs (actions), the audit stage files issues.
MANDATED: dict[str, str] = {"actions": "write", "contents": "read", "issues": "write"}

# Scopes the workflow token needs when it applies an output kind itself
# (no GitHub App token available).
OUTPUT_SCOPES: dict[OutputKind, tuple[str, ...]] = {
    OutputKind.ADD_COMMENT: ("issues", "pull-requests"),
    OutputKind.ADD_LABEL: ("issues", "pull-requests"),
    OutputKind.REMOVE_LABEL: ("issues", "pull-requests"),
    OutputKind.CREATE_ISSUE: ("issues",),
    OutputKind.CREATE_DISCUSSION: ("discussions",),
    OutputKind.CREATE_PR: ("contents", "pull-requests"),
    OutputKind.UPDATE_FILE: ("contents",),
    OutputKind.CLOSE_ISSUE: ("issues",),
    OutputKind.CLOSE_PR: ("contents", "pull-requests"),
}

_RANK = {"read": 1, "write": 2}


class PermissionSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    scopes: tuple[tuple[str, str], ...] = ()

    def level(self, scope: str) -> str | None:
        return dict(self.scopes).get(scope)

    def to_document(self) -> dict[str, str]:
        return dict(self.scopes)


def _upgrade(current: str | None, requested: str) -> str:
    if current is None or _RANK[requested] > _RANK[current]:
        return requested
    return current


def required_scopes(spec: AgentSpec) -> dict[str, str]:
    """Declared permissions plus write access for every enabled output kind."""
    needed: dict[str, str] = {}
    for scope, level in spec.permissions.items():
        needed[scope] = _upgrade(needed.get(scope), level)
    for kind in spec.outputs:
        for scope in OUTPUT_SCOPES[kind]:
            needed[scope] = "write"
    return needed


def aggregate_permissions(specs: Iterable[AgentSpec]) -> PermissionSet:
    """Most permissive level per scope across all agents, plus mandated scopes.

    Levels only ever go up: an agent asking for ``read`` never lowers a
    ``write`` granted by another agent or by the mandated set.
    """
    merged: dict[str, str] = dict(MANDATED)
    for spec in specs:
        for scope, level in required_scopes(spec).items():
            merged[scope] = _upgrade(merged.get(scope), level)
    return PermissionSet(scopes=tuple(sorted(merged.items())))
