"""Core data models for repo-agents."""

from __future__ import annotations

import enum
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field


# ── Enumerations ─────────────────────────────────────────────────────────────


class OutputKind(str, enum.Enum):
    """Every side effect an agent may request. Closed set."""

    ADD_COMMENT = "add-comment"
    ADD_LABEL = "add-label"
    REMOVE_LABEL = "remove-label"
    CREATE_ISSUE = "create-issue"
    CREATE_DISCUSSION = "create-discussion"
    CREATE_PR = "create-pr"
    UPDATE_FILE = "update-file"
    CLOSE_ISSUE = "close-issue"
    CLOSE_PR = "close-pr"


class SkipReason(str, enum.Enum):
    """Why the dispatcher declined to run an agent, in check order."""

    NO_TRIGGER_MATCH = "no_trigger_match"
    UNAUTHORIZED_ACTOR = "unauthorized_actor"
    LABEL_ABSENT = "label_absent"
    RATE_LIMITED = "rate_limited"
    BLOCKING_ITEM_OPEN = "blocking_item_open"


class InstanceOutcome(str, enum.Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"  # idempotent no-op, e.g. PR already open
    FAILED = "failed"
    NOT_APPLIED = "not_applied"


class KindStatus(str, enum.Enum):
    APPLIED = "applied"
    REJECTED = "rejected"  # validation failed, nothing applied
    FAILED = "failed"  # an execution error stopped the kind
    EMPTY = "no_instances"


# ── Inbound Events ───────────────────────────────────────────────────────────

_ITEM_KEYS = ("issue", "pull_request", "discussion")

# Sub-actions an automated actor's own writes produce on the item it touched.
SELF_TRIGGER_ACTIONS = frozenset({"edited", "labeled", "unlabeled"})


class InboundEvent(BaseModel):
    """A repository event as seen by the dispatcher job."""

    model_config = ConfigDict(frozen=True)

    event_name: str = Field(description="GITHUB_EVENT_NAME, e.g. 'issues', 'schedule'")
    action: str | None = Field(default=None, description="Sub-action, e.g. 'opened'")
    actor: str = Field(default="", description="Login of the actor that caused the event")
    payload: dict = Field(default_factory=dict, description="Full event payload")
    schedule: str | None = Field(default=None, description="Cron expression for schedule events")
    requested_agent: str | None = Field(
        default=None, description="Agent named by a manual invocation, if any"
    )

    @property
    def full_type(self) -> str:
        """e.g. 'issues.opened', 'schedule'."""
        if self.action:
            return f"{self.event_name}.{self.action}"
        return self.event_name

    @property
    def is_bot(self) -> bool:
        return self.actor.endswith("[bot]")

    @property
    def is_self_trigger(self) -> bool:
        """An automated actor edited or relabelled an item."""
        return self.is_bot and self.action in SELF_TRIGGER_ACTIONS

    @property
    def item_kind(self) -> str | None:
        for key in _ITEM_KEYS:
            if isinstance(self.payload.get(key), dict):
                return key
        return None

    @property
    def item(self) -> dict | None:
        kind = self.item_kind
        return self.payload[kind] if kind else None

    @property
    def item_number(self) -> int | None:
        item = self.item
        if item is None:
            return None
        return item.get("number")

    @property
    def item_labels(self) -> list[str]:
        item = self.item or {}
        return [label["name"] for label in item.get("labels", []) if "name" in label]

    @property
    def repository(self) -> str | None:
        return (self.payload.get("repository") or {}).get("full_name")

    @classmethod
    def from_payload(
        cls,
        event_name: str,
        payload: dict,
        *,
        actor: str | None = None,
        schedule: str | None = None,
        requested_agent: str | None = None,
    ) -> InboundEvent:
        if actor is None:
            actor = (payload.get("sender") or {}).get("login", "")
        if requested_agent is None and event_name == "workflow_dispatch":
            requested_agent = (payload.get("inputs") or {}).get("agent")
        if schedule is None and event_name == "schedule":
            schedule = payload.get("schedule")
        action = payload.get("action")
        if action is None and event_name == "repository_dispatch":
            action = payload.get("event_type")
        return cls(
            event_name=event_name,
            action=action,
            actor=actor,
            payload=payload,
            schedule=schedule,
            requested_agent=requested_agent or None,
        )

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> InboundEvent:
        """Build the event from a GitHub Actions runner environment."""
        env = os.environ if env is None else env
        payload: dict = {}
        event_path = env.get("GITHUB_EVENT_PATH")
        if event_path and Path(event_path).exists():
            payload = json.loads(Path(event_path).read_text())
        return cls.from_payload(
            env.get("GITHUB_EVENT_NAME", ""),
            payload,
            actor=env.get("GITHUB_ACTOR") or None,
            schedule=env.get("GITHUB_EVENT_SCHEDULE") or None,
            requested_agent=env.get("WORKFLOW_DISPATCH_AGENT") or None,
        )


# ── Dispatch ─────────────────────────────────────────────────────────────────


class DispatchVerdict(BaseModel):
    """Admission decision for one agent on one event."""

    agent: str
    admitted: bool
    reason: SkipReason | None = Field(default=None, description="First failing check")
    detail: str = ""
    all_reasons: list[SkipReason] = Field(
        default_factory=list, description="Every failing check, when collected"
    )
    target_number: int | None = Field(
        default=None, description="Issue/PR/discussion the agent should act on"
    )

    @classmethod
    def admit(cls, agent: str, target_number: int | None = None) -> DispatchVerdict:
        return cls(agent=agent, admitted=True, target_number=target_number)

    @classmethod
    def skip(
        cls,
        agent: str,
        reason: SkipReason,
        detail: str = "",
        *,
        all_reasons: list[SkipReason] | None = None,
        target_number: int | None = None,
    ) -> DispatchVerdict:
        return cls(
            agent=agent,
            admitted=False,
            reason=reason,
            detail=detail,
            all_reasons=all_reasons or [reason],
            target_number=target_number,
        )

    @property
    def skip_message(self) -> str:
        if self.admitted or self.reason is None:
            return ""
        if self.detail:
            return f"{self.reason.value}: {self.detail}"
        return self.reason.value


# ── Output Protocol ──────────────────────────────────────────────────────────


class OutputInstance(BaseModel):
    """One requested side effect of a given kind, as written by the agent."""

    model_config = ConfigDict(frozen=True)

    kind: OutputKind
    ordinal: int = Field(description="1-based position among instances of this kind")
    source: str = Field(description="File the instance was read from")
    data: dict = Field(default_factory=dict)
    parse_error: str | None = None


class ValidationVerdict(BaseModel):
    passed: bool = True
    reasons: list[str] = Field(default_factory=list)

    @classmethod
    def from_reasons(cls, reasons: list[str]) -> ValidationVerdict:
        return cls(passed=not reasons, reasons=list(reasons))


class InstanceReport(BaseModel):
    ordinal: int
    source: str
    validation: ValidationVerdict = Field(default_factory=ValidationVerdict)
    outcome: InstanceOutcome = InstanceOutcome.NOT_APPLIED
    detail: str = ""
    result: dict[str, Any] = Field(default_factory=dict)


class KindReport(BaseModel):
    """Result of validating and applying every instance of one kind."""

    kind: OutputKind
    status: KindStatus
    instances: list[InstanceReport] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list, description="Kind-level errors")

    @property
    def failed(self) -> bool:
        return self.status in (KindStatus.REJECTED, KindStatus.FAILED)

    def failure_messages(self) -> list[str]:
        messages = [f"{self.kind.value}: {e}" for e in self.errors]
        for inst in self.instances:
            for reason in inst.validation.reasons:
                messages.append(f"{self.kind.value} #{inst.ordinal}: {reason}")
            if inst.outcome == InstanceOutcome.FAILED:
                messages.append(f"{self.kind.value} #{inst.ordinal}: {inst.detail}")
        return messages


# ── Audit ────────────────────────────────────────────────────────────────────

FailureCategory = Literal["execution", "output", "permission", "platform"]


class FailureReason(BaseModel):
    category: FailureCategory
    message: str
    severity: Literal["error", "warning"] = "error"


class AuditRecord(BaseModel):
    """Everything known about one agent's part in one event."""

    agent: str
    slug: str
    verdict: DispatchVerdict | None = None
    job_result: str = Field(default="skipped", description="success, failure, cancelled, skipped")
    outputs: list[KindReport] = Field(default_factory=list)
    failures: list[FailureReason] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return any(f.severity == "error" for f in self.failures)


class AuditManifest(BaseModel):
    schema_version: str = "1.0.0"
    run_id: str = ""
    run_url: str = ""
    event: str = ""
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    records: list[AuditRecord] = Field(default_factory=list)
    platform_errors: list[str] = Field(
        default_factory=list, description="Event-wide failures, e.g. a failed preflight"
    )

    @property
    def failed_agents(self) -> list[str]:
        return [r.agent for r in self.records if r.failed]

    def record_for(self, agent: str) -> AuditRecord | None:
        for record in self.records:
            if record.agent == agent or record.slug == agent:
                return record
        return None
