"""Dispatcher decision engine: decide, per agent, whether an event runs it.

Checks run in a fixed order and stop at the first failure:

    1. trigger match          the agent's own triggers cover the event
    2. actor authorization    admin/write collaborator, org member or allow-list
    3. required labels        the item carries at least one trigger label
    4. rate limit             enough time since the last successful run
    5. blocking companion     no open issue blocks the item (opt-in)

A failing check is a :class:`DispatchVerdict` with a :class:`SkipReason`,
never an exception. Lookups are cached per engine so that evaluating many
agents against one event costs one API call per distinct question.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Mapping

import httpx

from repo_agents.config import AgentSpec
from repo_agents.github_client import GitHubClient
from repo_agents.models import DispatchVerdict, InboundEvent, SkipReason
from repo_agents.triggers import matches_event

logger = logging.getLogger(__name__)

LLM_CREDENTIALS = ("ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN")

WRITE_ROLES = frozenset({"admin", "maintain", "write"})


class PreflightError(Exception):
    """A platform precondition is missing; no agent may run for this event."""


def run_global_preflight(env: Mapping[str, str] | None = None) -> None:
    """Verify event-wide preconditions before any agent is evaluated.

    Raises:
        PreflightError: If no language-model credential is configured.
    """
    env = os.environ if env is None else env
    if not any(env.get(name) for name in LLM_CREDENTIALS):
        raise PreflightError(
            "No model credential configured: set the ANTHROPIC_API_KEY or "
            "CLAUDE_CODE_OAUTH_TOKEN repository secret"
        )


@dataclass
class CheckResult:
    passed: bool
    detail: str = ""

    @classmethod
    def ok(cls, detail: str = "") -> CheckResult:
        return cls(True, detail)

    @classmethod
    def fail(cls, detail: str) -> CheckResult:
        return cls(False, detail)


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class DispatchEngine:
    """Evaluates admission for each agent against one inbound event."""

    def __init__(
        self,
        github: GitHubClient,
        owner: str,
        repo: str,
        *,
        workflow_file: str = "agents.yml",
        current_run_id: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.github = github
        self.owner = owner
        self.repo = repo
        self.workflow_file = workflow_file
        self.current_run_id = current_run_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._permissions: dict[str, str] = {}
        self._org_members: dict[str, bool] = {}
        self._team_members: dict[tuple[str, str, str], bool] = {}
        self._labels: dict[int, list[str]] = {}
        self._blockers: dict[int, list[int]] = {}
        self._unblocked: dict[int, list[dict]] = {}
        self._last_success: datetime | None = None
        self._last_success_loaded = False

    # ── Public API ───────────────────────────────────────────────────────

    async def evaluate(
        self, spec: AgentSpec, event: InboundEvent, *, collect_all: bool = False
    ) -> DispatchVerdict:
        """Run the ordered checks for one agent.

        With ``collect_all`` the remaining checks still run after a failure
        so that ``all_reasons`` lists every failing check; ``reason`` is
        always the first one.
        """
        target, trigger = await self._check_trigger(spec, event)
        checks: list[tuple[SkipReason, Callable[[], Awaitable[CheckResult]]]] = [
            (SkipReason.UNAUTHORIZED_ACTOR, lambda: self._check_actor(spec, event)),
            (SkipReason.LABEL_ABSENT, lambda: self._check_labels(spec, target)),
            (SkipReason.RATE_LIMITED, lambda: self._check_rate_limit(spec)),
            (SkipReason.BLOCKING_ITEM_OPEN, lambda: self._check_blocking(spec, target)),
        ]

        failures: list[tuple[SkipReason, str]] = []
        if not trigger.passed:
            failures.append((SkipReason.NO_TRIGGER_MATCH, trigger.detail))
        for reason, check in checks:
            if failures and not collect_all:
                break
            result = await check()
            if not result.passed:
                failures.append((reason, result.detail))

        if not failures:
            logger.info("Agent %s admitted for %s", spec.name, event.full_type)
            return DispatchVerdict.admit(spec.name, target_number=target)

        reason, detail = failures[0]
        logger.info("Agent %s skipped: %s (%s)", spec.name, reason.value, detail)
        for other, other_detail in failures[1:]:
            logger.info("Agent %s would also skip: %s (%s)", spec.name, other.value, other_detail)
        return DispatchVerdict.skip(
            spec.name,
            reason,
            detail,
            all_reasons=[r for r, _ in failures],
            target_number=target,
        )

    async def evaluate_all(
        self, specs: Iterable[AgentSpec], event: InboundEvent, *, collect_all: bool = False
    ) -> list[DispatchVerdict]:
        """One independent verdict per agent, in input order."""
        verdicts = []
        for spec in specs:
            verdicts.append(await self.evaluate(spec, event, collect_all=collect_all))
        return verdicts

    # ── 1. Trigger match ─────────────────────────────────────────────────

    async def _check_trigger(
        self, spec: AgentSpec, event: InboundEvent
    ) -> tuple[int | None, CheckResult]:
        if matches_event(spec, event):
            return event.item_number, CheckResult.ok()

        if event.full_type == "issues.closed" and spec.check_blocking_issues:
            number = event.item_number
            for issue in await self._unblocked_by(number):
                labels = [label["name"] for label in issue.get("labels", [])]
                if not spec.trigger_labels or set(labels) & set(spec.trigger_labels):
                    return issue["number"], CheckResult.ok(
                        f"retry: #{issue['number']} unblocked by #{number}"
                    )

        return event.item_number, CheckResult.fail(f"{event.full_type} not in triggers")

    async def _unblocked_by(self, number: int | None) -> list[dict]:
        """Open issues the closed issue was blocking."""
        if number is None:
            return []
        if number not in self._unblocked:
            try:
                blocking = await self.github.list_blocking(self.owner, self.repo, number)
            except httpx.HTTPError as e:
                logger.warning("Could not list issues blocked by #%d: %s", number, e)
                blocking = []
            self._unblocked[number] = [i for i in blocking if i.get("state") == "open"]
        return self._unblocked[number]

    # ── 2. Actor authorization ───────────────────────────────────────────

    async def _check_actor(self, spec: AgentSpec, event: InboundEvent) -> CheckResult:
        actor = event.actor
        if not actor:
            return CheckResult.fail("event has no actor")
        if actor in spec.allowed_users or actor in spec.allowed_actors:
            return CheckResult.ok("allow-listed")

        try:
            for team in spec.allowed_teams:
                org, _, slug = team.rpartition("/")
                if await self._is_team_member(org or self.owner, slug, actor):
                    return CheckResult.ok(f"member of {team}")

            permission = await self._permission(actor)
            if permission in WRITE_ROLES:
                return CheckResult.ok(f"{permission} access")
            if await self._is_org_member(actor):
                return CheckResult.ok(f"member of {self.owner}")
        except httpx.HTTPError as e:
            logger.warning("Authorization lookup for %s failed: %s", actor, e)
            return CheckResult.fail(f"could not verify {actor}: {e}")

        return CheckResult.fail(f"{actor} has {permission} access")

    async def _permission(self, actor: str) -> str:
        if actor not in self._permissions:
            self._permissions[actor] = await self.github.get_collaborator_permission(
                self.owner, self.repo, actor
            )
        return self._permissions[actor]

    async def _is_org_member(self, actor: str) -> bool:
        if actor not in self._org_members:
            self._org_members[actor] = await self.github.is_org_member(self.owner, actor)
        return self._org_members[actor]

    async def _is_team_member(self, org: str, slug: str, actor: str) -> bool:
        key = (org, slug, actor)
        if key not in self._team_members:
            self._team_members[key] = await self.github.is_team_member(org, slug, actor)
        return self._team_members[key]

    # ── 3. Required labels ───────────────────────────────────────────────

    async def _check_labels(self, spec: AgentSpec, target: int | None) -> CheckResult:
        if not spec.trigger_labels:
            return CheckResult.ok()
        if target is None:
            return CheckResult.ok("event has no item")

        if target not in self._labels:
            try:
                self._labels[target] = await self.github.get_issue_labels(
                    self.owner, self.repo, target
                )
            except httpx.HTTPError as e:
                logger.warning("Could not read labels of #%d: %s", target, e)
                return CheckResult.fail(f"could not read labels of #{target}")

        present = set(self._labels[target]) & set(spec.trigger_labels)
        if present:
            return CheckResult.ok(", ".join(sorted(present)))
        return CheckResult.fail(f"none of {', '.join(spec.trigger_labels)} on #{target}")

    # ── 4. Rate limit ────────────────────────────────────────────────────

    async def _check_rate_limit(self, spec: AgentSpec) -> CheckResult:
        if spec.rate_limit_minutes <= 0:
            return CheckResult.ok()
        last = await self._last_successful_run()
        if last is None:
            return CheckResult.ok("no previous successful run")

        elapsed = (self._clock() - last).total_seconds() / 60
        if elapsed >= spec.rate_limit_minutes:
            return CheckResult.ok()
        remaining = math.ceil(spec.rate_limit_minutes - elapsed)
        return CheckResult.fail(f"Rate limit: {remaining} minutes remaining")

    async def _last_successful_run(self) -> datetime | None:
        if self._last_success_loaded:
            return self._last_success
        try:
            runs = await self.github.list_workflow_runs(
                self.owner, self.repo, self.workflow_file, status="completed"
            )
        except httpx.HTTPError as e:
            logger.warning("Could not list runs of %s: %s", self.workflow_file, e)
            runs = []

        times = [
            _parse_timestamp(run.get("updated_at") or run["created_at"])
            for run in runs
            if run.get("conclusion") == "success"
            and str(run.get("id")) != str(self.current_run_id)
        ]
        self._last_success = max(times) if times else None
        self._last_success_loaded = True
        return self._last_success

    # ── 5. Blocking companion ────────────────────────────────────────────

    async def _check_blocking(self, spec: AgentSpec, target: int | None) -> CheckResult:
        if not spec.check_blocking_issues or target is None:
            return CheckResult.ok()

        if target not in self._blockers:
            try:
                blocked_by = await self.github.list_blocked_by(self.owner, self.repo, target)
            except httpx.HTTPError as e:
                logger.warning("Could not list blockers of #%d: %s", target, e)
                blocked_by = []
            self._blockers[target] = [i["number"] for i in blocked_by if i.get("state") == "open"]

        open_blockers = self._blockers[target]
        if open_blockers:
            refs = ", ".join(f"#{n}" for n in open_blockers)
            return CheckResult.fail(f"#{target} is blocked by {refs}")
        return CheckResult.ok()
