"""Output handler interface and the two-phase validate/apply contract.

An agent never touches the repository directly. It writes one JSON file per
requested side effect (an :class:`OutputInstance`) and the outputs stage
hands every instance of a kind to that kind's :class:`OutputHandler`:

    1. validate: every instance is checked, every failure is collected
    2. apply: only if *all* instances of the kind passed

Kinds are independent: a rejected ``create-pr`` never stops ``add-comment``.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

import httpx

from repo_agents.config import AgentSpec, OutputConfig, RuntimeSettings
from repo_agents.models import (
    InstanceOutcome,
    InstanceReport,
    KindReport,
    KindStatus,
    OutputInstance,
    OutputKind,
    ValidationVerdict,
)
from repo_agents.outputs.git import GitCommandError, GitWorkspace

logger = logging.getLogger(__name__)

OUTPUTS_DIR_HINT = "/tmp/outputs"


# ── Run Context ──────────────────────────────────────────────────────────────


@dataclass
class RunContext:
    """What a handler may know about the run it is applying outputs for."""

    github: Any  # GitHubClient
    owner: str
    repo: str
    agent: AgentSpec
    run_id: str = ""
    run_number: str = ""
    workflow: str = ""
    run_url: str = ""
    agent_url: str = ""
    target_number: int | None = None
    base_branch: str = "main"
    git: GitWorkspace | None = None

    _repo_labels: list[str] | None = field(default=None, repr=False)
    _can_sign: bool | None = field(default=None, repr=False)
    cache: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        github: Any,
        agent: AgentSpec,
        *,
        target_number: int | None = None,
        base_branch: str = "main",
        git: GitWorkspace | None = None,
    ) -> RunContext:
        return cls(
            github=github,
            owner=settings.owner,
            repo=settings.repo,
            agent=agent,
            run_id=settings.run_id,
            run_number=settings.run_number,
            workflow=settings.workflow,
            run_url=settings.run_url,
            agent_url=settings.agent_url(agent),
            target_number=target_number,
            base_branch=base_branch,
            git=git,
        )

    def footer(self) -> str:
        """Provenance footer appended to every text body written back."""
        return (
            f"\n\n> *Generated by [{self.agent.name}]({self.agent_url}) in workflow "
            f"[{self.workflow} #{self.run_number}]({self.run_url})*"
        )

    def with_footer(self, body: str) -> str:
        return body.rstrip() + self.footer()

    async def repo_labels(self) -> list[str]:
        if self._repo_labels is None:
            self._repo_labels = await self.github.list_repo_labels(self.owner, self.repo)
        return self._repo_labels

    async def can_sign(self) -> bool:
        if self._can_sign is None:
            self._can_sign = bool(self.git) and await self.git.can_sign()
        return self._can_sign

    def target(self, data: dict, key: str = "issue_number") -> int | None:
        """Item an instance acts on: explicit number, else the triggering item."""
        value = data.get(key)
        return value if isinstance(value, int) else self.target_number


# ── Validation helpers ───────────────────────────────────────────────────────


def require_string(data: dict, name: str, *, max_length: int | None = None) -> list[str]:
    value = data.get(name)
    if not isinstance(value, str) or not value.strip():
        return [f"'{name}' is required and must be a non-empty string"]
    if max_length is not None and len(value) > max_length:
        return [f"'{name}' exceeds {max_length} characters ({len(value)})"]
    return []


def require_string_list(data: dict, name: str) -> list[str]:
    value = data.get(name)
    if not isinstance(value, list) or not value:
        return [f"'{name}' must be a non-empty array"]
    if not all(isinstance(v, str) and v for v in value):
        return [f"'{name}' must contain only non-empty strings"]
    return []


def optional_int(data: dict, name: str) -> list[str]:
    value = data.get(name)
    if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 1):
        return [f"'{name}' must be a positive integer"]
    return []


def effective_config(spec: AgentSpec, kind: OutputKind) -> OutputConfig:
    """The kind's configuration with agent-level path allow-list folded in."""
    config = spec.outputs.get(kind, OutputConfig())
    paths = spec.output_paths(kind)
    if paths != config.allowed_paths:
        config = config.model_copy(update={"allowed_paths": paths})
    return config


@dataclass
class ApplyResult:
    outcome: InstanceOutcome
    detail: str = ""
    result: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def applied(cls, detail: str = "", **result: Any) -> ApplyResult:
        return cls(InstanceOutcome.APPLIED, detail, result)

    @classmethod
    def skipped(cls, detail: str) -> ApplyResult:
        return cls(InstanceOutcome.SKIPPED, detail)


# ── Handler Interface ────────────────────────────────────────────────────────


class OutputHandler(ABC):
    """One output kind: how it is described, validated and applied."""

    kind: ClassVar[OutputKind]
    summary: ClassVar[str]
    example: ClassVar[dict[str, Any]]

    async def context(self, run: RunContext) -> str | None:
        """Read-only information shown to the agent before it decides. Optional."""
        return None

    def describe(self, config: OutputConfig) -> str:
        """Capability description for the agent prompt. No I/O."""
        name = self.kind.value
        lines = [
            f"### {name}",
            "",
            self.summary,
            "",
            f"Write a JSON object to `{OUTPUTS_DIR_HINT}/{name}.json`; for more than one, "
            f"use `{name}-2.json`, `{name}-3.json`, and so on.",
            "",
            "```json",
            json.dumps(self.example, indent=2),
            "```",
        ]
        limits = self.limits(config)
        if limits:
            lines += ["", "Limits:"] + [f"- {limit}" for limit in limits]
        return "\n".join(lines)

    def limits(self, config: OutputConfig) -> list[str]:
        limits = []
        if config.max is not None:
            limits.append(f"at most {config.max} per run")
        return limits

    @abstractmethod
    async def validate_instance(
        self, config: OutputConfig, run: RunContext, data: dict
    ) -> list[str]:
        """Return every reason this instance is invalid (empty when valid)."""

    @abstractmethod
    async def apply(self, config: OutputConfig, run: RunContext, data: dict) -> ApplyResult:
        """Perform the side effect for one validated instance."""

    async def validate_and_apply(
        self, config: OutputConfig, run: RunContext, instances: list[OutputInstance]
    ) -> KindReport:
        """Validate every instance, then apply all of them or none."""
        if not instances:
            return KindReport(kind=self.kind, status=KindStatus.EMPTY)

        instances = sorted(instances, key=lambda i: i.ordinal)
        reports: list[InstanceReport] = []
        for inst in instances:
            reasons = await self._validate(config, run, inst)
            reports.append(
                InstanceReport(
                    ordinal=inst.ordinal,
                    source=inst.source,
                    validation=ValidationVerdict.from_reasons(reasons),
                )
            )

        if not all(r.validation.passed for r in reports):
            failed = sum(not r.validation.passed for r in reports)
            logger.warning(
                "%s: %d of %d instance(s) failed validation, applying none",
                self.kind.value,
                failed,
                len(reports),
            )
            return KindReport(kind=self.kind, status=KindStatus.REJECTED, instances=reports)

        status = KindStatus.APPLIED
        for inst, report in zip(instances, reports):
            if status == KindStatus.FAILED:
                report.detail = "not applied after an earlier instance failed"
                continue
            try:
                result = await self.apply(config, run, inst.data)
            except (httpx.HTTPError, GitCommandError, RuntimeError, ValueError) as e:
                logger.error("%s #%d failed to apply: %s", self.kind.value, inst.ordinal, e)
                report.outcome = InstanceOutcome.FAILED
                report.detail = str(e)
                status = KindStatus.FAILED
                continue
            except Exception as e:
                # Earlier instances already took effect; keep their reports
                logger.exception("%s #%d failed unexpectedly", self.kind.value, inst.ordinal)
                report.outcome = InstanceOutcome.FAILED
                report.detail = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                status = KindStatus.FAILED
                continue
            report.outcome = result.outcome
            report.detail = result.detail
            report.result = result.result
            logger.info("%s #%d %s %s", self.kind.value, inst.ordinal, result.outcome.value, result.detail)

        return KindReport(kind=self.kind, status=status, instances=reports)

    async def _validate(
        self, config: OutputConfig, run: RunContext, inst: OutputInstance
    ) -> list[str]:
        if inst.parse_error:
            return [f"Invalid JSON format: {inst.parse_error}"]
        reasons = []
        if config.max is not None and inst.ordinal > config.max:
            reasons.append(f"exceeds the maximum of {config.max} instance(s) per run")
        try:
            reasons.extend(await self.validate_instance(config, run, inst.data))
        except (httpx.HTTPError, RuntimeError) as e:
            reasons.append(f"could not check against repository state: {e}")
        return reasons
