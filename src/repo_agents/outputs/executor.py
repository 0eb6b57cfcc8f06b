"""Discover an agent's output files and run every declared kind through its handler."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from pydantic import BaseModel, Field

from repo_agents.config import AgentSpec
from repo_agents.models import (
    InstanceReport,
    KindReport,
    KindStatus,
    OutputInstance,
    OutputKind,
    ValidationVerdict,
)
from repo_agents.outputs.base import RunContext, effective_config
from repo_agents.outputs.registry import OutputRegistry

logger = logging.getLogger(__name__)

# add-comment.json, add-comment-2.json, ...
INSTANCE_FILE = re.compile(r"^(?P<kind>[a-z]+(?:-[a-z]+)*)(?:-(?P<n>\d+))?\.json$")


class OutputsResult(BaseModel):
    """Everything the outputs stage did for one agent."""

    agent: str
    reports: list[KindReport] = Field(default_factory=list)
    unrecognized: list[str] = Field(default_factory=list, description="Files matching no kind")

    @property
    def failed(self) -> bool:
        return bool(self.unrecognized) or any(r.failed for r in self.reports)

    def failure_messages(self) -> list[str]:
        messages = [f"unrecognized output file: {name}" for name in self.unrecognized]
        for report in self.reports:
            if report.failed:
                messages.extend(report.failure_messages())
        return messages


def load_instances(outputs_dir: Path) -> tuple[dict[OutputKind, list[OutputInstance]], list[str]]:
    """Read every instance file, grouped by kind in ordinal order.

    Returns (instances by kind, names of files that match no kind).
    Unparseable files become instances carrying a ``parse_error``.
    """
    found: dict[OutputKind, list[tuple[int, str, Path]]] = {}
    unrecognized: list[str] = []
    if not outputs_dir.is_dir():
        return {}, unrecognized

    for path in sorted(outputs_dir.glob("*.json")):
        m = INSTANCE_FILE.match(path.name)
        kind = None
        if m:
            try:
                kind = OutputKind(m.group("kind"))
            except ValueError:
                kind = None
        if kind is None:
            logger.warning("Ignoring output file with unknown kind: %s", path.name)
            unrecognized.append(path.name)
            continue
        found.setdefault(kind, []).append((int(m.group("n") or 1), path.name, path))

    instances: dict[OutputKind, list[OutputInstance]] = {}
    for kind, entries in found.items():
        instances[kind] = []
        for ordinal, (_, name, path) in enumerate(sorted(entries), start=1):
            data: dict = {}
            error = None
            try:
                parsed = json.loads(path.read_text())
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                error = str(e)
            else:
                if isinstance(parsed, dict):
                    data = parsed
                else:
                    error = "top-level value must be a JSON object"
            instances[kind].append(
                OutputInstance(kind=kind, ordinal=ordinal, source=name, data=data, parse_error=error)
            )
    return instances, unrecognized


def _not_permitted(kind: OutputKind, instances: list[OutputInstance]) -> KindReport:
    reason = f"agent is not permitted to produce {kind.value}"
    return KindReport(
        kind=kind,
        status=KindStatus.REJECTED,
        instances=[
            InstanceReport(
                ordinal=inst.ordinal,
                source=inst.source,
                validation=ValidationVerdict.from_reasons([reason]),
            )
            for inst in instances
        ],
    )


async def apply_agent_outputs(
    spec: AgentSpec,
    run: RunContext,
    instances: dict[OutputKind, list[OutputInstance]],
    registry: OutputRegistry,
) -> list[KindReport]:
    """Validate and apply each declared kind independently of the others."""
    reports: list[KindReport] = []

    for kind in OutputKind:
        if kind in instances and kind not in spec.outputs:
            logger.warning("%s wrote %s outputs it did not declare", spec.name, kind.value)
            reports.append(_not_permitted(kind, instances[kind]))

    for kind in OutputKind:
        if kind not in spec.outputs:
            continue
        handler = registry.handler(kind)
        try:
            report = await handler.validate_and_apply(
                effective_config(spec, kind), run, instances.get(kind, [])
            )
        except Exception as e:
            logger.exception("Unexpected error applying %s outputs", kind.value)
            report = KindReport(kind=kind, status=KindStatus.FAILED, errors=[str(e)])
        reports.append(report)

    return reports


async def run_outputs(
    spec: AgentSpec, run: RunContext, outputs_dir: Path, registry: OutputRegistry
) -> OutputsResult:
    instances, unrecognized = load_instances(outputs_dir)
    total = sum(len(v) for v in instances.values())
    logger.info("Found %d output instance(s) for %s in %s", total, spec.name, outputs_dir)
    reports = await apply_agent_outputs(spec, run, instances, registry)
    return OutputsResult(agent=spec.name, reports=reports, unrecognized=unrecognized)
