"""Typed model of the emitted GitHub Actions workflow document.

Jobs, steps and triggers are assembled as objects and serialized once by
:func:`dump_yaml`. Expression-valued fields hold :class:`Expr` or
:class:`Template` instances until then.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

import yaml

from repo_agents.workflow.expressions import Expr, Template, condition_text

HEADER = (
    "# Generated by repo-agents from the agent definitions in .github/agents/.\n"
    "# Do not edit by hand; re-run `repo-agents compile` instead.\n"
)


def _value(v: Any) -> Any:
    if isinstance(v, Expr):
        return v.wrap()
    if isinstance(v, Template):
        return v.render()
    if isinstance(v, dict):
        return {k: _value(item) for k, item in v.items()}
    if isinstance(v, (list, tuple)):
        return [_value(item) for item in v]
    return v


@dataclass
class Step:
    name: str
    uses: str | None = None
    run: str | None = None
    id: str | None = None
    if_: Expr | None = None
    with_: dict[str, Any] = field(default_factory=dict)
    env: dict[str, Any] = field(default_factory=dict)
    continue_on_error: bool = False
    timeout_minutes: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.id:
            out["id"] = self.id
        if self.if_ is not None:
            out["if"] = condition_text(self.if_)
        if self.uses:
            out["uses"] = self.uses
        if self.with_:
            out["with"] = _value(self.with_)
        if self.env:
            out["env"] = _value(self.env)
        if self.run is not None:
            out["run"] = self.run
        if self.continue_on_error:
            out["continue-on-error"] = True
        if self.timeout_minutes is not None:
            out["timeout-minutes"] = self.timeout_minutes
        return out


@dataclass
class Strategy:
    matrix: dict[str, Any]
    fail_fast: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"fail-fast": self.fail_fast, "matrix": _value(self.matrix)}


@dataclass
class Job:
    id: str
    name: str
    steps: list[Step] = field(default_factory=list)
    needs: list[str] = field(default_factory=list)
    if_: Expr | None = None
    runs_on: str = "ubuntu-latest"
    timeout_minutes: int | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    strategy: Strategy | None = None
    env: dict[str, Any] = field(default_factory=dict)

    @property
    def side_effecting(self) -> bool:
        """Agent jobs run agent code and apply its outputs."""
        return self.id.startswith("agent-")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.needs:
            out["needs"] = self.needs[0] if len(self.needs) == 1 else list(self.needs)
        if self.if_ is not None:
            out["if"] = condition_text(self.if_)
        out["runs-on"] = self.runs_on
        if self.timeout_minutes is not None:
            out["timeout-minutes"] = self.timeout_minutes
        if self.strategy is not None:
            out["strategy"] = self.strategy.to_dict()
        if self.outputs:
            out["outputs"] = _value(self.outputs)
        if self.env:
            out["env"] = _value(self.env)
        out["steps"] = [s.to_dict() for s in self.steps]
        return out


@dataclass
class Concurrency:
    group: Template
    cancel_in_progress: Expr

    def to_dict(self) -> dict[str, Any]:
        return {"group": self.group.render(), "cancel-in-progress": self.cancel_in_progress.wrap()}


@dataclass
class Workflow:
    name: str
    on: dict[str, Any]
    permissions: dict[str, str]
    jobs: dict[str, Job] = field(default_factory=dict)
    concurrency: Concurrency | None = None

    def add_job(self, job: Job) -> Job:
        if job.id in self.jobs:
            raise ValueError(f"Duplicate job id: {job.id}")
        self.jobs[job.id] = job
        return job

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "on": self.on, "permissions": self.permissions}
        if self.concurrency is not None:
            out["concurrency"] = self.concurrency.to_dict()
        out["jobs"] = {job_id: job.to_dict() for job_id, job in self.jobs.items()}
        return out


# ── Serialization ────────────────────────────────────────────────────────────


class _WorkflowDumper(yaml.SafeDumper):
    """Block-style dumper that indents sequences under their parent key."""

    def increase_indent(self, flow: bool = False, indentless: bool = False):
        return super().increase_indent(flow, False)


def _represent_str(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_WorkflowDumper.add_representer(str, _represent_str)

_JOB_KEY = re.compile(r"^  [A-Za-z0-9_-]+:$")


def dump_yaml(workflow: Workflow) -> str:
    """Serialize the document, with blank lines between sections and jobs."""
    text = yaml.dump(
        workflow.to_dict(),
        Dumper=_WorkflowDumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=4096,
    )
    lines: list[str] = []
    in_jobs = False
    for line in text.splitlines():
        top_level = bool(line) and not line[0].isspace()
        if lines and lines[-1] != "jobs:" and (top_level or (in_jobs and _JOB_KEY.match(line))):
            lines.append("")
        if top_level:
            in_jobs = line == "jobs:"
        lines.append(line)
    return HEADER + "\n" + "\n".join(lines) + "\n"
