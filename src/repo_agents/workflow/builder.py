"""Job graph builder: compile agent specs into one workflow document.

Graph shape::

    dispatcher ──► agent-<slug> (one per agent, gated on its verdict)
        │                 │
        └────────────────►┴──► audit-report (always) ──► audit-issues (matrix over failures)

Agent jobs only depend on the dispatcher, so one agent failing never stops
another. The audit jobs run regardless of agent outcomes.
"""

from __future__ import annotations

import logging
from typing import Iterable

from pydantic import BaseModel, Field

from repo_agents.concurrency import plan_concurrency
from repo_agents.config import AgentSpec
from repo_agents.outputs.registry import OutputRegistry, build_registry
from repo_agents.permissions import aggregate_permissions
from repo_agents.triggers import aggregate_triggers
from repo_agents.workflow.document import Job, Step, Strategy, Workflow, dump_yaml
from repo_agents.workflow.expressions import (
    Call,
    Expr,
    Ref,
    all_of,
    always,
    any_of,
    call,
    eq,
    ref,
    walk,
)

logger = logging.getLogger(__name__)

DISPATCHER = "dispatcher"
AUDIT_REPORT = "audit-report"
AUDIT_ISSUES = "audit-issues"

AUDIT_ARTIFACT_PREFIX = "audit-"
MANIFEST_ARTIFACT = "run-manifest"

AGENT_AUDIT_DIR = "/tmp/audit"
ALL_AUDITS_DIR = "/tmp/all-audits"
PROMPT_FILE = "/tmp/agent/prompt.md"


class GraphError(Exception):
    """The job graph violates a structural invariant."""


class CompileOptions(BaseModel):
    """Knobs for the emitted document that are not part of any agent spec."""

    workflow_name: str = "Repo Agents"
    runs_on: str = "ubuntu-latest"
    python_version: str = "3.12"
    install_command: str = "pip install repo-agents"
    agents_dir: str = ".github/agents"
    github_app: bool = Field(default=True, description="Mint a GitHub App token when configured")
    api_key_secret: bool = Field(default=True, description="ANTHROPIC_API_KEY secret exists")
    oauth_token_secret: bool = Field(
        default=False, description="CLAUDE_CODE_OAUTH_TOKEN secret exists"
    )
    agent_command: str = Field(
        default=(
            f'claude -p "$(cat {PROMPT_FILE})" --output-format json '
            f"--allowedTools Read,Write,Edit,Glob,Grep > {AGENT_AUDIT_DIR}/metrics.json"
        ),
        description="Shell command that runs the model CLI on the prepared prompt",
    )


def agent_job_id(spec: AgentSpec) -> str:
    return f"agent-{spec.slug}"


def should_run_output(spec: AgentSpec) -> str:
    return f"agent-{spec.slug}-should-run"


def skip_reason_output(spec: AgentSpec) -> str:
    return f"agent-{spec.slug}-skip-reason"


def target_output(spec: AgentSpec) -> str:
    return f"agent-{spec.slug}-target"


# ── Shared steps ─────────────────────────────────────────────────────────────


def _token(options: CompileOptions) -> Expr:
    if options.github_app:
        return any_of(ref("steps.app-token.outputs.token"), ref("secrets.GITHUB_TOKEN"))
    return ref("secrets.GITHUB_TOKEN")


def _model_secrets(options: CompileOptions) -> dict[str, Expr]:
    env: dict[str, Expr] = {}
    if options.api_key_secret:
        env["ANTHROPIC_API_KEY"] = ref("secrets.ANTHROPIC_API_KEY")
    if options.oauth_token_secret:
        env["CLAUDE_CODE_OAUTH_TOKEN"] = ref("secrets.CLAUDE_CODE_OAUTH_TOKEN")
    return env


def _app_env(options: CompileOptions) -> dict[str, Expr]:
    if not options.github_app:
        return {}
    return {"GH_APP_ID": ref("secrets.GH_APP_ID"), "GH_APP_PRIVATE_KEY": ref("secrets.GH_APP_PRIVATE_KEY")}


def _app_token_step(options: CompileOptions) -> list[Step]:
    if not options.github_app:
        return []
    return [
        Step(
            name="Create GitHub App token",
            id="app-token",
            uses="actions/create-github-app-token@v1",
            with_={
                "app-id": ref("secrets.GH_APP_ID"),
                "private-key": ref("secrets.GH_APP_PRIVATE_KEY"),
            },
            continue_on_error=True,
        )
    ]


def _setup_steps(options: CompileOptions, *, token: Expr | None = None) -> list[Step]:
    checkout = Step(name="Checkout repository", uses="actions/checkout@v4")
    if token is not None:
        checkout.with_ = {"token": token, "fetch-depth": 0}
    return [
        checkout,
        Step(
            name="Set up Python",
            uses="actions/setup-python@v5",
            with_={"python-version": options.python_version},
        ),
        Step(name="Install repo-agents", run=options.install_command),
    ]


def _stage(stage: str, *args: str) -> str:
    return " ".join(["python -m repo_agents run", stage, *args])


# ── Jobs ─────────────────────────────────────────────────────────────────────


def _dispatcher_job(specs: list[AgentSpec], options: CompileOptions) -> Job:
    outputs: dict[str, Expr] = {}
    for spec in specs:
        for name in (should_run_output(spec), skip_reason_output(spec), target_output(spec)):
            outputs[name] = ref(f"steps.dispatch.outputs.{name}")

    return Job(
        id=DISPATCHER,
        name="Dispatch agents",
        runs_on=options.runs_on,
        timeout_minutes=10,
        outputs=outputs,
        steps=[
            *_setup_steps(options),
            Step(
                name="Evaluate agents",
                id="dispatch",
                run=_stage("dispatcher", "--agents-dir", options.agents_dir),
                env={
                    "GITHUB_TOKEN": ref("secrets.GITHUB_TOKEN"),
                    **_app_env(options),
                    "WORKFLOW_DISPATCH_AGENT": ref("inputs.agent"),
                    **_model_secrets(options),
                },
            ),
        ],
    )


def _agent_job(spec: AgentSpec, options: CompileOptions) -> Job:
    token = _token(options)
    steps = [
        *_app_token_step(options),
        *_setup_steps(options, token=token),
        Step(
            name="Configure git identity",
            run=(
                'git config --global user.name "repo-agents[bot]"\n'
                'git config --global user.email "repo-agents[bot]@users.noreply.github.com"'
            ),
        ),
        Step(
            name="Prepare agent context",
            run=_stage("prepare", "--agent", spec.slug, "--agents-dir", options.agents_dir),
            env={"GITHUB_TOKEN": token},
            timeout_minutes=spec.timeout.context_collection,
        ),
        Step(
            name=f"Run {spec.name}",
            run=options.agent_command,
            env={"GH_TOKEN": token, **_model_secrets(options)},
            timeout_minutes=spec.timeout.execution,
        ),
    ]
    if spec.outputs:
        steps.append(
            Step(
                name="Apply outputs",
                run=_stage("outputs", "--agent", spec.slug, "--agents-dir", options.agents_dir),
                env={"GITHUB_TOKEN": token},
            )
        )
    steps.append(
        Step(
            name="Upload audit data",
            if_=always(),
            uses="actions/upload-artifact@v4",
            with_={
                "name": f"{AUDIT_ARTIFACT_PREFIX}{spec.slug}",
                "path": f"{AGENT_AUDIT_DIR}/",
                "if-no-files-found": "ignore",
                "retention-days": 7,
            },
        )
    )

    return Job(
        id=agent_job_id(spec),
        name=spec.name,
        needs=[DISPATCHER],
        if_=eq(ref(f"needs.{DISPATCHER}.outputs.{should_run_output(spec)}"), "true"),
        runs_on=options.runs_on,
        timeout_minutes=spec.timeout.total_minutes,
        env={
            "AGENT_TARGET": ref(f"needs.{DISPATCHER}.outputs.{target_output(spec)}"),
            "REPO_AGENTS_AUDIT_DIR": AGENT_AUDIT_DIR,
        },
        steps=steps,
    )


def _audit_report_job(specs: list[AgentSpec], options: CompileOptions) -> Job:
    return Job(
        id=AUDIT_REPORT,
        name="Audit report",
        needs=[DISPATCHER, *(agent_job_id(s) for s in specs)],
        if_=always(),
        runs_on=options.runs_on,
        timeout_minutes=10,
        outputs={
            "has-failures": ref("steps.report.outputs.has-failures"),
            "failed-agents": ref("steps.report.outputs.failed-agents"),
        },
        steps=[
            *_setup_steps(options),
            Step(
                name="Download audit data",
                uses="actions/download-artifact@v4",
                with_={"pattern": f"{AUDIT_ARTIFACT_PREFIX}*", "path": ALL_AUDITS_DIR},
                continue_on_error=True,
            ),
            Step(
                name="Generate audit report",
                id="report",
                run=_stage("audit-report", "--agents-dir", options.agents_dir),
                env={
                    "JOB_RESULTS": call("toJSON", ref("needs")),
                    "REPO_AGENTS_AUDIT_DIR": ALL_AUDITS_DIR,
                },
                continue_on_error=True,
            ),
            Step(
                name="Upload audit manifest",
                if_=always(),
                uses="actions/upload-artifact@v4",
                with_={
                    "name": MANIFEST_ARTIFACT,
                    "path": f"{ALL_AUDITS_DIR}/manifest.json",
                    "if-no-files-found": "ignore",
                },
            ),
        ],
    )


def _audit_issues_job(options: CompileOptions) -> Job:
    report = f"needs.{AUDIT_REPORT}.outputs"
    return Job(
        id=AUDIT_ISSUES,
        name="File failure issue (${{ matrix.agent }})",
        needs=[AUDIT_REPORT],
        if_=all_of(always(), eq(ref(f"{report}.has-failures"), "true")),
        runs_on=options.runs_on,
        timeout_minutes=10,
        strategy=Strategy(
            matrix={"agent": call("fromJSON", ref(f"{report}.failed-agents"))},
            fail_fast=False,
        ),
        steps=[
            *_setup_steps(options),
            Step(
                name="Download audit manifest",
                uses="actions/download-artifact@v4",
                with_={"name": MANIFEST_ARTIFACT, "path": ALL_AUDITS_DIR},
            ),
            Step(
                name="Create or update failure issue",
                run=_stage("audit-issues", '--agent "$AGENT"', "--agents-dir", options.agents_dir),
                env={
                    "AGENT": ref("matrix.agent"),
                    "GITHUB_TOKEN": ref("secrets.GITHUB_TOKEN"),
                    "REPO_AGENTS_AUDIT_DIR": ALL_AUDITS_DIR,
                },
            ),
        ],
    )


# ── Assembly ─────────────────────────────────────────────────────────────────


def build_workflow(
    specs: Iterable[AgentSpec],
    options: CompileOptions | None = None,
    registry: OutputRegistry | None = None,
) -> Workflow:
    """Build and validate the workflow document for a set of agents.

    Raises:
        GraphError: If agents collide on slug, or the graph breaks an invariant.
    """
    specs = list(specs)
    options = options or CompileOptions()
    registry = registry or build_registry()

    slugs = [spec.slug for spec in specs]
    duplicates = sorted({s for s in slugs if slugs.count(s) > 1})
    if duplicates:
        raise GraphError(f"Agents share job ids: {', '.join(duplicates)}")
    for spec in specs:
        for kind in spec.outputs:
            registry.handler(kind)

    workflow = Workflow(
        name=options.workflow_name,
        on=aggregate_triggers(specs).to_document(),
        permissions=aggregate_permissions(specs).to_document(),
        concurrency=plan_concurrency(specs),
    )
    workflow.add_job(_dispatcher_job(specs, options))
    for spec in specs:
        workflow.add_job(_agent_job(spec, options))
    workflow.add_job(_audit_report_job(specs, options))
    workflow.add_job(_audit_issues_job(options))

    validate_graph(workflow)
    logger.info("Built workflow with %d agent job(s)", len(specs))
    return workflow


def compile_workflow(
    specs: Iterable[AgentSpec],
    options: CompileOptions | None = None,
    registry: OutputRegistry | None = None,
) -> str:
    """Agent specs → workflow YAML text."""
    return dump_yaml(build_workflow(specs, options, registry))


# ── Invariants ───────────────────────────────────────────────────────────────


def _downstream(workflow: Workflow, root: str) -> set[str]:
    found = {root}
    changed = True
    while changed:
        changed = False
        for job in workflow.jobs.values():
            if job.id not in found and found.intersection(job.needs):
                found.add(job.id)
                changed = True
    return found


def _has_always(expr: Expr | None) -> bool:
    return expr is not None and any(
        isinstance(node, Call) and node.name == "always" for node in walk(expr)
    )


def _references(expr: Expr | None, path: str) -> bool:
    return expr is not None and any(
        isinstance(node, Ref) and node.path == path for node in walk(expr)
    )


def validate_graph(workflow: Workflow) -> None:
    """Check the structural invariants of the job graph.

    - every ``needs`` entry names an existing job and the graph is acyclic
    - every job from ``audit-report`` downstream runs under ``always()``
    - every agent job is gated on its own dispatcher verdict and feeds the audit

    Raises:
        GraphError: Listing every violated invariant.
    """
    problems: list[str] = []
    jobs = workflow.jobs

    for job in jobs.values():
        for need in job.needs:
            if need not in jobs:
                problems.append(f"{job.id} needs unknown job {need}")

    # Kahn's algorithm; anything left over sits on a cycle
    remaining = {job_id: set(job.needs) & set(jobs) for job_id, job in jobs.items()}
    while True:
        ready = [job_id for job_id, needs in remaining.items() if not needs]
        if not ready:
            break
        for job_id in ready:
            del remaining[job_id]
        for needs in remaining.values():
            needs.difference_update(ready)
    if remaining:
        problems.append(f"dependency cycle among: {', '.join(sorted(remaining))}")

    if AUDIT_REPORT in jobs:
        for job_id in sorted(_downstream(workflow, AUDIT_REPORT)):
            if not _has_always(jobs[job_id].if_):
                problems.append(f"{job_id} must run under always()")

    for job in jobs.values():
        if not job.side_effecting:
            continue
        slug = job.id.removeprefix("agent-")
        verdict = f"needs.{DISPATCHER}.outputs.agent-{slug}-should-run"
        if DISPATCHER not in job.needs or not _references(job.if_, verdict):
            problems.append(f"{job.id} is not gated on its dispatcher verdict")
        if AUDIT_REPORT in jobs and job.id not in jobs[AUDIT_REPORT].needs:
            problems.append(f"{AUDIT_REPORT} does not wait for {job.id}")

    if problems:
        raise GraphError("; ".join(problems))
