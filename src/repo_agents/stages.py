"""Runtime stages invoked by the compiled workflow (``python -m repo_agents run ...``).

Each stage reads the Actions environment through :class:`RuntimeSettings`,
does its part, and reports back through ``$GITHUB_OUTPUT`` /
``$GITHUB_STEP_SUMMARY`` and files under the audit directory.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Mapping

import httpx

from repo_agents.audit import (
    MANIFEST_FILE,
    OUTPUTS_FILE,
    build_manifest,
    file_failure_issue,
    read_manifest,
    render_summary,
    write_manifest,
)
from repo_agents.config import AgentSpec, RuntimeSettings
from repo_agents.dispatch import DispatchEngine, run_global_preflight
from repo_agents.github_client import GitHubClient
from repo_agents.models import AuditManifest, DispatchVerdict, InboundEvent
from repo_agents.outputs import (
    OutputRegistry,
    OutputsResult,
    RunContext,
    build_registry,
    effective_config,
    run_outputs,
)
from repo_agents.outputs.git import GitWorkspace
from repo_agents.workflow.builder import (
    PROMPT_FILE,
    should_run_output,
    skip_reason_output,
    target_output,
)

logger = logging.getLogger(__name__)


# ── Actions I/O ──────────────────────────────────────────────────────────────


def write_step_outputs(path: Path | None, values: Mapping[str, str]) -> None:
    """Append ``key=value`` pairs to ``$GITHUB_OUTPUT`` (heredoc form for multi-line)."""
    if path is None:
        for key, value in values.items():
            logger.debug("output %s=%s", key, value)
        return
    with open(path, "a") as f:
        for key, value in values.items():
            if "\n" in value:
                delimiter = f"EOF_{uuid.uuid4().hex}"
                f.write(f"{key}<<{delimiter}\n{value}\n{delimiter}\n")
            else:
                f.write(f"{key}={value}\n")


def append_step_summary(path: Path | None, markdown: str) -> None:
    if path is None:
        return
    with open(path, "a") as f:
        f.write(markdown)


def github_client(settings: RuntimeSettings) -> GitHubClient:
    return GitHubClient(
        token=settings.token,
        app_id=settings.app_id,
        private_key=settings.app_private_key,
        owner=settings.owner,
        repo=settings.repo,
        base_url=settings.api_url,
    )


@asynccontextmanager
async def open_github(
    settings: RuntimeSettings, github: GitHubClient | None = None
) -> AsyncIterator[GitHubClient]:
    """Use the given client as is, or open one for the duration of a stage."""
    if github is not None:
        yield github
        return
    async with github_client(settings) as client:
        yield client


# ── dispatcher ───────────────────────────────────────────────────────────────


def verdict_outputs(specs: list[AgentSpec], verdicts: list[DispatchVerdict]) -> dict[str, str]:
    outputs: dict[str, str] = {}
    for spec, verdict in zip(specs, verdicts):
        outputs[should_run_output(spec)] = "true" if verdict.admitted else "false"
        outputs[skip_reason_output(spec)] = verdict.skip_message
        outputs[target_output(spec)] = str(verdict.target_number or "")
    return outputs


async def run_dispatcher(
    settings: RuntimeSettings,
    specs: list[AgentSpec],
    event: InboundEvent,
    *,
    env: Mapping[str, str] | None = None,
    github: GitHubClient | None = None,
    clock: Callable[[], datetime] | None = None,
    explain: bool = False,
) -> list[DispatchVerdict]:
    """Preflight, then one verdict per agent written to the step outputs.

    Raises:
        PreflightError: When the event cannot run any agent at all.
    """
    run_global_preflight(env)

    async with open_github(settings, github) as client:
        engine = DispatchEngine(
            client,
            settings.owner,
            settings.repo,
            workflow_file=settings.workflow_file,
            current_run_id=settings.run_id,
            clock=clock,
        )
        verdicts = await engine.evaluate_all(specs, event, collect_all=explain)

    write_step_outputs(settings.github_output, verdict_outputs(specs, verdicts))
    admitted = [v.agent for v in verdicts if v.admitted]
    logger.info(
        "%s: %d of %d agent(s) admitted%s",
        event.full_type,
        len(admitted),
        len(verdicts),
        f" ({', '.join(admitted)})" if admitted else "",
    )
    return verdicts


# ── prepare ──────────────────────────────────────────────────────────────────


async def build_prompt(
    spec: AgentSpec,
    run: RunContext,
    registry: OutputRegistry,
    *,
    event: InboundEvent | None = None,
    outputs_dir: Path = Path("/tmp/outputs"),
) -> str:
    """Agent instructions plus the context and capabilities of its output kinds."""
    sections = [f"# {spec.name}", "", spec.instructions.strip()]

    if event is not None:
        line = f"Event: `{event.full_type}`"
        if run.target_number:
            line += f" on #{run.target_number}"
        if event.actor:
            line += f" by @{event.actor}"
        sections += ["", "## Triggering event", "", line]

    context_lines = []
    for kind in spec.outputs:
        try:
            context = await registry.handler(kind).context(run)
        except (httpx.HTTPError, RuntimeError) as e:
            logger.warning("Context for %s unavailable: %s", kind.value, e)
            continue
        if context:
            context_lines.append(f"- {context}")
    if context_lines:
        sections += ["", "## Repository context", "", *context_lines]

    sections += ["", "## Actions you can take", ""]
    if not spec.outputs:
        sections.append(
            "You cannot change the repository. Report your findings in your final answer."
        )
    else:
        sections.append(
            "You cannot change the repository directly. Request each change by writing a "
            f"JSON file to `{outputs_dir}`. Files that fail validation are not applied, and "
            "one invalid file of a kind stops every file of that kind."
        )
        for kind in spec.outputs:
            sections += ["", registry.handler(kind).describe(effective_config(spec, kind))]

    return "\n".join(sections) + "\n"


async def run_prepare(
    settings: RuntimeSettings,
    spec: AgentSpec,
    *,
    event: InboundEvent | None = None,
    target_number: int | None = None,
    registry: OutputRegistry | None = None,
    github: GitHubClient | None = None,
    prompt_path: Path = Path(PROMPT_FILE),
) -> Path:
    settings.outputs_dir.mkdir(parents=True, exist_ok=True)
    settings.audit_dir.mkdir(parents=True, exist_ok=True)
    registry = registry or build_registry()

    async with open_github(settings, github) as client:
        run = RunContext.from_settings(settings, client, spec, target_number=target_number)
        prompt = await build_prompt(
            spec, run, registry, event=event, outputs_dir=settings.outputs_dir
        )

    prompt_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_path.write_text(prompt)
    logger.info("Wrote prompt for %s to %s (%d chars)", spec.name, prompt_path, len(prompt))
    return prompt_path


# ── outputs ──────────────────────────────────────────────────────────────────


async def run_outputs_stage(
    settings: RuntimeSettings,
    spec: AgentSpec,
    *,
    target_number: int | None = None,
    registry: OutputRegistry | None = None,
    github: GitHubClient | None = None,
) -> OutputsResult:
    """Validate and apply everything the agent wrote, and record the result."""
    registry = registry or build_registry()

    async with open_github(settings, github) as client:
        repo = await client.get_repo(settings.owner, settings.repo)
        run = RunContext.from_settings(
            settings,
            client,
            spec,
            target_number=target_number,
            base_branch=repo.get("default_branch", "main"),
            git=GitWorkspace(settings.workspace),
        )
        result = await run_outputs(spec, run, settings.outputs_dir, registry)

    settings.audit_dir.mkdir(parents=True, exist_ok=True)
    (settings.audit_dir / OUTPUTS_FILE).write_text(result.model_dump_json(indent=2))
    for message in result.failure_messages():
        logger.error("%s", message)
    return result


# ── audit-report ─────────────────────────────────────────────────────────────


def run_audit_report(
    settings: RuntimeSettings,
    specs: list[AgentSpec],
    job_results: dict[str, Any],
    *,
    event_name: str = "",
) -> AuditManifest:
    manifest = build_manifest(
        specs,
        job_results,
        settings.audit_dir,
        run_id=settings.run_id,
        run_url=settings.run_url,
        event=event_name,
    )
    write_manifest(manifest, settings.audit_dir / MANIFEST_FILE)
    append_step_summary(settings.step_summary, render_summary(manifest))

    failed = manifest.failed_agents
    write_step_outputs(
        settings.github_output,
        {"has-failures": "true" if failed else "false", "failed-agents": json.dumps(failed)},
    )
    if failed:
        logger.warning("Agents with failures: %s", ", ".join(failed))
    for error in manifest.platform_errors:
        logger.error("%s", error)
    return manifest


# ── audit-issues ─────────────────────────────────────────────────────────────


async def run_audit_issues(
    settings: RuntimeSettings,
    spec: AgentSpec,
    *,
    github: GitHubClient | None = None,
) -> dict[str, Any] | None:
    manifest = read_manifest(settings.audit_dir / MANIFEST_FILE)

    async with open_github(settings, github) as client:
        return await file_failure_issue(client, settings.owner, settings.repo, spec, manifest)
