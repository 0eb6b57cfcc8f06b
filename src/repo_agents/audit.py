"""Audit stage: one record per agent, a run summary, and failure tracking issues.

The audit-report job runs after every agent job whatever their outcome. It
combines three sources into an :class:`AuditManifest`:

- the dispatcher's per-agent outputs (verdicts),
- each job's result from ``toJSON(needs)``,
- each agent's uploaded audit artifact (output reports, model metrics).

Agents with an error-severity failure get a tracking issue, reused across
runs: a later failure comments on the open issue instead of opening another.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from repo_agents.config import AgentSpec
from repo_agents.models import (
    AuditManifest,
    AuditRecord,
    DispatchVerdict,
    FailureReason,
    SkipReason,
)
from repo_agents.outputs.executor import OutputsResult
from repo_agents.workflow.builder import (
    AUDIT_ARTIFACT_PREFIX,
    DISPATCHER,
    agent_job_id,
    should_run_output,
    skip_reason_output,
    target_output,
)

logger = logging.getLogger(__name__)

OUTPUTS_FILE = "outputs.json"
METRICS_FILE = "metrics.json"
MANIFEST_FILE = "manifest.json"


# ── Verdicts from dispatcher outputs ─────────────────────────────────────────


def parse_skip_message(message: str) -> tuple[SkipReason | None, str]:
    """Inverse of :attr:`DispatchVerdict.skip_message`."""
    head, _, detail = message.partition(": ")
    try:
        return SkipReason(head), detail
    except ValueError:
        return None, message


def verdict_from_outputs(spec: AgentSpec, outputs: dict[str, str]) -> DispatchVerdict | None:
    should_run = outputs.get(should_run_output(spec))
    if should_run is None:
        return None
    target = outputs.get(target_output(spec)) or ""
    target_number = int(target) if target.isdigit() else None
    if should_run == "true":
        return DispatchVerdict.admit(spec.name, target_number=target_number)
    reason, detail = parse_skip_message(outputs.get(skip_reason_output(spec), ""))
    if reason is None:
        return DispatchVerdict(agent=spec.name, admitted=False, detail=detail)
    return DispatchVerdict.skip(spec.name, reason, detail, target_number=target_number)


# ── Artifacts ────────────────────────────────────────────────────────────────


def _read_json(path: Path) -> Any:
    if not path.is_file():
        return None
    try:
        return json.loads(path.read_text())
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Unreadable audit file %s: %s", path, e)
        return None


def load_outputs_result(agent_dir: Path) -> OutputsResult | None:
    raw = _read_json(agent_dir / OUTPUTS_FILE)
    if raw is None:
        return None
    try:
        return OutputsResult.model_validate(raw)
    except ValidationError as e:
        logger.warning("Invalid outputs report in %s: %s", agent_dir, e)
        return None


def load_metrics(agent_dir: Path) -> dict[str, Any]:
    raw = _read_json(agent_dir / METRICS_FILE)
    return raw if isinstance(raw, dict) else {}


# ── Records ──────────────────────────────────────────────────────────────────


def build_record(
    spec: AgentSpec,
    verdict: DispatchVerdict | None,
    job_result: str,
    outputs: OutputsResult | None,
    metrics: dict[str, Any],
) -> AuditRecord:
    failures: list[FailureReason] = []

    if outputs is not None:
        for name in outputs.unrecognized:
            failures.append(FailureReason(category="output", message=f"unrecognized output file: {name}"))
        for report in outputs.reports:
            if not report.failed:
                continue
            category = "output" if report.kind in spec.outputs else "permission"
            for message in report.failure_messages():
                failures.append(FailureReason(category=category, message=message))

    if job_result == "failure" and not failures:
        message = "agent job failed"
        if metrics.get("is_error") and metrics.get("result"):
            message = f"agent job failed: {str(metrics['result'])[:500]}"
        failures.append(FailureReason(category="execution", message=message))
    elif job_result == "cancelled":
        failures.append(
            FailureReason(
                category="execution",
                message="agent job was cancelled (superseded by a newer run or timed out)",
                severity="warning",
            )
        )

    return AuditRecord(
        agent=spec.name,
        slug=spec.slug,
        verdict=verdict,
        job_result=job_result,
        outputs=outputs.reports if outputs else [],
        failures=failures,
        metrics=metrics,
    )


def build_manifest(
    specs: list[AgentSpec],
    job_results: dict[str, Any],
    audit_dir: Path,
    *,
    run_id: str = "",
    run_url: str = "",
    event: str = "",
) -> AuditManifest:
    """Assemble the per-event manifest.

    Args:
        job_results: The ``needs`` context of the audit job, i.e.
            ``{job_id: {"result": ..., "outputs": {...}}}``.
        audit_dir: Where the per-agent artifacts were downloaded; each
            agent's files live in ``<audit_dir>/audit-<slug>/``.
    """
    dispatcher = job_results.get(DISPATCHER) or {}
    dispatcher_outputs = dispatcher.get("outputs") or {}
    manifest = AuditManifest(run_id=run_id, run_url=run_url, event=event)

    if dispatcher.get("result", "success") != "success":
        manifest.platform_errors.append(
            f"dispatcher job {dispatcher.get('result')}: no agent was evaluated"
        )

    for spec in specs:
        agent_dir = audit_dir / f"{AUDIT_ARTIFACT_PREFIX}{spec.slug}"
        job = job_results.get(agent_job_id(spec)) or {}
        manifest.records.append(
            build_record(
                spec,
                verdict_from_outputs(spec, dispatcher_outputs),
                job.get("result", "skipped"),
                load_outputs_result(agent_dir),
                load_metrics(agent_dir),
            )
        )
    return manifest


def write_manifest(manifest: AuditManifest, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(manifest.model_dump_json(indent=2))


def read_manifest(path: Path) -> AuditManifest:
    return AuditManifest.model_validate_json(path.read_text())


# ── Summary ──────────────────────────────────────────────────────────────────


def _verdict_cell(record: AuditRecord) -> str:
    verdict = record.verdict
    if verdict is None:
        return "not evaluated"
    if verdict.admitted:
        return f"admitted (#{verdict.target_number})" if verdict.target_number else "admitted"
    text = f"skipped: `{verdict.reason.value}`" if verdict.reason else "skipped"
    return f"{text} ({verdict.detail})" if verdict.detail else text


def _outputs_cell(record: AuditRecord) -> str:
    if not record.outputs:
        return "-"
    return ", ".join(
        f"{r.kind.value}: {r.status.value} ({len(r.instances)})" for r in record.outputs
    )


def render_summary(manifest: AuditManifest) -> str:
    """Markdown for the job step summary."""
    lines = ["## Agent run summary", ""]
    if manifest.run_url:
        lines.append(f"Run [#{manifest.run_id}]({manifest.run_url}) · event `{manifest.event}`")
        lines.append("")
    for error in manifest.platform_errors:
        lines.append(f"> [!CAUTION]\n> {error}")
        lines.append("")

    lines += ["| Agent | Verdict | Job | Outputs |", "|---|---|---|---|"]
    for record in manifest.records:
        lines.append(
            f"| {record.agent} | {_verdict_cell(record)} | {record.job_result} | {_outputs_cell(record)} |"
        )

    failing = [r for r in manifest.records if r.failures]
    if failing:
        lines += ["", "### Failures"]
        for record in failing:
            lines += ["", f"#### {record.agent}"]
            for failure in record.failures:
                marker = "⚠️ " if failure.severity == "warning" else ""
                lines.append(f"- {marker}**{failure.category}**: {failure.message}")
    return "\n".join(lines) + "\n"


# ── Failure issues ───────────────────────────────────────────────────────────


def failure_issue_title(spec: AgentSpec) -> str:
    return f"{spec.name}: Agent Execution Failed"


def _error_lines(record: AuditRecord) -> list[str]:
    return [
        f"- **{f.category}**: {f.message}" for f in record.failures if f.severity == "error"
    ]


def failure_issue_body(spec: AgentSpec, record: AuditRecord, manifest: AuditManifest) -> str:
    debug = json.dumps(record.model_dump(mode="json"), indent=2)
    definition = spec.source_path or f".github/agents/{spec.slug}.md"
    return "\n".join(
        [
            "> [!CAUTION]",
            f"> **{spec.name}** failed in workflow run [#{manifest.run_id}]({manifest.run_url}).",
            "",
            "### Errors",
            *_error_lines(record),
            "",
            f"Check the [run logs]({manifest.run_url}) and the agent definition at "
            f"`{definition}`. Later failures of this agent are added to this issue as comments.",
            "",
            "<details><summary>Debug info</summary>",
            "",
            "```json",
            debug,
            "```",
            "</details>",
        ]
    )


def failure_comment_body(record: AuditRecord, manifest: AuditManifest) -> str:
    return "\n".join(
        [
            f"Failed again in workflow run [#{manifest.run_id}]({manifest.run_url}).",
            "",
            *_error_lines(record),
        ]
    )


async def file_failure_issue(
    github: Any,
    owner: str,
    repo: str,
    spec: AgentSpec,
    manifest: AuditManifest,
) -> dict[str, Any] | None:
    """Open a tracking issue for the agent's failure, or comment on the open one.

    Returns a description of what was done, or None when nothing was filed.
    """
    record = manifest.record_for(spec.name)
    if record is None or not record.failed:
        logger.info("No failure recorded for %s, nothing to file", spec.name)
        return None
    if not spec.audit.create_issues:
        logger.info("Failure issues disabled for %s", spec.name)
        return None

    title = failure_issue_title(spec)
    labels = list(spec.audit.labels)
    candidates = await github.list_issues(owner, repo, labels=",".join(labels), state="open")
    existing = next((i for i in candidates if i.get("title") == title), None)

    if existing is not None:
        await github.comment_on_issue(
            owner, repo, existing["number"], failure_comment_body(record, manifest)
        )
        logger.info("Commented on existing failure issue #%d for %s", existing["number"], spec.name)
        return {"action": "commented", "number": existing["number"]}

    issue = await github.create_issue(
        owner,
        repo,
        title,
        failure_issue_body(spec, record, manifest),
        labels=labels,
        assignees=list(spec.audit.assignees),
    )
    logger.info("Opened failure issue #%d for %s", issue["number"], spec.name)
    return {"action": "created", "number": issue["number"]}
