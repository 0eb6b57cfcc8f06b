"""repo-agents CLI entry point.

    repo-agents compile [--agents-dir DIR] [--output FILE]
    repo-agents run {dispatcher,prepare,outputs,audit-report,audit-issues} [...]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from repo_agents.config import (
    DEFAULT_AGENTS_DIR,
    AgentSpec,
    AgentSpecError,
    RuntimeSettings,
    find_agent,
    load_agent_specs,
)
from repo_agents.dispatch import PreflightError
from repo_agents.models import InboundEvent
from repo_agents.workflow.builder import CompileOptions, GraphError, compile_workflow

logger = logging.getLogger("repo_agents")

DEFAULT_OUTPUT = Path(".github/workflows/agents.yml")

STAGES = ("dispatcher", "prepare", "outputs", "audit-report", "audit-issues")


def _compile(args: argparse.Namespace) -> int:
    try:
        specs = load_agent_specs(args.agents_dir)
    except (FileNotFoundError, AgentSpecError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    options = CompileOptions(
        workflow_name=args.name,
        agents_dir=args.agents_dir.as_posix(),
        oauth_token_secret=args.oauth_token,
        api_key_secret=not args.no_api_key,
        github_app=not args.no_github_app,
    )
    try:
        text = compile_workflow(specs, options)
    except GraphError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if str(args.output) == "-":
        sys.stdout.write(text)
        return 0
    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_text(text)
    print(f"Compiled {len(specs)} agent(s) into {args.output}")
    return 0


def _target_number() -> int | None:
    value = os.environ.get("AGENT_TARGET", "")
    return int(value) if value.isdigit() else None


def _require_agent(specs: list[AgentSpec], name: str | None) -> AgentSpec:
    if not name:
        raise SystemExit("Error: --agent is required for this stage")
    spec = find_agent(specs, name)
    if spec is None:
        raise SystemExit(f"Error: no agent named {name!r} in the agents directory")
    return spec


async def _run_stage(args: argparse.Namespace) -> int:
    from repo_agents import stages

    settings = RuntimeSettings.from_env()
    if args.agents_dir is not None:
        settings = settings.model_copy(update={"agents_dir": args.agents_dir})
    specs = load_agent_specs(settings.agents_dir)

    match args.stage:
        case "dispatcher":
            event = InboundEvent.from_env()
            try:
                await stages.run_dispatcher(settings, specs, event, explain=args.explain)
            except PreflightError as e:
                logger.error("Preflight failed: %s", e)
                return 1
            return 0

        case "prepare":
            spec = _require_agent(specs, args.agent)
            await stages.run_prepare(
                settings, spec, event=InboundEvent.from_env(), target_number=_target_number()
            )
            return 0

        case "outputs":
            spec = _require_agent(specs, args.agent)
            result = await stages.run_outputs_stage(settings, spec, target_number=_target_number())
            return 1 if result.failed else 0

        case "audit-report":
            job_results = json.loads(os.environ.get("JOB_RESULTS") or "{}")
            stages.run_audit_report(
                settings, specs, job_results, event_name=os.environ.get("GITHUB_EVENT_NAME", "")
            )
            return 0

        case "audit-issues":
            spec = _require_agent(specs, args.agent)
            await stages.run_audit_issues(settings, spec)
            return 0

    return 2


def main():
    parser = argparse.ArgumentParser(
        prog="repo-agents",
        description="Compile repository agents into a GitHub Actions workflow and run its stages",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    subparsers = parser.add_subparsers(dest="command")

    # repo-agents compile
    compile_parser = subparsers.add_parser("compile", help="Generate the agents workflow")
    compile_parser.add_argument(
        "--agents-dir",
        type=Path,
        default=DEFAULT_AGENTS_DIR,
        help=f"Directory of agent definitions (default: {DEFAULT_AGENTS_DIR})",
    )
    compile_parser.add_argument(
        "--output",
        type=Path,
        default=DEFAULT_OUTPUT,
        help=f"Workflow file to write, or - for stdout (default: {DEFAULT_OUTPUT})",
    )
    compile_parser.add_argument("--name", default="Repo Agents", help="Workflow display name")
    compile_parser.add_argument(
        "--oauth-token",
        action="store_true",
        help="Pass the CLAUDE_CODE_OAUTH_TOKEN secret to agents",
    )
    compile_parser.add_argument(
        "--no-api-key",
        action="store_true",
        help="Do not pass the ANTHROPIC_API_KEY secret to agents",
    )
    compile_parser.add_argument(
        "--no-github-app",
        action="store_true",
        help="Always use GITHUB_TOKEN instead of minting a GitHub App token",
    )

    # repo-agents run <stage>
    run_parser = subparsers.add_parser("run", help="Run a workflow stage (inside GitHub Actions)")
    run_parser.add_argument("stage", choices=STAGES)
    run_parser.add_argument("--agent", help="Agent name or slug (per-agent stages)")
    run_parser.add_argument(
        "--agents-dir",
        type=Path,
        default=None,
        help=f"Directory of agent definitions (default: $REPO_AGENTS_DIR or {DEFAULT_AGENTS_DIR})",
    )
    run_parser.add_argument(
        "--explain",
        action="store_true",
        help="dispatcher: evaluate every check and log all failing reasons",
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "compile":
        sys.exit(_compile(args))

    try:
        code = asyncio.run(_run_stage(args))
    except (FileNotFoundError, AgentSpecError) as e:
        logger.error("%s", e)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
