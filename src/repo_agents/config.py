"""Configuration loading for repo-agents.

Agent specifications live as markdown files with YAML frontmatter in
``.github/agents/``. The frontmatter declares triggers, permissions, output
capabilities and admission policy; the markdown body is the agent's
instructions. Runtime settings come from the GitHub Actions environment.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path, PurePosixPath
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from repo_agents.models import OutputKind

logger = logging.getLogger(__name__)

DEFAULT_AGENTS_DIR = Path(".github/agents")

PermissionLevel = Literal["read", "write"]

# Permission scopes accepted in a GITHUB_TOKEN `permissions:` block.
WORKFLOW_SCOPES = frozenset(
    {
        "actions",
        "checks",
        "contents",
        "deployments",
        "discussions",
        "id-token",
        "issues",
        "packages",
        "pages",
        "pull-requests",
        "repository-projects",
        "security-events",
        "statuses",
    }
)


class AgentSpecError(Exception):
    """An agent definition file could not be turned into an AgentSpec."""


def slugify(name: str) -> str:
    """'Issue Triage Bot' → 'issue-triage-bot'."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _snake_keys(data: Any) -> Any:
    """Frontmatter accepts both ``allowed-paths`` and ``allowed_paths``."""
    if not isinstance(data, dict):
        return data
    return {k.replace("-", "_") if isinstance(k, str) else k: v for k, v in data.items()}


def _as_tuple(value: Any) -> tuple:
    if value is None:
        return ()
    if isinstance(value, (str, dict)):
        return (value,)
    return tuple(value)


# ── Agent Spec Models ────────────────────────────────────────────────────────


class TriggerDeclaration(BaseModel):
    """Events an agent reacts to. Each item-event list holds sub-actions."""

    model_config = ConfigDict(frozen=True)

    issues: tuple[str, ...] = ()
    pull_request: tuple[str, ...] = ()
    discussion: tuple[str, ...] = ()
    schedule: tuple[str, ...] = Field(default=(), description="Cron expressions")
    repository_dispatch: tuple[str, ...] = ()
    workflow_dispatch: bool = False

    @model_validator(mode="before")
    @classmethod
    def _normalise(cls, data: Any) -> Any:
        data = _snake_keys(data)
        if isinstance(data, dict) and "workflow_dispatch" in data:
            # `workflow_dispatch:` with no value still opts in
            if data["workflow_dispatch"] is None or isinstance(data["workflow_dispatch"], dict):
                data = {**data, "workflow_dispatch": True}
        return data

    @field_validator("issues", "pull_request", "discussion", "repository_dispatch", mode="before")
    @classmethod
    def _types(cls, v: Any) -> tuple:
        if isinstance(v, dict):
            v = v.get("types")
        return _as_tuple(v)

    @field_validator("schedule", mode="before")
    @classmethod
    def _crons(cls, v: Any) -> tuple:
        crons = []
        for entry in _as_tuple(v):
            crons.append(entry["cron"] if isinstance(entry, dict) else entry)
        return tuple(crons)


class TimeoutConfig(BaseModel):
    """Time budgets in minutes."""

    model_config = ConfigDict(frozen=True)

    execution: int = Field(default=30, ge=1)
    context_collection: int = Field(default=5, ge=1)
    total: int | None = Field(default=None, ge=1)

    @model_validator(mode="before")
    @classmethod
    def _from_int(cls, data: Any) -> Any:
        if isinstance(data, int):
            return {"execution": data}
        return _snake_keys(data)

    @property
    def total_minutes(self) -> int:
        return self.total if self.total is not None else self.execution + 15


class AuditConfig(BaseModel):
    """How failures of this agent are reported."""

    model_config = ConfigDict(frozen=True)

    create_issues: bool = True
    labels: tuple[str, ...] = ("agent-failure",)
    assignees: tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _keys(cls, data: Any) -> Any:
        return _snake_keys(data)


class OutputConfig(BaseModel):
    """Per-kind output capability settings. Unknown keys are kept for handlers."""

    model_config = ConfigDict(frozen=True, extra="allow")

    max: int | None = Field(default=None, ge=1, description="Maximum instances per run")
    sign: bool = Field(default=False, description="Require signed commits")
    blocked_labels: tuple[str, ...] = ()
    allowed_paths: tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _keys(cls, data: Any) -> Any:
        if data is None or data is True:
            return {}
        return _snake_keys(data)


class AgentSpec(BaseModel):
    """Fully-resolved, immutable declaration of one agent."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    on: TriggerDeclaration = Field(default_factory=TriggerDeclaration)
    permissions: dict[str, PermissionLevel] = Field(default_factory=dict)
    outputs: dict[OutputKind, OutputConfig] = Field(default_factory=dict)

    allowed_actors: tuple[str, ...] = ()
    allowed_users: tuple[str, ...] = ()
    allowed_teams: tuple[str, ...] = Field(default=(), description="org/team-slug or team-slug")
    allowed_paths: tuple[str, ...] = ()
    trigger_labels: tuple[str, ...] = Field(
        default=(), description="At least one must be on the item for the agent to run"
    )
    rate_limit_minutes: int = Field(default=5, ge=0)
    check_blocking_issues: bool = Field(
        default=False, description="Skip while blocked; retry when a blocker closes"
    )
    concurrency: bool = Field(default=True, description="Participate in event debouncing")

    timeout: TimeoutConfig = Field(default_factory=TimeoutConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    instructions: str = ""
    source_path: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalise(cls, data: Any) -> Any:
        data = _snake_keys(data)
        if isinstance(data, dict) and True in data:
            # YAML 1.1 reads a bare `on:` key as boolean true
            data = dict(data)
            data["on"] = data.pop(True)
        return data

    @field_validator(
        "allowed_actors",
        "allowed_users",
        "allowed_teams",
        "allowed_paths",
        "trigger_labels",
        mode="before",
    )
    @classmethod
    def _lists(cls, v: Any) -> tuple:
        return _as_tuple(v)

    @field_validator("permissions", mode="before")
    @classmethod
    def _permission_scopes(cls, v: Any) -> Any:
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("permissions must be a mapping of scope → read|write")
        scopes = {}
        for scope, level in v.items():
            name = str(scope).replace("_", "-")
            if name not in WORKFLOW_SCOPES:
                raise ValueError(f"Unknown permission scope: {scope!r}")
            scopes[name] = level
        return scopes

    @field_validator("outputs", mode="before")
    @classmethod
    def _enabled_outputs(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, (list, tuple)):
            return {kind: {} for kind in v}
        return {kind: cfg for kind, cfg in v.items() if cfg is not False}

    @field_validator("allowed_paths")
    @classmethod
    def _relative_paths(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        for pattern in v:
            p = PurePosixPath(pattern)
            if p.is_absolute() or ".." in p.parts:
                raise ValueError(f"allowed_paths entries must be relative: {pattern!r}")
        return v

    @property
    def slug(self) -> str:
        return slugify(self.name)

    def output_paths(self, kind: OutputKind) -> tuple[str, ...]:
        """Path allow-list for a file-editing kind; the kind's own list wins."""
        cfg = self.outputs.get(kind)
        if cfg is not None and cfg.allowed_paths:
            return cfg.allowed_paths
        return self.allowed_paths


# ── Agent Spec Loading ───────────────────────────────────────────────────────


def _split_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split YAML frontmatter from markdown body.

    Returns (frontmatter_dict, body_markdown).
    If no frontmatter found, returns ({}, full_content).
    """
    if not content.lstrip().startswith("---"):
        return {}, content

    lines = content.split("\n")
    start_idx = None
    end_idx = None
    for i, line in enumerate(lines):
        if line.strip() == "---":
            if start_idx is None:
                start_idx = i
            else:
                end_idx = i
                break

    if start_idx is None or end_idx is None:
        return {}, content

    frontmatter_text = "\n".join(lines[start_idx + 1 : end_idx])
    body = "\n".join(lines[end_idx + 1 :]).strip()

    try:
        fm = yaml.safe_load(frontmatter_text) or {}
    except yaml.YAMLError as e:
        raise AgentSpecError(f"Invalid YAML frontmatter: {e}") from e
    if not isinstance(fm, dict):
        raise AgentSpecError("Frontmatter must be a mapping")
    return fm, body


def parse_agent_spec(content: str, source_path: str | None = None) -> AgentSpec:
    """Parse one agent markdown file into an AgentSpec.

    Raises:
        AgentSpecError: If the frontmatter is missing, malformed or invalid.
    """
    fm, body = _split_frontmatter(content)
    if not fm:
        raise AgentSpecError(f"No frontmatter found in {source_path or 'agent file'}")
    bad_keys = [k for k in fm if not isinstance(k, str) and k is not True]
    if bad_keys:
        raise AgentSpecError(
            f"Invalid agent spec {source_path or ''}: frontmatter keys must be strings, got {bad_keys!r}"
        )
    try:
        return AgentSpec.model_validate({**fm, "instructions": body, "source_path": source_path})
    except ValidationError as e:
        raise AgentSpecError(f"Invalid agent spec {source_path or ''}: {e}") from e


def load_agent_specs(agents_dir: Path = DEFAULT_AGENTS_DIR) -> list[AgentSpec]:
    """Load every ``*.md`` agent file in a directory, sorted by filename.

    Raises:
        FileNotFoundError: If the directory doesn't exist.
        AgentSpecError: If any file is invalid or two agents share a slug.
    """
    if not agents_dir.is_dir():
        raise FileNotFoundError(f"Agents directory not found: {agents_dir}")

    specs: list[AgentSpec] = []
    seen: dict[str, str] = {}
    for md_file in sorted(agents_dir.glob("*.md")):
        spec = parse_agent_spec(md_file.read_text(), source_path=md_file.as_posix())
        if spec.slug in seen:
            raise AgentSpecError(
                f"Agents {seen[spec.slug]!r} and {spec.name!r} share the slug {spec.slug!r}"
            )
        seen[spec.slug] = spec.name
        specs.append(spec)
        logger.info("Loaded agent spec: %s (%s)", spec.name, md_file.name)

    return specs


def find_agent(specs: list[AgentSpec], name: str) -> AgentSpec | None:
    """Look up an agent by display name or slug."""
    for spec in specs:
        if spec.name == name or spec.slug == name or spec.slug == slugify(name):
            return spec
    return None


# ── Runtime Settings ─────────────────────────────────────────────────────────


class RuntimeSettings(BaseModel):
    """Settings for runtime stages, read from the Actions environment."""

    repository: str = Field(default="", description="owner/repo")
    run_id: str = ""
    run_number: str = ""
    workflow: str = Field(default="", description="Workflow display name")
    workflow_file: str = Field(default="agents.yml", description="Compiled workflow file name")
    server_url: str = "https://github.com"
    api_url: str = "https://api.github.com"
    actor: str = ""
    token: str | None = None
    app_id: str | None = None
    app_private_key: str | None = None

    agents_dir: Path = DEFAULT_AGENTS_DIR
    outputs_dir: Path = Path("/tmp/outputs")
    audit_dir: Path = Path("/tmp/audit")
    workspace: Path = Path(".")

    github_output: Path | None = None
    step_summary: Path | None = None

    @property
    def owner(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.repository.split("/", 1)[-1]

    @property
    def run_url(self) -> str:
        return f"{self.server_url}/{self.repository}/actions/runs/{self.run_id}"

    def agent_url(self, spec: AgentSpec) -> str:
        path = spec.source_path or f"{DEFAULT_AGENTS_DIR.as_posix()}/{spec.slug}.md"
        return f"{self.server_url}/{self.repository}/blob/HEAD/{path}"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> RuntimeSettings:
        env = os.environ if env is None else env

        # owner/repo/.github/workflows/agents.yml@refs/heads/main
        workflow_ref = env.get("GITHUB_WORKFLOW_REF", "")
        workflow_file = "agents.yml"
        if workflow_ref:
            workflow_file = workflow_ref.split("@", 1)[0].rsplit("/", 1)[-1]

        values: dict[str, Any] = {
            "repository": env.get("GITHUB_REPOSITORY", ""),
            "run_id": env.get("GITHUB_RUN_ID", ""),
            "run_number": env.get("GITHUB_RUN_NUMBER", ""),
            "workflow": env.get("GITHUB_WORKFLOW", ""),
            "workflow_file": workflow_file,
            "server_url": env.get("GITHUB_SERVER_URL", "https://github.com"),
            "api_url": env.get("GITHUB_API_URL", "https://api.github.com"),
            "actor": env.get("GITHUB_ACTOR", ""),
            "token": env.get("GH_TOKEN") or env.get("GITHUB_TOKEN") or None,
            "app_id": env.get("GH_APP_ID") or None,
            "app_private_key": env.get("GH_APP_PRIVATE_KEY") or None,
            "workspace": Path(env.get("GITHUB_WORKSPACE", ".")),
        }
        if env.get("REPO_AGENTS_DIR"):
            values["agents_dir"] = Path(env["REPO_AGENTS_DIR"])
        if env.get("REPO_AGENTS_OUTPUTS_DIR"):
            values["outputs_dir"] = Path(env["REPO_AGENTS_OUTPUTS_DIR"])
        if env.get("REPO_AGENTS_AUDIT_DIR"):
            values["audit_dir"] = Path(env["REPO_AGENTS_AUDIT_DIR"])
        if env.get("GITHUB_OUTPUT"):
            values["github_output"] = Path(env["GITHUB_OUTPUT"])
        if env.get("GITHUB_STEP_SUMMARY"):
            values["step_summary"] = Path(env["GITHUB_STEP_SUMMARY"])
        return cls(**values)
