"""Output protocol: the only way agents change repository state."""

from repo_agents.outputs.base import ApplyResult, OutputHandler, RunContext, effective_config
from repo_agents.outputs.executor import OutputsResult, apply_agent_outputs, load_instances, run_outputs
from repo_agents.outputs.registry import OutputRegistry, RegistryError, build_registry

__all__ = [
    "ApplyResult",
    "OutputHandler",
    "OutputRegistry",
    "OutputsResult",
    "RegistryError",
    "RunContext",
    "apply_agent_outputs",
    "build_registry",
    "effective_config",
    "load_instances",
    "run_outputs",
]
