"""repo-agents: compile repository agents into one GitHub Actions workflow."""

__version__ = "0.1.0"
