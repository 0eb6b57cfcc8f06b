"""Output handler registry: one handler per :class:`OutputKind`."""

from __future__ import annotations

from typing import Iterable, Iterator

from repo_agents.models import OutputKind
from repo_agents.outputs.base import OutputHandler
from repo_agents.outputs.comments import AddCommentHandler
from repo_agents.outputs.discussions import CreateDiscussionHandler
from repo_agents.outputs.files import UpdateFileHandler
from repo_agents.outputs.issues import CloseIssueHandler, CreateIssueHandler
from repo_agents.outputs.labels import AddLabelHandler, RemoveLabelHandler
from repo_agents.outputs.pull_requests import ClosePullRequestHandler, CreatePullRequestHandler


class RegistryError(Exception):
    """The handler set does not cover every output kind exactly once."""


class OutputRegistry:
    """Immutable mapping of output kind → handler.

    Construction fails unless every :class:`OutputKind` has exactly one
    handler, so a kind can never be declared by an agent yet be unhandled.
    """

    def __init__(self, handlers: Iterable[OutputHandler]):
        self._handlers: dict[OutputKind, OutputHandler] = {}
        for handler in handlers:
            if handler.kind in self._handlers:
                raise RegistryError(f"Duplicate handler for {handler.kind.value}")
            self._handlers[handler.kind] = handler

        missing = [kind.value for kind in OutputKind if kind not in self._handlers]
        if missing:
            raise RegistryError(f"No handler for output kind(s): {', '.join(missing)}")

    def handler(self, kind: OutputKind) -> OutputHandler:
        return self._handlers[kind]

    def __iter__(self) -> Iterator[OutputHandler]:
        return (self._handlers[kind] for kind in OutputKind)

    def __len__(self) -> int:
        return len(self._handlers)


def build_registry() -> OutputRegistry:
    """The registry of built-in handlers."""
    return OutputRegistry(
        [
            AddCommentHandler(),
            AddLabelHandler(),
            RemoveLabelHandler(),
            CreateIssueHandler(),
            CreateDiscussionHandler(),
            CreatePullRequestHandler(),
            UpdateFileHandler(),
            CloseIssueHandler(),
            ClosePullRequestHandler(),
        ]
    )
