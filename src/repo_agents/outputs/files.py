"""update-file: change files on the base branch, within the agent's path allow-list.

Also holds the file-list and path checks shared with ``create-pr``.
"""

from __future__ import annotations

import re
from functools import lru_cache
from pathlib import PurePosixPath

from repo_agents.config import OutputConfig
from repo_agents.models import OutputKind
from repo_agents.outputs.base import ApplyResult, OutputHandler, RunContext, require_string


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> re.Pattern[str]:
    """``**`` spans directories, ``*`` and ``?`` stay within one path segment."""
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out))


def path_allowed(path: str, patterns: tuple[str, ...] | list[str]) -> bool:
    return any(_glob_regex(p).fullmatch(path) for p in patterns)


def validate_files(files: object, allowed_paths: tuple[str, ...] | None) -> list[str]:
    """Check a ``files`` array of ``{path, content}``.

    ``allowed_paths`` of None means unrestricted; an empty tuple allows nothing.
    """
    if not isinstance(files, list) or not files:
        return ["'files' must be a non-empty array of {path, content}"]

    reasons = []
    for i, entry in enumerate(files, start=1):
        if not isinstance(entry, dict):
            reasons.append(f"files[{i}] must be an object with 'path' and 'content'")
            continue
        path = entry.get("path")
        if not isinstance(path, str) or not path:
            reasons.append(f"files[{i}].path is required")
            continue
        if not isinstance(entry.get("content"), str):
            reasons.append(f"files[{i}].content must be a string")
        p = PurePosixPath(path)
        if p.is_absolute() or ".." in p.parts:
            reasons.append(f"path '{path}' must be relative to the repository root")
        elif allowed_paths is not None and not path_allowed(path, allowed_paths):
            reasons.append(f"path '{path}' is not in the allowed paths")
    return reasons


async def signing_reasons(config: OutputConfig, run: RunContext) -> list[str]:
    if config.sign and not await run.can_sign():
        return ["signed commits are required but no signing key is configured"]
    return []


class UpdateFileHandler(OutputHandler):
    kind = OutputKind.UPDATE_FILE
    summary = "Create or overwrite files on the default branch. Paths must match the allow-list."
    example = {
        "files": [{"path": "docs/CHANGELOG.md", "content": "# Changelog\n..."}],
        "message": "docs: update changelog",
    }

    def limits(self, config: OutputConfig) -> list[str]:
        limits = super().limits(config)
        if config.allowed_paths:
            limits.append("allowed paths: " + ", ".join(config.allowed_paths))
        else:
            limits.append("no paths are allowed; this capability cannot be used")
        if config.sign:
            limits.append("commits are signed")
        return limits

    async def validate_instance(self, config: OutputConfig, run: RunContext, data: dict) -> list[str]:
        reasons = validate_files(data.get("files"), config.allowed_paths)
        reasons += require_string(data, "message")
        if "branch" in data:
            reasons += require_string(data, "branch")
        if config.sign and run.git is None:
            reasons.append("signed commits are required but no local checkout is available")
        else:
            reasons += await signing_reasons(config, run)
        return reasons

    async def apply(self, config: OutputConfig, run: RunContext, data: dict) -> ApplyResult:
        branch = data.get("branch") or run.base_branch
        if config.sign:
            await run.git.checkout_new_branch(branch, branch)
            paths = run.git.write_files(data["files"])
            sha = await run.git.commit(data["message"], paths, sign=True)
            await run.git.push(branch)
            return ApplyResult.applied(f"committed {len(paths)} file(s) to {branch}", commit=sha)

        commits = []
        for entry in data["files"]:
            sha = await run.github.get_file_sha(run.owner, run.repo, entry["path"], ref=branch)
            result = await run.github.put_file(
                run.owner,
                run.repo,
                entry["path"],
                entry["content"],
                data["message"],
                sha=sha,
                branch=branch,
            )
            commits.append((result.get("commit") or {}).get("sha"))
        return ApplyResult.applied(
            f"updated {len(commits)} file(s) on {branch}", commits=commits
        )
