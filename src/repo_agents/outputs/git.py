"""Local git operations for file-editing outputs."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


class GitCommandError(Exception):
    def __init__(self, args: tuple[str, ...], returncode: int, stderr: str):
        self.args_ = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr.strip()}")


class GitWorkspace:
    """The checked-out repository the agent ran in."""

    def __init__(self, root: Path, *, remote: str = "origin"):
        self.root = root
        self.remote = remote

    async def run(self, *args: str, timeout: float = 120) -> str:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(self.root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0:
            raise GitCommandError(args, proc.returncode, stderr_bytes.decode(errors="replace"))
        return stdout_bytes.decode(errors="replace").strip()

    async def can_sign(self) -> bool:
        """Whether commits made here can be signed (a signing key is configured)."""
        try:
            key = await self.run("config", "--get", "user.signingkey")
        except GitCommandError:
            return False
        return bool(key)

    async def delete_local_branch(self, branch: str) -> bool:
        try:
            await self.run("branch", "-D", branch)
        except GitCommandError:
            return False
        logger.info("Deleted stale local branch %s", branch)
        return True

    async def checkout_new_branch(self, branch: str, base: str) -> None:
        await self.run("checkout", "-B", branch, f"{self.remote}/{base}")

    def write_files(self, files: list[dict]) -> list[str]:
        """Write ``{path, content}`` entries relative to the workspace root."""
        written = []
        for entry in files:
            rel = PurePosixPath(entry["path"])
            if rel.is_absolute() or ".." in rel.parts:
                raise ValueError(f"Refusing to write outside the workspace: {entry['path']}")
            target = self.root / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(entry["content"])
            written.append(rel.as_posix())
        return written

    async def commit(self, message: str, paths: list[str], *, sign: bool = False) -> str:
        await self.run("add", "--", *paths)
        args = ["commit", "-m", message]
        if sign:
            args.insert(1, "-S")
        await self.run(*args)
        return await self.run("rev-parse", "HEAD")

    async def push(self, branch: str) -> None:
        await self.run("push", self.remote, f"HEAD:refs/heads/{branch}")
