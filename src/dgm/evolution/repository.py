"""
Repository Operations

Git-backed patch store for candidate revisions. Every piece of work happens
in a disposable detached worktree, so neither the running process's own
source nor the main checkout is ever modified. New revisions are commits
pinned by `refs/dgm/<name>` so that garbage collection cannot drop them.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import git
import structlog

from dgm.core.errors import ConfigurationError, PatchApplyError, SandboxError

logger = structlog.get_logger(__name__)

_IDENTITY = {
    "GIT_AUTHOR_NAME": "dgm",
    "GIT_AUTHOR_EMAIL": "dgm@localhost",
    "GIT_COMMITTER_NAME": "dgm",
    "GIT_COMMITTER_EMAIL": "dgm@localhost",
}


class Repository:
    """
    Patch store over a git repository.

    Example:
        ```python
        repo = Repository("path/to/agent")

        async with repo.checkout(parent_revision) as workdir:
            ...  # edit files
            patch = await repo.diff(workdir, parent_revision)

        async with repo.checkout(parent_revision) as workdir:
            await repo.apply_patch(workdir, patch)
            child_revision = await repo.commit(workdir, "self-improve", ref_name=child_id)
        ```
    """

    def __init__(self, path: str | Path):
        """
        Open a repository.

        Raises:
            ConfigurationError: The path is not a git repository
        """
        self.path = Path(path).resolve()
        try:
            self._repo = git.Repo(self.path)
        except (git.InvalidGitRepositoryError, git.NoSuchPathError) as e:
            raise ConfigurationError(f"Not a git repository: {self.path}") from e

        # Serialises writes to the shared .git directory
        self._lock = asyncio.Lock()

    def resolve(self, revision: str) -> str:
        """
        Resolve a revision name to a full commit sha.

        Raises:
            SandboxError: Unknown revision
        """
        try:
            return self._repo.commit(revision).hexsha
        except (git.exc.BadName, git.exc.BadObject, ValueError) as e:
            raise SandboxError(f"Unknown revision {revision!r} in {self.path}") from e

    @asynccontextmanager
    async def checkout(self, revision: str, prefix: str = "dgm_checkout_") -> AsyncIterator[Path]:
        """
        Check out `revision` into a fresh detached worktree.

        The worktree is removed when the context exits, whatever the outcome,
        including cancellation while the checkout is still being created.
        """
        sha = self.resolve(revision)
        temp_dir = Path(tempfile.mkdtemp(prefix=prefix))
        target = temp_dir / "repo"

        try:
            async with self._lock:
                add = asyncio.ensure_future(asyncio.to_thread(
                    self._repo.git.worktree, "add", "--detach", str(target), sha
                ))
                try:
                    await asyncio.shield(add)
                except asyncio.CancelledError:
                    # git keeps running in its thread; it must finish before the discard
                    await asyncio.wait([add])
                    if not add.cancelled():
                        add.exception()
                    raise
        except git.GitCommandError as e:
            self._discard(target, temp_dir)
            raise SandboxError(f"Failed to check out {sha[:12]}: {e.stderr}") from e
        except BaseException:
            self._discard(target, temp_dir)
            raise

        logger.debug("Checked out worktree", revision=sha[:12], path=str(target))
        try:
            yield target
        finally:
            try:
                await self._remove_worktree(target)
            finally:
                shutil.rmtree(temp_dir, ignore_errors=True)

    def _discard(self, target: Path, temp_dir: Path) -> None:
        """Synchronously drop a half-created checkout."""
        if target.exists():
            try:
                self._repo.git.worktree("remove", "--force", str(target))
            except git.GitCommandError:
                shutil.rmtree(temp_dir, ignore_errors=True)
                self._repo.git.worktree("prune")
        shutil.rmtree(temp_dir, ignore_errors=True)
        logger.debug("Discarded unfinished checkout", path=str(target))

    async def _remove_worktree(self, target: Path) -> None:
        async with self._lock:
            try:
                await asyncio.to_thread(
                    self._repo.git.worktree, "remove", "--force", str(target)
                )
            except git.GitCommandError as e:
                logger.warning("Failed to remove worktree", path=str(target), error=e.stderr)
                await asyncio.to_thread(self._repo.git.worktree, "prune")

    async def diff(self, workdir: str | Path, base_revision: str) -> str:
        """
        Diff a worktree (including untracked files) against a revision.

        Returns:
            The patch text, empty when nothing changed
        """
        return await asyncio.to_thread(self._diff, Path(workdir), base_revision)

    def _diff(self, workdir: Path, base_revision: str) -> str:
        worktree = git.Repo(workdir)
        try:
            worktree.git.add("-A")
            patch = worktree.git.diff(base_revision, "--cached", "--binary")
        except git.GitCommandError as e:
            raise SandboxError(f"git diff failed: {e.stderr}") from e
        # GitPython strips the final newline, which git apply needs
        return patch + "\n" if patch else ""

    async def apply_patch(self, workdir: str | Path, patch: str) -> None:
        """
        Apply a patch to a worktree. All or nothing.

        Raises:
            PatchApplyError: The patch does not apply cleanly
        """
        if not patch.strip():
            return
        await asyncio.to_thread(self._apply_patch, Path(workdir), patch)

    def _apply_patch(self, workdir: Path, patch: str) -> None:
        with tempfile.NamedTemporaryFile(
            "w", suffix=".diff", delete=False, encoding="utf-8"
        ) as f:
            f.write(patch)
            patch_path = Path(f.name)

        try:
            git.Repo(workdir).git.apply("--whitespace=nowarn", str(patch_path))
        except git.GitCommandError as e:
            raise PatchApplyError(f"Patch does not apply: {e.stderr}") from e
        finally:
            patch_path.unlink(missing_ok=True)

    async def reset(self, workdir: str | Path, revision: str) -> None:
        """Discard every change in a worktree and move it to `revision`."""
        await asyncio.to_thread(self._reset, Path(workdir), revision)

    def _reset(self, workdir: Path, revision: str) -> None:
        worktree = git.Repo(workdir)
        try:
            worktree.git.reset("--hard", revision)
            worktree.git.clean("-fdx")
        except git.GitCommandError as e:
            raise SandboxError(f"git reset failed: {e.stderr}") from e

    async def commit(
        self,
        workdir: str | Path,
        message: str,
        ref_name: str | None = None,
    ) -> str:
        """
        Commit everything in a worktree as a new revision.

        Args:
            workdir: Worktree to commit
            message: Commit message
            ref_name: Pin the commit as `refs/dgm/<ref_name>`

        Returns:
            The new commit sha
        """
        async with self._lock:
            return await asyncio.to_thread(self._commit, Path(workdir), message, ref_name)

    def _commit(self, workdir: Path, message: str, ref_name: str | None) -> str:
        worktree = git.Repo(workdir)
        try:
            worktree.git.add("-A")
            with worktree.git.custom_environment(**_IDENTITY):
                worktree.git.commit("-m", message, "--allow-empty", "--no-verify")
            sha = worktree.git.rev_parse("HEAD")
            if ref_name:
                self._repo.git.update_ref(f"refs/dgm/{ref_name}", sha)
        except git.GitCommandError as e:
            raise SandboxError(f"git commit failed: {e.stderr}") from e

        logger.debug("Committed revision", revision=sha[:12], ref=ref_name)
        return sha
