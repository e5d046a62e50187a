"""Git collaborator used by the git storage backend."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


class GitError(RuntimeError):
    """Git error class."""

    def __init__(self, message: str, command: str, output: str = "") -> None:
        """Initialize error."""
        super().__init__(message)
        self.command = command
        self.output = output


class GitRepository:
    """A local Git checkout that snapshots are committed to and read from.

    Attributes:
        path (Path): Path to the working tree.
    """

    def __init__(self, path: Path):
        """Initialize repository."""
        self.path = Path(path).resolve()
        self.name = self.path.name

    def __str__(self) -> str:
        """Return string representation."""
        return f"GitRepository({self.path})"

    def __repr__(self) -> str:
        """Return string representation."""
        return self.__str__()

    def exists(self) -> bool:
        """Check if repository exists and is a Git repository."""
        if not self.path.exists() or not self.path.is_dir():
            return False
        try:
            self._run_git("rev-parse", "--git-dir")
            return True
        except GitError:
            return False

    def _run_git(self, *args: str, cwd: Optional[Path] = None) -> str:
        """Run a Git command and return its output."""
        command = ["git", *args]
        try:
            result = subprocess.run(
                command,
                cwd=cwd or self.path,
                capture_output=True,
                text=True,
                check=True,
            )
            return result.stdout.strip()
        except FileNotFoundError as e:
            raise GitError("Git is not installed", " ".join(command)) from e
        except subprocess.CalledProcessError as e:
            output = (e.stderr or e.stdout or "").strip()
            raise GitError(
                f"Git command failed: {output or 'no output'}", " ".join(command), output
            ) from e

    @classmethod
    def clone(cls, url: str, path: Path) -> "GitRepository":
        """Clone ``url`` into ``path``.

        Raises:
            GitError: If the remote cannot be reached.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        repo = cls(path)
        repo._run_git("clone", "--quiet", url, str(repo.path), cwd=path.parent)
        return repo

    def configure_identity(self, name: str, email: str) -> None:
        """Set the commit identity used in this checkout."""
        self._run_git("config", "user.name", name)
        self._run_git("config", "user.email", email)

    def remote_has_branch(self, branch: str, remote: str = "origin") -> bool:
        """Check whether ``branch`` exists on the remote."""
        return bool(self._run_git("ls-remote", "--heads", remote, branch))

    def pull(self, branch: str, remote: str = "origin") -> None:
        """Fast-forward the checkout to the remote branch."""
        self._run_git("fetch", "--quiet", remote, branch)
        self._run_git("checkout", "--quiet", "-B", branch, f"{remote}/{branch}")

    def add(self, path: str) -> None:
        """Add files to the Git staging area.

        Args:
            path (str): Path to the file or directory to add, relative to repository root.
        """
        self._run_git("add", path)

    def commit(self, message: str) -> bool:
        """Commit staged changes.

        Returns:
            bool: False if there was nothing to commit.
        """
        try:
            self._run_git("commit", "--quiet", "-m", message)
        except GitError as e:
            if "nothing to commit" in e.output or "nothing to commit" in str(e):
                return False
            raise
        return True

    def push(self, branch: str, remote: str = "origin") -> None:
        """Push the current HEAD to ``branch`` on the remote."""
        self._run_git("push", "--quiet", remote, f"HEAD:refs/heads/{branch}")

    def has_changes(self) -> bool:
        """Check if there are uncommitted changes, including untracked files."""
        return bool(self._run_git("status", "--porcelain"))
