"""Git adapter used by the workflow calling layer."""

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .exceptions import GitOperationError

DEFAULT_PROTECTED_BRANCHES = ("main", "master", "develop")


@dataclass
class GitStatus:
    """Working tree status parsed from ``git status --porcelain``."""

    staged: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    untracked: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not (self.staged or self.modified or self.deleted or self.untracked)

    @property
    def changed_files(self) -> List[str]:
        """Every path that appears in the status, in first-seen order."""
        seen: Dict[str, None] = {}
        for path in self.staged + self.modified + self.deleted + self.untracked:
            seen.setdefault(path, None)
        return list(seen)


@dataclass
class CommitInfo:
    """Information about a single commit."""

    hash: str
    message: str
    author_name: str
    author_email: str
    date: str


class GitAdapter:
    """
    Safe wrappers around the git commands the workflow needs.

    Paths under ``excluded_paths`` (the autopilot state directory by
    default) never count as changes and are never staged.
    """

    def __init__(
        self,
        repo_path: Optional[Path] = None,
        excluded_paths: Sequence[str] = (".autopilot/",),
    ):
        """
        Initialize the adapter.

        Args:
            repo_path: Path to git repository (default: current directory)
            excluded_paths: Repository-relative prefixes ignored by status
                and staging
        """
        self.repo_path = Path(repo_path) if repo_path else Path.cwd()
        self.excluded_paths = tuple(excluded_paths)

    def _run_git(
        self, *args: str, check: bool = True
    ) -> Tuple[int, str, str]:
        """
        Run a git command.

        Args:
            args: Git command arguments
            check: Raise error on non-zero exit

        Returns:
            Tuple of (returncode, stdout, stderr)

        Raises:
            GitOperationError: If command fails and check=True
        """
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise GitOperationError("Git command not found") from e
        except OSError as e:
            raise GitOperationError(f"Git operation failed: {e}") from e

        if check and result.returncode != 0:
            raise GitOperationError(
                f"Git command failed: git {' '.join(args)}\n"
                f"Error: {result.stderr.strip()}"
            )

        return result.returncode, result.stdout, result.stderr

    def is_git_repo(self) -> bool:
        """Check if the repository path is inside a git work tree."""
        if not self.repo_path.is_dir():
            return False
        returncode, _, _ = self._run_git("rev-parse", "--git-dir", check=False)
        return returncode == 0

    def ensure_repository(self) -> None:
        """
        Raises:
            GitOperationError: If the path is not a git repository
        """
        if not self.is_git_repo():
            raise GitOperationError(f"Not a git repository: {self.repo_path}")

    def get_current_branch(self) -> str:
        """
        Get the name of the current branch.

        Raises:
            GitOperationError: If not on a branch
        """
        _, stdout, _ = self._run_git("rev-parse", "--abbrev-ref", "HEAD")
        branch = stdout.strip()

        if branch == "HEAD":
            raise GitOperationError("Not currently on a branch (detached HEAD)")

        return branch

    def get_current_commit(self) -> str:
        """Get the current commit hash."""
        _, stdout, _ = self._run_git("rev-parse", "HEAD")
        return stdout.strip()

    def branch_exists(self, name: str) -> bool:
        returncode, _, _ = self._run_git(
            "show-ref", "--verify", "--quiet", f"refs/heads/{name}", check=False
        )
        return returncode == 0

    def create_and_checkout_branch(self, name: str) -> None:
        """
        Create a branch and switch to it.

        Raises:
            GitOperationError: If the branch already exists or checkout fails
        """
        if self.branch_exists(name):
            raise GitOperationError(f"Branch already exists: {name}")
        self._run_git("checkout", "-b", name)

    def checkout(self, ref: str) -> None:
        """Checkout a branch, tag or commit."""
        self._run_git("checkout", ref)

    def is_default_branch(
        self,
        branch: Optional[str] = None,
        protected: Iterable[str] = DEFAULT_PROTECTED_BRANCHES,
    ) -> bool:
        """Check if ``branch`` (default: current) is a protected default branch."""
        return (branch or self.get_current_branch()) in set(protected)

    def get_status(self) -> GitStatus:
        """
        Get the working tree status, excluding ignored prefixes.

        Returns:
            GitStatus with staged, modified, deleted and untracked paths
        """
        _, stdout, _ = self._run_git("status", "--porcelain", "--untracked-files=all")

        status = GitStatus()
        for line in stdout.splitlines():
            if len(line) < 4:
                continue
            index_code, tree_code, path = line[0], line[1], line[3:]
            # Renames are reported as "old -> new"
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            path = path.strip('"')
            if self._is_excluded(path):
                continue

            if index_code == "?" and tree_code == "?":
                status.untracked.append(path)
                continue
            if index_code not in (" ", "?"):
                status.staged.append(path)
            if tree_code == "M":
                status.modified.append(path)
            elif tree_code == "D":
                status.deleted.append(path)

        return status

    def has_uncommitted_changes(self) -> bool:
        return not self.get_status().is_clean

    def is_clean_working_tree(self) -> bool:
        """Check if working tree is clean (no uncommitted changes)."""
        return not self.has_uncommitted_changes()

    def ensure_clean_working_tree(self) -> None:
        """
        Raises:
            GitOperationError: If there are uncommitted changes
        """
        status = self.get_status()
        if not status.is_clean:
            files = ", ".join(status.changed_files[:5])
            raise GitOperationError(
                f"Working tree has uncommitted changes: {files}. "
                f"Commit or stash them first."
            )

    def has_staged_changes(self) -> bool:
        return bool(self.get_status().staged)

    def stage_files(self, paths: Sequence[str]) -> None:
        """
        Stage files.

        Args:
            paths: Paths to stage; ``["."]`` stages every change except the
                excluded prefixes
        """
        if list(paths) == ["."]:
            self._run_git("add", "-A")
            for excluded in self.excluded_paths:
                if (self.repo_path / excluded).exists():
                    self._run_git("reset", "-q", "--", excluded, check=False)
            return

        for path in paths:
            if not self._is_excluded(path):
                self._run_git("add", "--", path)

    def create_commit(
        self,
        message: str,
        metadata: Optional[Dict[str, str]] = None,
        allow_empty: bool = False,
        enforce_non_default_branch: bool = False,
        protected_branches: Iterable[str] = DEFAULT_PROTECTED_BRANCHES,
    ) -> str:
        """
        Commit the staged changes.

        Args:
            message: Commit message
            metadata: Key/value pairs appended as ``[key:value]`` lines
            allow_empty: Allow a commit with nothing staged
            enforce_non_default_branch: Refuse to commit on a protected branch
            protected_branches: Branch names treated as protected

        Returns:
            Commit hash

        Raises:
            GitOperationError: If nothing is staged, the branch is protected,
                or the commit fails
        """
        if enforce_non_default_branch:
            branch = self.get_current_branch()
            if self.is_default_branch(branch, protected_branches):
                raise GitOperationError(
                    f"Refusing to commit on protected branch: {branch}"
                )

        if not allow_empty and not self.has_staged_changes():
            raise GitOperationError("No staged changes to commit")

        args = ["commit", "--no-gpg-sign", "-m", message]
        for key, value in (metadata or {}).items():
            args.extend(["-m", f"[{key}:{value}]"])
        if allow_empty:
            args.append("--allow-empty")

        self._run_git(*args)
        return self.get_current_commit()

    def get_last_commit(self) -> Optional[CommitInfo]:
        """
        Get information about HEAD.

        Returns:
            CommitInfo, or None in a repository without commits
        """
        returncode, stdout, _ = self._run_git(
            "log", "-1", "--format=%H%x00%an%x00%ae%x00%aI%x00%B", check=False
        )
        if returncode != 0 or not stdout.strip():
            return None

        parts = stdout.split("\x00", 4)
        if len(parts) < 5:
            raise GitOperationError(f"Unexpected git log output: {stdout!r}")

        commit_hash, author_name, author_email, date, body = parts
        return CommitInfo(
            hash=commit_hash.strip(),
            message=body.strip(),
            author_name=author_name,
            author_email=author_email,
            date=date,
        )

    def _is_excluded(self, path: str) -> bool:
        return any(
            path == prefix.rstrip("/") or path.startswith(prefix)
            for prefix in self.excluded_paths
        )
