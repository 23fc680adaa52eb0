"""Durable storage for workflow state snapshots."""

import json
import os
import threading
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Protocol, Union

from .exceptions import (
    ConcurrentModificationError,
    CorruptStateError,
    PersistenceError,
    StateNotFoundError,
)
from .state_codec import REVISION_KEY, WorkflowStateCodec
from .workflow_types import WorkflowState, utcnow

DEFAULT_STATE_DIR = ".autopilot/state"
STATE_FILE_NAME = "workflow-state.json"
BACKUP_DIR_NAME = "backups"
BACKUP_PREFIX = "workflow-state-"


class FileSystem(Protocol):
    """Byte-level file access used by the state store."""

    def exists(self, path: Path) -> bool: ...

    def read_text(self, path: Path) -> str: ...

    def write_text(self, path: Path, text: str) -> None: ...

    def write_text_atomic(self, path: Path, text: str) -> None: ...

    def remove(self, path: Path) -> bool: ...

    def list_names(self, directory: Path) -> List[str]: ...


class LocalFileSystem:
    """FileSystem backed by the local disk."""

    def exists(self, path: Path) -> bool:
        return path.exists()

    def read_text(self, path: Path) -> str:
        return path.read_text(encoding="utf-8")

    def write_text(self, path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    def write_text_atomic(self, path: Path, text: str) -> None:
        """Write to a temp file, flush it to disk and rename over ``path``."""
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(path.name + ".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        # Atomic on POSIX and Windows
        os.replace(temp_path, path)

    def remove(self, path: Path) -> bool:
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_names(self, directory: Path) -> List[str]:
        if not directory.is_dir():
            return []
        return sorted(entry.name for entry in directory.iterdir() if entry.is_file())


class WorkflowStateStore:
    """
    Stores one workflow snapshot per project.

    The file carries a ``revision`` counter next to the snapshot. ``save``
    only succeeds when the revision on disk is the one this store last
    loaded or wrote, so a stale writer gets ConcurrentModificationError
    instead of overwriting newer state.
    """

    def __init__(
        self,
        project_root: Union[str, Path],
        filesystem: Optional[FileSystem] = None,
        state_dir: Union[str, Path] = DEFAULT_STATE_DIR,
        max_backups: int = 5,
        codec: Optional[WorkflowStateCodec] = None,
    ):
        """
        Initialize the store.

        Args:
            project_root: Project the workflow belongs to
            filesystem: File access implementation (default: LocalFileSystem)
            state_dir: State directory, relative to the project root
            max_backups: Number of backups kept by ``create_backup``
            codec: Snapshot codec (default: WorkflowStateCodec)
        """
        self.project_root = Path(project_root)
        self.state_dir = self.project_root / state_dir
        self.max_backups = max_backups
        self._fs: FileSystem = filesystem if filesystem is not None else LocalFileSystem()
        self._codec = codec or WorkflowStateCodec()
        self._lock = threading.Lock()
        # Revision this store expects on disk; None means "no file"
        self._known_revision: Optional[int] = None

    @property
    def state_path(self) -> Path:
        return self.state_dir / STATE_FILE_NAME

    @property
    def backup_dir(self) -> Path:
        return self.state_dir / BACKUP_DIR_NAME

    @property
    def revision(self) -> Optional[int]:
        """Revision last loaded or written by this store."""
        return self._known_revision

    def exists(self) -> bool:
        """Check if a workflow snapshot is persisted."""
        return self._fs.exists(self.state_path)

    def load(self) -> Optional[WorkflowState]:
        """
        Load the persisted snapshot.

        Returns:
            WorkflowState, or None when no workflow is persisted

        Raises:
            CorruptStateError: If the file is not a valid snapshot
            PersistenceError: If the file cannot be read
        """
        with self._lock:
            if not self._fs.exists(self.state_path):
                self._known_revision = None
                return None

            try:
                text = self._fs.read_text(self.state_path)
            except OSError as e:
                raise PersistenceError(
                    f"Failed to read workflow state {self.state_path}: {e}"
                ) from e

            stored = self._codec.loads(text)
            self._known_revision = stored.revision if stored.revision is not None else 0
            return stored.state

    def load_required(self) -> WorkflowState:
        """
        Load the persisted snapshot, failing when there is none.

        Raises:
            StateNotFoundError: If no workflow is persisted
        """
        state = self.load()
        if state is None:
            raise StateNotFoundError(
                f"No active workflow found in {self.project_root}"
            )
        return state

    def save(self, state: WorkflowState) -> int:
        """
        Persist a snapshot atomically.

        Args:
            state: Snapshot to write

        Returns:
            The new revision

        Raises:
            ConcurrentModificationError: If the file changed since last load/save
            PersistenceError: If the write fails
        """
        with self._lock:
            on_disk = self._read_disk_revision()
            if on_disk != self._known_revision:
                raise ConcurrentModificationError(
                    f"Workflow state was modified by another process "
                    f"(expected revision {self._known_revision}, found {on_disk})"
                )

            revision = (self._known_revision or 0) + 1
            self._write(self.state_path, self._codec.dumps(state, revision))
            self._known_revision = revision
            return revision

    def delete(self) -> bool:
        """
        Delete the persisted snapshot.

        Returns:
            True if deleted, False if there was nothing to delete

        Raises:
            PersistenceError: If deletion fails
        """
        with self._lock:
            try:
                deleted = self._fs.remove(self.state_path)
            except OSError as e:
                raise PersistenceError(
                    f"Failed to delete workflow state {self.state_path}: {e}"
                ) from e
            self._known_revision = None
            return deleted

    def create_backup(self) -> Optional[str]:
        """
        Copy the current snapshot into the backup directory.

        Returns:
            Backup file name, or None when there is nothing to back up or
            backups are disabled (``max_backups`` is 0)
        """
        with self._lock:
            if self.max_backups <= 0 or not self._fs.exists(self.state_path):
                return None
            try:
                text = self._fs.read_text(self.state_path)
                name = self._next_backup_name()
                self._fs.write_text(self.backup_dir / name, text)
            except OSError as e:
                raise PersistenceError(f"Failed to back up workflow state: {e}") from e

            self._prune_backups()
            return name

    def list_backups(self) -> List[str]:
        """List backup file names, newest first."""
        names = [
            name
            for name in self._fs.list_names(self.backup_dir)
            if name.startswith(BACKUP_PREFIX) and name.endswith(".json")
        ]
        return sorted(names, reverse=True)

    def restore_backup(self, name: str) -> WorkflowState:
        """
        Replace the current snapshot with a backup.

        Args:
            name: Backup file name from ``list_backups``

        Returns:
            The restored snapshot

        Raises:
            StateNotFoundError: If the backup does not exist
            CorruptStateError: If the backup is not a valid snapshot
        """
        with self._lock:
            path = self.backup_dir / name
            if not self._fs.exists(path):
                raise StateNotFoundError(f"Backup not found: {name}")

            try:
                text = self._fs.read_text(path)
            except OSError as e:
                raise PersistenceError(f"Failed to read backup {name}: {e}") from e

            stored = self._codec.loads(text)
            revision = (self._read_disk_revision() or 0) + 1
            self._write(self.state_path, self._codec.dumps(stored.state, revision))
            self._known_revision = revision
            return stored.state

    def _next_backup_name(self) -> str:
        # Timestamps sort chronologically; bump past any name already taken
        stamp = utcnow()
        while True:
            name = f"{BACKUP_PREFIX}{stamp.strftime('%Y%m%dT%H%M%S%fZ')}.json"
            if not self._fs.exists(self.backup_dir / name):
                return name
            stamp += timedelta(microseconds=1)

    def _prune_backups(self) -> None:
        for name in self.list_backups()[self.max_backups:]:
            try:
                self._fs.remove(self.backup_dir / name)
            except OSError as e:
                raise PersistenceError(f"Failed to prune backup {name}: {e}") from e

    def _read_disk_revision(self) -> Optional[int]:
        if not self._fs.exists(self.state_path):
            return None
        try:
            payload = json.loads(self._fs.read_text(self.state_path))
        except OSError as e:
            raise PersistenceError(f"Failed to read workflow state: {e}") from e
        except json.JSONDecodeError as e:
            raise CorruptStateError(f"Workflow state is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise CorruptStateError("Workflow state must be a JSON object")
        revision = payload.get(REVISION_KEY)
        return revision if isinstance(revision, int) else 0

    def _write(self, path: Path, text: str) -> None:
        try:
            self._fs.write_text_atomic(path, text)
        except OSError as e:
            raise PersistenceError(f"Failed to write workflow state {path}: {e}") from e
