"""Shared pytest fixtures and utilities for autopilot tests."""

import subprocess
from pathlib import Path
from typing import Generator

import pytest
import yaml

from autopilot.config.models import AutopilotConfig
from autopilot.core.state_machine import WorkflowOrchestrator
from autopilot.orchestrator.workflow_service import WorkflowService
from tests.mocks import MemoryFileSystem, make_context


TASKS = {
    "tasks": [
        {
            "id": 1,
            "title": "Add user login",
            "status": "pending",
            "subtasks": [
                {"id": 1, "title": "Validate credentials", "status": "pending"},
                {"id": 2, "title": "Issue session token", "status": "pending"},
            ],
        },
        {
            "id": 2,
            "title": "Password reset",
            "subtasks": [
                {"id": 1, "title": "Send reset email", "status": "done"},
                {"id": 2, "title": "Accept new password", "status": "pending"},
            ],
        },
        {"id": 3, "title": "Empty task", "subtasks": []},
        {
            "id": 4,
            "title": "Finished task",
            "subtasks": [{"id": 1, "title": "Already there", "status": "done"}],
        },
    ]
}


def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_config_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the global config lookup at an empty directory."""
    config_home = tmp_path / "xdg-config"
    config_home.mkdir()
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    return config_home


@pytest.fixture
def git_repo(tmp_path: Path) -> Generator[Path, None, None]:
    """Create a temporary git repository for testing.

    The repository is on branch ``main`` with one commit containing
    README.md, and has a local user configured.

    Yields:
        Path to the git repository
    """
    repo_path = tmp_path / "test_repo"
    repo_path.mkdir(parents=True, exist_ok=True)

    _git(repo_path, "init")
    _git(repo_path, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo_path, "config", "user.name", "Test User")
    _git(repo_path, "config", "user.email", "test@example.com")
    _git(repo_path, "config", "commit.gpgsign", "false")

    (repo_path / "README.md").write_text("# Test Repository\n\nGenerated for testing.\n")
    _git(repo_path, "add", ".")
    _git(repo_path, "commit", "-m", "Initial commit")

    yield repo_path


@pytest.fixture
def tasks_file(git_repo: Path) -> Path:
    """Write the sample task file to ``.autopilot/tasks.yaml``."""
    path = git_repo / ".autopilot" / "tasks.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(TASKS, f, sort_keys=False)
    return path


@pytest.fixture
def memory_fs() -> MemoryFileSystem:
    """In-memory filesystem for state store tests."""
    return MemoryFileSystem()


# ============================================================================
# Workflow Fixtures
# ============================================================================


@pytest.fixture
def orchestrator() -> WorkflowOrchestrator:
    """Fresh orchestrator over three pending subtasks."""
    return WorkflowOrchestrator(make_context(3))


@pytest.fixture
def service(git_repo: Path, tasks_file: Path) -> WorkflowService:
    """Workflow service over the sample repository and task file."""
    return WorkflowService(git_repo, config=AutopilotConfig())
