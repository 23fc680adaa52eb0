"""Tests for autopilot configuration."""

from pathlib import Path

import pytest
import yaml

from autopilot.config.loader import get_config_paths, load_config, save_config
from autopilot.config.models import (
    AutopilotConfig,
    GitConfig,
    WorkflowConfig,
)
from autopilot.core.exceptions import ConfigurationError


class TestConfigModels:
    """Test configuration model validation."""

    def test_default_config(self):
        """Test creating default configuration."""
        config = AutopilotConfig()

        assert config.workflow.max_attempts == 3
        assert config.workflow.state_dir == ".autopilot/state"
        assert config.tasks.path == ".autopilot/tasks.yaml"
        assert config.tasks.tag == "master"
        assert config.git.commit_type == "feat"
        assert config.git.protected_branches == ["main", "master", "develop"]
        assert config.logging.enabled is True

    def test_workflow_config_validation(self):
        """Test attempt and backup limits."""
        assert WorkflowConfig(max_attempts=1).max_attempts == 1

        with pytest.raises(ValueError, match="max_attempts must be at least 1"):
            WorkflowConfig(max_attempts=0)

        with pytest.raises(ValueError, match="max_attempts cannot exceed 20"):
            WorkflowConfig(max_attempts=21)

        with pytest.raises(ValueError, match="max_backups cannot be negative"):
            WorkflowConfig(max_backups=-1)

    def test_git_config_validation(self):
        """Test commit type and template validation."""
        assert GitConfig(commit_type="fix").commit_type == "fix"

        with pytest.raises(ValueError, match="commit_type must be one of"):
            GitConfig(commit_type="feature")

        with pytest.raises(ValueError, match="Invalid placeholder"):
            GitConfig(commit_template="${header} $")

    def test_paths_resolved_against_project(self, tmp_path):
        """Test relative paths are resolved inside the project."""
        config = AutopilotConfig()
        assert config.get_tasks_path(tmp_path) == (tmp_path / ".autopilot" / "tasks.yaml").resolve()
        assert config.get_log_dir(tmp_path) == (tmp_path / ".autopilot" / "logs").resolve()

    def test_env_var_resolution(self, monkeypatch):
        """Test ${VAR} and ${VAR:default} are expanded."""
        monkeypatch.setenv("AUTOPILOT_TAG", "release")
        config = AutopilotConfig(
            tasks={"tag": "${AUTOPILOT_TAG}", "path": "${TASK_FILE:tasks.yaml}"}
        ).resolve_env_vars()

        assert config.tasks.tag == "release"
        assert config.tasks.path == "tasks.yaml"

    def test_template_fields_survive_env_resolution(self):
        """Test commit template placeholders are not treated as env vars."""
        config = AutopilotConfig().resolve_env_vars()
        assert "${header}" in config.git.commit_template


class TestConfigLoader:
    """Test loading configuration files."""

    def test_defaults_without_files(self, tmp_path):
        """Test loading with no config files returns defaults."""
        config = load_config(project_root=tmp_path)
        assert config == AutopilotConfig()

    def test_project_config(self, tmp_path):
        """Test project configuration overrides defaults."""
        config_path = tmp_path / ".autopilot" / "config.yaml"
        config_path.parent.mkdir()
        config_path.write_text(yaml.safe_dump({"workflow": {"max_attempts": 5}}))

        config = load_config(project_root=tmp_path)
        assert config.workflow.max_attempts == 5
        assert config.workflow.max_backups == 5

    def test_project_overrides_global(self, tmp_path, isolated_config_home):
        """Test project values win over global ones, merged per key."""
        global_path = isolated_config_home / "autopilot" / "config.yaml"
        global_path.parent.mkdir()
        global_path.write_text(
            yaml.safe_dump({"git": {"branch_prefix": "ap/", "commit_type": "fix"}})
        )
        project_path = tmp_path / ".autopilot" / "config.yaml"
        project_path.parent.mkdir()
        project_path.write_text(yaml.safe_dump({"git": {"commit_type": "chore"}}))

        config = load_config(project_root=tmp_path)
        assert config.git.branch_prefix == "ap/"
        assert config.git.commit_type == "chore"

    def test_invalid_values(self, tmp_path):
        """Test invalid values raise ConfigurationError."""
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.safe_dump({"workflow": {"max_attempts": 0}}))

        with pytest.raises(ConfigurationError, match="validation failed"):
            load_config(project_root=tmp_path, project_config_path=config_path)

    def test_invalid_yaml(self, tmp_path):
        """Test malformed YAML raises ConfigurationError."""
        config_path = tmp_path / "config.yaml"
        config_path.write_text("workflow: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(project_root=tmp_path, project_config_path=config_path)

    def test_non_mapping_yaml(self, tmp_path):
        """Test a YAML list is rejected."""
        config_path = tmp_path / "config.yaml"
        config_path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError, match="must contain a YAML object"):
            load_config(project_root=tmp_path, project_config_path=config_path)

    def test_save_and_reload(self, tmp_path):
        """Test a saved configuration loads back equal."""
        config = AutopilotConfig(git={"branch_prefix": "ap/"})
        config_path = tmp_path / ".autopilot" / "config.yaml"
        save_config(config, config_path)

        assert load_config(project_root=tmp_path) == config

    def test_config_paths(self, tmp_path, isolated_config_home):
        """Test the global path follows XDG_CONFIG_HOME."""
        paths = get_config_paths(tmp_path)
        assert paths["global"] == Path(isolated_config_home) / "autopilot" / "config.yaml"
        assert paths["project"] == tmp_path / ".autopilot" / "config.yaml"
