"""Project configuration loading."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import Any

from ruamel.yaml import YAML

from eventflow.graph.errors import EventFlowError
from eventflow.graph.mutations import DEFAULT_OPTION_LABEL, DisconnectPolicy

CONFIG_FILENAME = "project.yaml"

# Default configuration values
DEFAULT_DATABASE = "eventflow.db"
DEFAULT_EXPORT_DIRECTORY = "exports"
DEFAULT_EXPORT_INDENT = 2


@dataclass
class EditorConfig:
    """Authoring behaviour of the mutation engine.

    Resolution order for the disconnect policy:
    1. Environment variable EVENTFLOW_DISCONNECT_POLICY
    2. Project config (editor.disconnect_policy)
    3. "even"
    """

    disconnect_policy: str = DisconnectPolicy.EVEN.value
    option_label: str = DEFAULT_OPTION_LABEL

    def get_disconnect_policy(self) -> DisconnectPolicy:
        """Get the effective disconnect policy.

        Raises:
            ValueError: If the configured value is not a known policy.
        """
        raw = os.getenv("EVENTFLOW_DISCONNECT_POLICY") or self.disconnect_policy
        return DisconnectPolicy(raw.strip().lower())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EditorConfig:
        """Create config from dictionary.

        Args:
            data: Dictionary with disconnect_policy and option_label fields.

        Returns:
            EditorConfig instance.
        """
        return cls(
            disconnect_policy=str(data.get("disconnect_policy", DisconnectPolicy.EVEN.value)),
            option_label=str(data.get("option_label", DEFAULT_OPTION_LABEL)),
        )


@dataclass
class ExportConfig:
    """Where and how storyline documents are written."""

    directory: str = DEFAULT_EXPORT_DIRECTORY
    indent: int = DEFAULT_EXPORT_INDENT

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExportConfig:
        return cls(
            directory=str(data.get("directory", DEFAULT_EXPORT_DIRECTORY)),
            indent=int(data.get("indent", DEFAULT_EXPORT_INDENT)),
        )


@dataclass
class ProjectConfig:
    """Configuration for an EventFlow project."""

    name: str
    version: int = 1
    database: str = DEFAULT_DATABASE
    editor: EditorConfig = field(default_factory=EditorConfig)
    export: ExportConfig = field(default_factory=ExportConfig)

    def get_database_path(self, project_path: Path) -> Path:
        """Resolve the SQLite file, honouring EVENTFLOW_DATABASE.

        Relative paths are taken relative to the project directory.
        """
        database = os.getenv("EVENTFLOW_DATABASE") or self.database
        path = Path(database)
        return path if path.is_absolute() else project_path / path

    def get_export_dir(self, project_path: Path) -> Path:
        path = Path(self.export.directory)
        return path if path.is_absolute() else project_path / path

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectConfig:
        """Create config from dictionary.

        Args:
            data: Dictionary containing config fields.

        Returns:
            ProjectConfig instance.
        """
        return cls(
            name=data.get("name", "unnamed"),
            version=data.get("version", 1),
            database=data.get("database", DEFAULT_DATABASE),
            editor=EditorConfig.from_dict(dict(data.get("editor") or {})),
            export=ExportConfig.from_dict(dict(data.get("export") or {})),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "database": self.database,
            "editor": {
                "disconnect_policy": self.editor.disconnect_policy,
                "option_label": self.editor.option_label,
            },
            "export": {
                "directory": self.export.directory,
                "indent": self.export.indent,
            },
        }


class ConfigError(EventFlowError):
    """Raised when project configuration cannot be loaded."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load project config at {path}: {reason}")


def load_project_config(project_path: Path) -> ProjectConfig:
    """Load project configuration from project.yaml.

    Args:
        project_path: Path to the project root directory.

    Returns:
        ProjectConfig instance.

    Raises:
        ConfigError: If config cannot be loaded.
    """
    config_path = project_path / CONFIG_FILENAME

    if not config_path.exists():
        raise ConfigError(config_path, "File not found")

    yaml = YAML()
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.load(f)

        if data is None:
            raise ConfigError(config_path, "Empty file")

        config = ProjectConfig.from_dict(dict(data))
        config.editor.get_disconnect_policy()
        return config
    except Exception as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(config_path, str(e)) from e


def create_default_config(name: str) -> ProjectConfig:
    """Create a default project configuration.

    Args:
        name: Project name.

    Returns:
        ProjectConfig with default values.
    """
    return ProjectConfig(name=name)


def write_project_config(config: ProjectConfig, project_path: Path) -> Path:
    """Write project.yaml into *project_path*; return the file path."""
    config_path = project_path / CONFIG_FILENAME
    yaml = YAML()
    yaml.default_flow_style = False
    with config_path.open("w", encoding="utf-8") as f:
        yaml.dump(config.to_dict(), f)
    return config_path
