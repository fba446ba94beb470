"""Layered loader for YAML configuration resources (role tables, settings)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".stagecore"
YAML_SUFFIXES = (".yaml", ".yml")


def default_search_paths(subdir: str, project_dir: Path | None = None) -> list[Path]:
    """Project directory first, then the user's home directory."""
    project_root = project_dir or Path.cwd()
    return [
        project_root / CONFIG_DIR_NAME / subdir,
        Path.home() / CONFIG_DIR_NAME / subdir,
    ]


class ResourceLoader:
    """Finds and parses YAML resources across layered search paths.

    The first search path containing ``<name>.yaml`` (or ``.yml``) wins,
    so project files override user files.

    Example usage:
        loader = ResourceLoader(resource_type="roles")
        checker.load_roles_from(loader, "team")
    """

    def __init__(
        self,
        search_paths: list[Path] | None = None,
        resource_type: str = "resources",
        project_dir: Path | None = None,
    ):
        """Initialize the resource loader.

        Args:
            search_paths: Directories to search. Defaults to
                ``<project>/.stagecore/<resource_type>`` then
                ``~/.stagecore/<resource_type>``.
            resource_type: Kind of resource, used in paths and messages.
            project_dir: Project directory for the default search paths.
        """
        if search_paths is None:
            search_paths = default_search_paths(resource_type, project_dir)

        self._search_paths = list(search_paths)
        self._resource_type = resource_type
        self._cache: dict[str, dict[str, Any]] = {}

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def add_search_path(self, path: Path, priority: int = 0) -> None:
        """Add a search path.

        Args:
            path: Directory to search.
            priority: 0 puts it first, anything else appends it.
        """
        if priority == 0:
            self._search_paths.insert(0, path)
        else:
            self._search_paths.append(path)
        self._cache.clear()

    def find(self, name: str) -> Path | None:
        """Path of the highest-priority file for name, if any."""
        for search_path in self._search_paths:
            for suffix in YAML_SUFFIXES:
                candidate = search_path / f"{name}{suffix}"
                if candidate.is_file():
                    return candidate
        return None

    def load(self, name: str) -> dict[str, Any]:
        """Load a resource by name.

        Returns:
            A copy of the parsed mapping.

        Raises:
            FileNotFoundError: If no search path holds the resource.
            ValueError: If the file does not contain a mapping.
        """
        if name not in self._cache:
            path = self.find(name)
            if path is None:
                raise FileNotFoundError(
                    f"{self._resource_type.title()} '{name}' not found in search paths: "
                    f"{[str(p) for p in self._search_paths]}"
                )
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"{path} must contain a mapping, got {type(data).__name__}")
            logger.debug(f"Loaded {self._resource_type} '{name}' from {path}")
            self._cache[name] = data
        return dict(self._cache[name])

    def load_with_defaults(self, name: str, defaults: dict[str, Any]) -> dict[str, Any]:
        """Load a resource layered over defaults; missing resources yield defaults."""
        merged = dict(defaults)
        try:
            merged.update(self.load(name))
        except FileNotFoundError:
            logger.debug(f"No {self._resource_type} '{name}', using defaults")
        return merged

    def list_resources(self) -> list[str]:
        names = {
            path.stem
            for search_path in self._search_paths
            if search_path.is_dir()
            for path in search_path.iterdir()
            if path.suffix in YAML_SUFFIXES
        }
        return sorted(names)

    def exists(self, name: str) -> bool:
        return self.find(name) is not None

    def clear_cache(self) -> None:
        self._cache.clear()
