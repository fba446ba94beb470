"""Layered YAML resource loading."""

from stagecore.resources.loader import ResourceLoader, default_search_paths

__all__ = ["ResourceLoader", "default_search_paths"]
