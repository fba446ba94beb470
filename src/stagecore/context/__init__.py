"""Shared state between stages: context store, file cache and redaction."""

from stagecore.context.file_cache import FileCache, FileCacheEntry
from stagecore.context.sanitizer import DataSanitizer, SanitizationResult
from stagecore.context.store import ContextEntry, ContextStore, split_key

__all__ = [
    "ContextStore",
    "ContextEntry",
    "split_key",
    "FileCache",
    "FileCacheEntry",
    "DataSanitizer",
    "SanitizationResult",
]
