"""Shared building blocks for stagecore."""

from stagecore.core.errors import StagecoreError

__all__ = ["StagecoreError"]
