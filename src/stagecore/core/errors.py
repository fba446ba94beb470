"""Base exception for stagecore."""

from __future__ import annotations


class StagecoreError(Exception):
    """Base class for errors raised by stagecore components.

    Expected outcomes (missing context keys, denied access, false
    conditions) are reported through return values instead. Exceptions
    are reserved for failures the caller has to act on.
    """

    pass
