# gkrun/errors.py
"""
Error kinds raised by gkrun.

Each kind also subclasses the builtin exception callers would expect
(ValueError for bad configuration, FileNotFoundError for absent artifacts, ...)
so plain `except ValueError` handlers keep working.
"""

from __future__ import annotations


class GkrunError(Exception):
    """Base class for all gkrun errors."""


class RestartConfigurationError(GkrunError, ValueError):
    """A restart was requested with an unusable configuration (fatal)."""


class MissingArtifactError(GkrunError, FileNotFoundError):
    """An artifact required by a query does not exist on disk."""


class MissingVariableError(GkrunError, KeyError):
    """The binary store has neither a variable nor a dimension of that name."""


class RestartChainError(GkrunError, RuntimeError):
    """The restart graph is inconsistent (cycle or dangling back-reference)."""


class UnknownRunError(GkrunError, KeyError):
    """No run with that id is registered."""
