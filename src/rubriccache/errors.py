"""Exceptions raised by the cache engine.

Cache store failures never appear here: the store absorbs them and reports
a miss. Everything below is surfaced so the caller can decide whether to
continue on a best-effort basis or abort the request.
"""

from __future__ import annotations


class CacheEngineError(Exception):
    """Base exception for the cache engine."""


class SnapshotSerializationError(CacheEngineError):
    """A backing-store snapshot could not be serialized deterministically."""

    def __init__(self, source_id: str, reason: str):
        self.source_id = source_id
        self.reason = reason
        super().__init__(f"Cannot serialize snapshot for source {source_id!r}: {reason}")


class VersionPersistenceError(CacheEngineError):
    """Durable engine state (versions, salt, hashes, user states) could not be read or written."""

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to {operation}{detail}")


class UnknownNamespaceError(CacheEngineError, KeyError):
    """The namespace is not registered."""

    def __init__(self, namespace: str):
        self.namespace = namespace
        super().__init__(f"Unknown cache namespace: {namespace!r}")

    def __str__(self) -> str:
        return str(self.args[0])


class InvalidParamsError(CacheEngineError, TypeError):
    """Key parameters do not match the namespace's parameter model."""

    def __init__(self, namespace: str, expected: type, got: type):
        self.namespace = namespace
        super().__init__(
            f"Namespace {namespace!r} expects {expected.__name__} params, got {got.__name__}"
        )
