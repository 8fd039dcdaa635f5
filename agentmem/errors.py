"""
Error types for the agentmem query pipeline.

ValidationError  — malformed request or config values (no partial result).
NotFoundError    — a scope id that does not resolve while walking the chain.
StorageError     — underlying SQLite failure, tagged with the entry type and
                   scope being read when it happened.

Unknown filter *values* (an unrecognized category or level string) are not
errors: they behave as literal filters and match nothing.
"""

from __future__ import annotations

from typing import Any, Optional


class AgentMemError(Exception):
    """Base class for all agentmem errors."""

    pass


class ValidationError(AgentMemError, ValueError):
    """Raised when request or config values are malformed or out of range."""

    pass


class NotFoundError(AgentMemError, LookupError):
    """Raised when a scope id cannot be resolved."""

    def __init__(self, scope_type: str, scope_id: Optional[str]):
        self.scope_type = scope_type
        self.scope_id = scope_id
        super().__init__(f"Scope not found: {scope_type}:{scope_id}")


class StorageError(AgentMemError):
    """Raised when a storage read fails."""

    def __init__(
        self,
        message: str,
        *,
        entry_type: Optional[str] = None,
        scope: Optional[Any] = None,
    ):
        self.entry_type = entry_type
        self.scope = scope
        where = []
        if entry_type:
            where.append(f"type={entry_type}")
        if scope is not None:
            where.append(f"scope={scope}")
        suffix = f" ({', '.join(where)})" if where else ""
        super().__init__(f"{message}{suffix}")
