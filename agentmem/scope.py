"""
Scope chain resolution.

A scope chain is the ordered list of scopes a query reads from, most
specific first and always ending at global when inheritance is on:

    session → project → org → global

Parent pointers live on the scope rows (sessions.project_id,
projects.org_id). A project without an organization skips the org level.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from agentmem.errors import NotFoundError, ValidationError
from agentmem.types import GLOBAL_SCOPE, VALID_SCOPE_TYPES, ScopeRef

logger = logging.getLogger(__name__)

ScopeChain = Tuple[ScopeRef, ...]

# child scope type → (parent scope type, parent pointer column)
_PARENTS = {
    "session": ("project", "project_id"),
    "project": ("org", "org_id"),
}


def resolve_scope_chain(
    store, scope_type: str, scope_id: Optional[str], inherit: bool = True,
) -> ScopeChain:
    """Expand a scope into its ancestor chain.

    Args:
        store: EntryStore (anything with ``read_scope(type, id)``).
        scope_type: One of global, org, project, session.
        scope_id: Scope id; must be None for global and set otherwise.
        inherit: Walk parent pointers up to global when True.

    Returns:
        Tuple of ScopeRef, most specific first.

    Raises:
        ValidationError: Unknown scope type or inconsistent scope_id.
        NotFoundError: A scope id (or a parent pointer) does not resolve.
    """
    if scope_type not in VALID_SCOPE_TYPES:
        raise ValidationError(f"Invalid scope type: {scope_type!r}")
    if scope_type == "global":
        if scope_id is not None:
            raise ValidationError("Global scope does not take a scope_id")
        return (GLOBAL_SCOPE,)
    if not scope_id:
        raise ValidationError(f"Scope type {scope_type!r} requires a scope_id")

    row = store.read_scope(scope_type, scope_id)
    if row is None:
        raise NotFoundError(scope_type, scope_id)
    if not inherit:
        return (ScopeRef(scope_type, scope_id),)

    chain: List[ScopeRef] = [ScopeRef(scope_type, scope_id)]
    current_type = scope_type
    while current_type in _PARENTS:
        parent_type, pointer = _PARENTS[current_type]
        parent_id = row.get(pointer)
        if not parent_id:
            # Missing parent: skip to the next level up (project → global)
            break
        row = store.read_scope(parent_type, parent_id)
        if row is None:
            raise NotFoundError(parent_type, parent_id)
        chain.append(ScopeRef(parent_type, parent_id))
        current_type = parent_type
    chain.append(GLOBAL_SCOPE)

    logger.debug("scope chain: %s", " → ".join(str(s) for s in chain))
    return tuple(chain)
