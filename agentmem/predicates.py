"""
Query predicates — one query-capability interface, two backends.

StructuralFilter   column filters compiled into a WHERE clause with bound
                   parameters (scope match, is_active, category, priority,
                   level, created_by, date ranges, id restriction).
TemporalPredicate  raw interval/point-in-time comparison on knowledge
                   validity columns; nulls are open bounds, which the
                   structural builder cannot express.

An EntryQuery bundles both plus ordering and a row cap. The store routes it
by filter kind: a query carrying a temporal predicate goes through the raw
statement path, everything else through the structural builder.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, List, Optional, Tuple

from agentmem.types import ScopeRef, ValidityWindow, as_instant, is_date_only

# Native fetch ordering per entry type
ORDER_BY = {
    "tool": "created_at DESC, id ASC",
    "guideline": "priority DESC, created_at DESC, id ASC",
    "knowledge": "created_at DESC, id ASC",
    "experience": "created_at DESC, id ASC",
}


@dataclass(frozen=True)
class Clause:
    """SQL fragment with its positional parameters."""

    sql: str
    params: Tuple[Any, ...] = ()


def _lower_bound(column: str, value: str) -> Clause:
    # A bare date sorts before every timestamp of that day
    return Clause(f"{column} >= ?", (value,))


def _upper_bound(column: str, value: str) -> Clause:
    if is_date_only(value):
        next_day = (date.fromisoformat(value) + timedelta(days=1)).isoformat()
        return Clause(f"{column} < ?", (next_day,))
    return Clause(f"{column} <= ?", (value,))


def scope_clause(scopes: Tuple[ScopeRef, ...], alias: str = "") -> Clause:
    """OR of scope matches; global matches rows whose scope_id IS NULL."""
    parts: List[str] = []
    params: List[Any] = []
    for ref in scopes:
        if ref.scope_id is None:
            parts.append(f"({alias}scope_type=? AND {alias}scope_id IS NULL)")
            params.append(ref.scope_type)
        else:
            parts.append(f"({alias}scope_type=? AND {alias}scope_id=?)")
            params.extend([ref.scope_type, ref.scope_id])
    if not parts:
        return Clause("1=1")
    return Clause("(" + " OR ".join(parts) + ")", tuple(params))


@dataclass(frozen=True)
class StructuralFilter:
    """Column filters for the structural builder. Unset fields do not filter."""

    scopes: Tuple[ScopeRef, ...] = ()
    active_only: bool = True
    category: Optional[str] = None
    priority_min: Optional[int] = None
    priority_max: Optional[int] = None
    level: Optional[str] = None
    created_by: Optional[str] = None
    created_after: Optional[str] = None
    created_before: Optional[str] = None
    updated_after: Optional[str] = None
    updated_before: Optional[str] = None
    ids: Optional[Tuple[str, ...]] = None  # None = unrestricted, () = nothing

    def to_sql(self, alias: str = "") -> Clause:
        """Compile to a WHERE clause (without the WHERE keyword)."""
        conditions: List[str] = []
        params: List[Any] = []

        def add(clause: Clause) -> None:
            conditions.append(clause.sql)
            params.extend(clause.params)

        if self.scopes:
            add(scope_clause(self.scopes, alias))
        if self.active_only:
            conditions.append(f"{alias}is_active=1")
        if self.category is not None:
            add(Clause(f"{alias}category=?", (self.category,)))
        if self.priority_min is not None:
            add(Clause(f"{alias}priority>=?", (self.priority_min,)))
        if self.priority_max is not None:
            add(Clause(f"{alias}priority<=?", (self.priority_max,)))
        if self.level is not None:
            add(Clause(f"{alias}level=?", (self.level,)))
        if self.created_by is not None:
            add(Clause(f"{alias}created_by=?", (self.created_by,)))
        if self.created_after:
            add(_lower_bound(f"{alias}created_at", self.created_after))
        if self.created_before:
            add(_upper_bound(f"{alias}created_at", self.created_before))
        if self.updated_after:
            add(_lower_bound(f"{alias}updated_at", self.updated_after))
        if self.updated_before:
            add(_upper_bound(f"{alias}updated_at", self.updated_before))
        if self.ids is not None:
            if self.ids:
                placeholders = ",".join("?" for _ in self.ids)
                add(Clause(f"{alias}id IN ({placeholders})", tuple(self.ids)))
            else:
                conditions.append("0")
        where = " AND ".join(conditions) if conditions else "1=1"
        return Clause(where, tuple(params))


# Interval semantics: a null valid_from is open towards the past and a null
# valid_until is open towards the future. Bound as (upper, lower); a point T
# is the interval [T, T].
_WINDOW_SQL = (
    "(valid_from IS NULL OR valid_from <= ?) "
    "AND (valid_until IS NULL OR valid_until >= ?)"
)


@dataclass(frozen=True)
class TemporalPredicate:
    """Knowledge validity predicate: point-in-time or interval overlap."""

    at_time: Optional[str] = None
    valid_during: Optional[ValidityWindow] = None

    def to_sql(self) -> Clause:
        """Raw SQL fragment over valid_from / valid_until."""
        parts: List[str] = []
        params: List[Any] = []
        if self.at_time is not None:
            t = as_instant(self.at_time)
            parts.append(_WINDOW_SQL)
            params.extend([t, t])
        if self.valid_during is not None:
            start = as_instant(self.valid_during.start)
            end = as_instant(self.valid_during.end, end_of_day=True)
            parts.append(_WINDOW_SQL)
            params.extend([end, start])
        if not parts:
            return Clause("1=1")
        return Clause(" AND ".join(f"({p})" for p in parts), tuple(params))


@dataclass(frozen=True)
class EntryQuery:
    """One bounded, ordered read of a single entry type."""

    entry_type: str
    where: StructuralFilter
    temporal: Optional[TemporalPredicate] = None
    limit: Optional[int] = None

    @property
    def is_raw(self) -> bool:
        return self.temporal is not None

    @property
    def order_by(self) -> str:
        return ORDER_BY[self.entry_type]
