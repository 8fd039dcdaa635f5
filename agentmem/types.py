"""
Entry Data Model — Scoped, Versioned Knowledge Artifacts

Defines the four entry variants (tool, guideline, knowledge, experience),
their version snapshots, scope references, and the request-scoped records
used by the query pipeline (request, candidate scores, result items).

Entries are read-only from the pipeline's point of view: version rows are
append-only and ``is_active`` is the only deactivation mechanism.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, ClassVar, Dict, List, Literal, Mapping, Optional, Tuple

from agentmem.errors import ValidationError

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

EntryType = Literal["tool", "guideline", "knowledge", "experience"]
ScopeType = Literal["global", "org", "project", "session"]
CandidateSource = Literal["fts", "semantic", "related"]
RelationDirection = Literal["forward", "backward", "both"]

# Canonical order: also the merge order when no ranking signal is present
ENTRY_TYPES: Tuple[str, ...] = ("tool", "guideline", "knowledge", "experience")
VERSIONED_TYPES: Tuple[str, ...] = ("tool", "guideline", "knowledge")
VALID_SCOPE_TYPES: set = {"global", "org", "project", "session"}
RELATION_DIRECTIONS: set = {"forward", "backward", "both"}

# Plural names used by protocol clients ("tools", "guidelines", ...)
TYPE_ALIASES: Dict[str, str] = {
    "tools": "tool",
    "guidelines": "guideline",
    "experiences": "experience",
}

# Known values, informational only: unknown values filter literally
TOOL_CATEGORIES: set = {"mcp", "cli", "function", "api"}
KNOWLEDGE_CATEGORIES: set = {"decision", "fact", "context", "reference"}
EXPERIENCE_LEVELS: set = {"case", "strategy"}


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _generate_id(prefix: str = "ENT") -> str:
    """Generate a unique entry ID with prefix."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}-{short}"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def is_date_only(value: str) -> bool:
    """Return True for a bare ``YYYY-MM-DD`` date."""
    return bool(_DATE_ONLY_RE.match(value))


def normalize_timestamp(value: str) -> str:
    """Normalize a timestamp to the stored UTC ISO-8601 form.

    Bare dates are kept as ``YYYY-MM-DD`` (callers decide whether they mean
    start or end of day). Naive datetimes are taken as UTC; a trailing ``Z``
    is accepted.

    Raises:
        ValueError: If the value is not a valid ISO-8601 date or datetime.
    """
    text = value.strip()
    if is_date_only(text):
        date.fromisoformat(text)
        return text
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def as_instant(value: str, *, end_of_day: bool = False) -> str:
    """Widen a bare date to a full UTC timestamp (start or end of that day)."""
    if not is_date_only(value):
        return value
    suffix = "T23:59:59.999999+00:00" if end_of_day else "T00:00:00+00:00"
    return value + suffix


def normalize_entry_type(value: str) -> str:
    """Map a plural or mixed-case type name to its canonical singular form."""
    key = value.strip().lower()
    return TYPE_ALIASES.get(key, key)


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScopeRef:
    """One link of a scope chain."""

    scope_type: ScopeType = "global"
    scope_id: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.scope_type}:{self.scope_id}" if self.scope_id else self.scope_type

    def to_dict(self) -> Dict[str, Any]:
        """Serialize scope reference to a plain dictionary."""
        return asdict(self)


GLOBAL_SCOPE = ScopeRef("global", None)


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

@dataclass
class Entry:
    """
    Common fields of every entry variant.

    Rules:
    - scope_id is None iff scope_type is "global".
    - Entries are deactivated with is_active=False, never deleted.
    - current_version_id is a rollback pointer kept for schema fidelity;
      the version loader reports current = max(version_num).
    """

    id: str = field(default_factory=lambda: _generate_id("ENT"))
    scope_type: ScopeType = "global"
    scope_id: Optional[str] = None
    category: Optional[str] = None
    is_active: bool = True
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    created_by: Optional[str] = None
    current_version_id: Optional[str] = None

    entry_type: ClassVar[str] = ""

    def __post_init__(self):
        """Validate scope fields and coerce SQLite integer booleans."""
        if self.scope_type not in VALID_SCOPE_TYPES:
            raise ValidationError(f"Invalid scope type: {self.scope_type!r}")
        if (self.scope_type == "global") != (self.scope_id is None):
            raise ValidationError(
                f"scope_id must be null iff scope is global "
                f"(got {self.scope_type}:{self.scope_id})"
            )
        self.is_active = bool(self.is_active)

    @property
    def label(self) -> str:
        """Human-readable name (name or title, depending on variant)."""
        return getattr(self, "name", "") or getattr(self, "title", "")

    @property
    def scope(self) -> ScopeRef:
        return ScopeRef(self.scope_type, self.scope_id)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> Entry:
        """Deserialize from a dict or SQLite row, filtering to known fields."""
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: d[k] for k in d.keys() if k in known})


@dataclass
class Tool(Entry):
    """Tool definition (MCP tool, CLI command, function, API)."""

    id: str = field(default_factory=lambda: _generate_id("TOOL"))
    name: str = ""

    entry_type: ClassVar[str] = "tool"


@dataclass
class Guideline(Entry):
    """Behavioral rule; priority in [0, 100] orders guidelines within a scope."""

    id: str = field(default_factory=lambda: _generate_id("GDL"))
    name: str = ""
    priority: int = 50

    entry_type: ClassVar[str] = "guideline"


@dataclass
class Knowledge(Entry):
    """Fact, decision, or context, optionally valid over a time window."""

    id: str = field(default_factory=lambda: _generate_id("KNW"))
    title: str = ""
    valid_from: Optional[str] = None   # None = valid since always
    valid_until: Optional[str] = None  # None = still valid

    entry_type: ClassVar[str] = "knowledge"


@dataclass
class Experience(Entry):
    """Recorded experience: a concrete case or a distilled strategy."""

    id: str = field(default_factory=lambda: _generate_id("EXP"))
    title: str = ""
    content: str = ""
    level: str = "case"
    scenario: str = ""
    outcome: str = ""

    entry_type: ClassVar[str] = "experience"


ENTRY_CLASSES: Dict[str, type] = {
    "tool": Tool,
    "guideline": Guideline,
    "knowledge": Knowledge,
    "experience": Experience,
}


def entry_from_row(entry_type: str, row: Mapping[str, Any]) -> Entry:
    """Build the entry variant for ``entry_type`` from a row mapping."""
    return ENTRY_CLASSES[entry_type].from_dict(row)


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------

@dataclass
class EntryVersion:
    """Append-only snapshot of a versioned entry's content."""

    id: str = field(default_factory=lambda: _generate_id("VER"))
    entry_id: str = ""
    version_num: int = 1
    content: str = ""
    change_reason: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    created_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize version to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> EntryVersion:
        """Deserialize version from a dict or SQLite row."""
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: d[k] for k in d.keys() if k in known})


@dataclass
class VersionInfo:
    """Current snapshot plus the full descending history (history[0] is current)."""

    current: EntryVersion
    history: List[EntryVersion] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict for responses."""
        return {
            "current": self.current.to_dict(),
            "history": [v.to_dict() for v in self.history],
        }


# ---------------------------------------------------------------------------
# Candidate scores (request-scoped)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CandidateScore:
    """Score of one entry surfaced by a non-relational signal."""

    entry_type: str
    score: float
    source: CandidateSource = "semantic"


# ---------------------------------------------------------------------------
# Query request
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RelatedTo:
    """Anchor entry for a relation-based query.

    ``direction``: forward follows links from the anchor, backward follows
    links pointing at it, both does either. ``relation`` restricts to one
    relation type; ``max_results`` caps the linked ids.
    """

    id: str
    type: str
    relation: Optional[str] = None
    direction: RelationDirection = "both"
    max_results: Optional[int] = None


@dataclass(frozen=True)
class PriorityRange:
    """Inclusive guideline priority range."""

    min: Optional[int] = None
    max: Optional[int] = None


@dataclass(frozen=True)
class TagFilter:
    """Tag constraints on fetched entries.

    require  every listed tag must be present
    include  at least one listed tag must be present
    exclude  none of the listed tags may be present
    """

    require: Tuple[str, ...] = ()
    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.require or self.include or self.exclude)


@dataclass(frozen=True)
class ValidityWindow:
    """Interval for knowledge validity queries (inclusive)."""

    start: str
    end: str


def _clean_tags(names: Tuple[str, ...]) -> Tuple[str, ...]:
    return tuple(t.strip().lower() for t in names if t.strip())


# camelCase keys accepted from protocol clients
_REQUEST_KEY_MAP = {
    "scopeType": "scope_type",
    "scopeId": "scope_id",
    "semanticSearch": "semantic_search",
    "relatedTo": "related_to",
    "createdAfter": "created_after",
    "createdBefore": "created_before",
    "updatedAfter": "updated_after",
    "updatedBefore": "updated_before",
    "createdBy": "created_by",
    "includeInactive": "include_inactive",
    "atTime": "at_time",
    "validDuring": "valid_during",
    "withVersions": "with_versions",
}

_TIMESTAMP_FIELDS = (
    "created_after", "created_before", "updated_after", "updated_before",
    "at_time",
)


@dataclass(frozen=True)
class QueryRequest:
    """
    Structured query over entries. Never persisted, never shared.

    ``types`` defaults to all four entry types in canonical order.
    """

    types: Tuple[str, ...] = ENTRY_TYPES
    scope_type: str = "global"
    scope_id: Optional[str] = None
    inherit: bool = True
    search: Optional[str] = None
    semantic_search: bool = False
    related_to: Optional[RelatedTo] = None
    category: Optional[str] = None
    priority: Optional[PriorityRange] = None
    level: Optional[str] = None
    tags: Optional[TagFilter] = None
    created_after: Optional[str] = None
    created_before: Optional[str] = None
    updated_after: Optional[str] = None
    updated_before: Optional[str] = None
    created_by: Optional[str] = None
    include_inactive: bool = False
    at_time: Optional[str] = None
    valid_during: Optional[ValidityWindow] = None
    limit: int = 20
    offset: int = 0
    with_versions: bool = False

    @property
    def window(self) -> int:
        """Number of ranked rows needed to serve this page."""
        return self.offset + self.limit

    @property
    def has_ranking_signal(self) -> bool:
        return bool(self.search) or self.semantic_search

    @property
    def required_tags(self) -> Tuple[str, ...]:
        return self.tags.require if self.tags else ()

    @property
    def has_tag_filter(self) -> bool:
        return self.tags is not None and bool(self.tags)

    @property
    def is_temporal(self) -> bool:
        return self.at_time is not None or self.valid_during is not None

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> QueryRequest:
        """Deserialize from a protocol dict (camelCase or snake_case keys)."""
        data = {_REQUEST_KEY_MAP.get(k, k): v for k, v in d.items()}
        known = set(cls.__dataclass_fields__.keys())
        data = {k: v for k, v in data.items() if k in known and v is not None}
        if "types" in data:
            types = data["types"]
            if isinstance(types, str):
                types = [types]
            data["types"] = tuple(normalize_entry_type(t) for t in types)
        if isinstance(data.get("related_to"), Mapping):
            rel = data["related_to"]
            data["related_to"] = RelatedTo(
                id=rel.get("id", ""),
                type=normalize_entry_type(rel.get("type", "")),
                relation=rel.get("relation"),
                direction=rel.get("direction") or "both",
                max_results=rel.get("max_results", rel.get("maxResults")),
            )
        if isinstance(data.get("priority"), Mapping):
            data["priority"] = PriorityRange(
                min=data["priority"].get("min"), max=data["priority"].get("max"),
            )
        if isinstance(data.get("tags"), Mapping):
            raw_tags = data["tags"]
            data["tags"] = TagFilter(
                require=tuple(raw_tags.get("require") or ()),
                include=tuple(raw_tags.get("include") or ()),
                exclude=tuple(raw_tags.get("exclude") or ()),
            )
        if isinstance(data.get("valid_during"), Mapping):
            data["valid_during"] = ValidityWindow(
                start=data["valid_during"].get("start", ""),
                end=data["valid_during"].get("end", ""),
            )
        return cls(**data)

    def validate(self, max_limit: int = 500) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not self.types:
            errors.append("types: at least one entry type is required")
        for t in self.types:
            if t not in ENTRY_TYPES:
                errors.append(f"types: unknown entry type {t!r}")
        if self.scope_type not in VALID_SCOPE_TYPES:
            errors.append(f"scope_type: unknown scope type {self.scope_type!r}")
        if not isinstance(self.limit, int) or not 1 <= self.limit <= max_limit:
            errors.append(f"limit: {self.limit} not in [1, {max_limit}]")
        if not isinstance(self.offset, int) or self.offset < 0:
            errors.append(f"offset: {self.offset} must be >= 0")
        if self.semantic_search and not self.search:
            errors.append("semantic_search: requires search text")
        if self.related_to is not None:
            if not self.related_to.id:
                errors.append("related_to: id is required")
            if self.related_to.type not in ENTRY_TYPES:
                errors.append(f"related_to: unknown entry type {self.related_to.type!r}")
            if self.related_to.direction not in RELATION_DIRECTIONS:
                errors.append(
                    f"related_to: unknown direction {self.related_to.direction!r}"
                )
            max_results = self.related_to.max_results
            if max_results is not None and (
                not isinstance(max_results, int) or max_results < 1
            ):
                errors.append(f"related_to: max_results {max_results} must be >= 1")
        if self.priority is not None:
            lo, hi = self.priority.min, self.priority.max
            if lo is not None and hi is not None and lo > hi:
                errors.append(f"priority: min {lo} > max {hi}")

        parsed: Dict[str, str] = {}
        for name in _TIMESTAMP_FIELDS:
            value = getattr(self, name)
            if value is None:
                continue
            try:
                parsed[name] = normalize_timestamp(value)
            except (AttributeError, TypeError, ValueError):
                errors.append(f"{name}: invalid timestamp {value!r}")
        for lo_name, hi_name in (
            ("created_after", "created_before"),
            ("updated_after", "updated_before"),
        ):
            if lo_name not in parsed or hi_name not in parsed:
                continue
            lo, hi = parsed[lo_name], parsed[hi_name]
            if is_date_only(lo) or is_date_only(hi):
                inverted = lo[:10] > hi[:10]
            else:
                inverted = lo > hi
            if inverted:
                errors.append(f"{lo_name}/{hi_name}: inverted date range")
        if self.valid_during is not None:
            try:
                start = as_instant(normalize_timestamp(self.valid_during.start))
                end = as_instant(
                    normalize_timestamp(self.valid_during.end), end_of_day=True,
                )
            except (AttributeError, TypeError, ValueError):
                errors.append("valid_during: invalid timestamp")
            else:
                if start > end:
                    errors.append(f"valid_during: start {start} > end {end}")
        return errors

    def normalized(self) -> QueryRequest:
        """Return a copy with timestamps in stored UTC form (call after validate)."""
        changes: Dict[str, Any] = {
            name: normalize_timestamp(getattr(self, name))
            for name in _TIMESTAMP_FIELDS
            if getattr(self, name) is not None
        }
        if self.valid_during is not None:
            changes["valid_during"] = ValidityWindow(
                start=normalize_timestamp(self.valid_during.start),
                end=normalize_timestamp(self.valid_during.end),
            )
        if self.tags is not None:
            changes["tags"] = TagFilter(
                require=_clean_tags(self.tags.require),
                include=_clean_tags(self.tags.include),
                exclude=_clean_tags(self.tags.exclude),
            )
        return replace(self, **changes)


# ---------------------------------------------------------------------------
# Query result
# ---------------------------------------------------------------------------

@dataclass
class QueryResultItem:
    """One ranked entry in a query response."""

    entry: Entry
    tags: List[str] = field(default_factory=list)
    score: Optional[float] = None
    version: Optional[VersionInfo] = None

    @property
    def id(self) -> str:
        return self.entry.id

    @property
    def type(self) -> str:
        return self.entry.entry_type

    def to_dict(self) -> Dict[str, Any]:
        """Flatten entry fields next to id/type; score and version only when set."""
        d: Dict[str, Any] = {"id": self.id, "type": self.type}
        for key, value in self.entry.to_dict().items():
            if key != "id":
                d[key] = value
        d["tags"] = list(self.tags)
        if self.score is not None:
            d["score"] = round(self.score, 6)
        if self.version is not None:
            d["version"] = self.version.to_dict()
        return d


@dataclass
class QueryResult:
    """Ranked page plus pagination metadata."""

    results: List[QueryResultItem] = field(default_factory=list)
    has_more: bool = False

    @property
    def returned_count(self) -> int:
        return len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict for MCP/CLI responses."""
        return {
            "results": [r.to_dict() for r in self.results],
            "meta": {
                "returned_count": self.returned_count,
                "has_more": self.has_more,
            },
        }
