"""
agentmem Configuration

Configuration dataclasses for the store, the query pipeline, and ranking
weights.  Includes load_config() for reading a JSON config file with silent
fallback to compiled defaults.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from agentmem.errors import ValidationError


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


# JSON numbers: 0 and 1 load as int
NUMBER = (int, float)


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and (isinstance(value, bool) or not isinstance(value, typ)):
        expected = " or ".join(t.__name__ for t in typ) if isinstance(typ, tuple) else typ.__name__
        errors.append(f"{name}: expected {expected}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = ".agentmem/memory.db"
    wal_mode: bool = True
    fts_tokenizer: str = "unicode61 remove_diacritics 2"

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        return []


@dataclass
class QueryConfig:
    """Query pipeline limits and semantic search settings."""
    default_limit: int = 20
    max_limit: int = 500
    semantic_top_k: int = 50
    semantic_threshold: float = 0.0

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "query.max_limit", self.max_limit, 1, 10000, int)
        _check_range(errors, "query.default_limit",
                      self.default_limit, 1, self.max_limit, int)
        _check_range(errors, "query.semantic_top_k",
                      self.semantic_top_k, 1, 10000, int)
        _check_range(errors, "query.semantic_threshold",
                      self.semantic_threshold, 0.0, 1.0, NUMBER)
        return errors


@dataclass
class ScoringConfig:
    """Composite score weights, applied only when a ranking signal exists."""
    text_match_weight: float = 0.3
    semantic_weight: float = 0.5
    recency_weight: float = 0.1
    priority_weight: float = 0.1
    scope_proximity_weight: float = 0.05
    decay_half_life_days: float = 30.0
    decay_function: Literal["exponential", "linear", "step"] = "exponential"
    use_updated_at: bool = False

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        for name in ("text_match_weight", "semantic_weight",
                     "recency_weight", "priority_weight",
                     "scope_proximity_weight"):
            _check_range(errors, f"scoring.{name}",
                          getattr(self, name), 0.0, 10.0, NUMBER)
        _check_range(errors, "scoring.decay_half_life_days",
                      self.decay_half_life_days, 0.1, 36500.0, NUMBER)
        if self.decay_function not in ("exponential", "linear", "step"):
            errors.append(
                f"scoring.decay_function: unknown function {self.decay_function!r}"
            )
        return errors


@dataclass
class AgentMemConfig:
    """Top-level agentmem configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> AgentMemConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "query" in d:
            kwargs["query"] = QueryConfig(**d["query"])
        if "scoring" in d:
            kwargs["scoring"] = ScoringConfig(**d["scoring"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.query.validate())
        errors.extend(self.scoring.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> AgentMemConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        AgentMemConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = AgentMemConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = AgentMemConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = AgentMemConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
