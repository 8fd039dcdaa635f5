"""
Full-text query normalization and the FTS5 fallback cascade.

Provides:
  1. normalize_query() — strip stop words from search text for better recall.
  2. fts_and_expr() / fts_or_expr() — quoted FTS5 MATCH expressions.
  3. cascade_query() — AND(all) → REDUCED_AND → OR(all), deterministic.

Used by EntryStore.match_fulltext() when building full-text candidate sets.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, List, Literal, Tuple

logger = logging.getLogger(__name__)

# ── Stop words ──────────────────────────────────────────────────────────

FR_STOP_WORDS = frozenset({
    "le", "la", "les", "un", "une", "des", "du", "de", "en", "dans",
    "pour", "avec", "sur", "par", "qui", "que", "est", "sont", "au",
    "aux", "ce", "cette", "ces", "se", "sa", "son", "ses", "ne", "pas",
    "ou", "et", "mais", "donc", "car", "ni", "si", "comme",
    "il", "elle", "on", "nous", "vous", "ils", "elles", "je", "tu",
    "mon", "ton", "notre", "votre", "leur", "leurs", "y", "dont", "où",
})

EN_STOP_WORDS = frozenset({
    "the", "a", "an", "in", "on", "at", "to", "for", "of", "with",
    "by", "from", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "can", "shall",
    "it", "its", "this", "that", "these", "those",
    "i", "me", "my", "we", "our", "you", "your", "he", "him", "his",
    "she", "her", "they", "them", "their",
    "not", "no", "nor", "so", "but", "or", "and", "if", "then",
    "about", "up", "out", "into", "over", "after", "before",
})

QUESTION_WORDS = frozenset({
    "how", "what", "where", "when", "why", "which", "who", "whom",
    "comment", "quoi", "quel", "quelle", "quels", "quelles", "pourquoi",
})

_ALL_STOP_WORDS = FR_STOP_WORDS | EN_STOP_WORDS | QUESTION_WORDS

# ── Identifier detection ────────────────────────────────────────────────

_CAMEL_RE = re.compile(r"[a-z][A-Z]")           # camelCase or PascalCase
_SNAKE_RE = re.compile(r"[a-zA-Z]_[a-zA-Z]")    # snake_case
_UPPER_RE = re.compile(r"^[A-Z][A-Z0-9_]{2,}$") # UPPER_CASE constant


def _is_identifier(word: str) -> bool:
    """Return True if word looks like a code identifier."""
    if _CAMEL_RE.search(word) or _SNAKE_RE.search(word):
        return True
    if _UPPER_RE.match(word):
        return True
    # Dotted path (e.g., agentmem.store)
    return "." in word and not word.endswith(".")


# ── Query normalization ─────────────────────────────────────────────────

def normalize_query(text: str) -> str:
    """Strip stop words from search text.

    Identifiers (CamelCase, snake_case, UPPER_CASE, dotted paths) are always
    kept. Never returns an empty string: falls back to the original text.

    Examples:
        >>> normalize_query("how to configure the pytest fixtures")
        'configure pytest fixtures'
        >>> normalize_query("the")
        'the'
    """
    words = text.strip().split()
    if not words:
        return text

    kept: List[str] = []
    for w in words:
        if _is_identifier(w):
            kept.append(w)
            continue
        if w.lower() in _ALL_STOP_WORDS:
            continue
        kept.append(w)

    return " ".join(kept) if kept else text


def _quote(term: str) -> str:
    return '"' + term.replace('"', '""') + '"'


def fts_and_expr(terms: List[str]) -> str:
    """FTS5 expression: all terms must co-occur."""
    return " AND ".join(_quote(t) for t in terms)


def fts_or_expr(terms: List[str]) -> str:
    """FTS5 expression: any term matches."""
    return " OR ".join(_quote(t) for t in terms)


# ── FTS Cascade ────────────────────────────────────────────────────────

SearchStrategy = Literal["AND", "REDUCED_AND", "OR_FALLBACK"]


def _drop_order(terms: List[str]) -> List[int]:
    """Indices of terms by drop priority: shortest first, later first on tie."""
    indexed = list(enumerate(terms))
    indexed.sort(key=lambda x: (len(x[1]), -x[0]))
    return [i for i, _ in indexed]


def cascade_query(
    terms: List[str],
    search_and_fn: Callable[[List[str]], list],
    search_or_fn: Callable[[List[str]], list],
    min_results: int = 1,
) -> Tuple[list, SearchStrategy, List[str], List[str]]:
    """Execute a full-text query with a deterministic fallback cascade.

    Cascade order:
      1. AND(all terms)
      2. AND(N-1 terms), dropping shortest term first
      3. ... repeat until AND(1 term)
      4. OR(all terms) — last resort

    Args:
        terms: Normalized query terms.
        search_and_fn: Callable taking a term list, returning results (AND).
        search_or_fn: Callable taking a term list, returning results (OR).
        min_results: Minimum result count to accept (default 1).

    Returns:
        (results, strategy, effective_terms, dropped_terms)
    """
    if not terms:
        return [], "AND", [], []

    results = search_and_fn(terms)
    if len(results) >= min_results:
        logger.debug('[search] AND(%s) → %d hits', " ".join(terms), len(results))
        return results, "AND", list(terms), []

    if len(terms) > 1:
        dropped: List[str] = []
        for drop_idx in _drop_order(terms):
            dropped.append(terms[drop_idx])
            remaining = [t for t in terms if t not in dropped]
            if not remaining:
                break
            results = search_and_fn(remaining)
            if len(results) >= min_results:
                logger.debug(
                    '[search] REDUCED_AND(%s) → %d hits [dropped: %s]',
                    " ".join(remaining), len(results), ", ".join(dropped),
                )
                return results, "REDUCED_AND", remaining, list(dropped)

    results = search_or_fn(terms)
    logger.debug(
        '[search] OR_FALLBACK(%s) → %d hits', " OR ".join(terms), len(results),
    )
    return results, "OR_FALLBACK", list(terms), []
