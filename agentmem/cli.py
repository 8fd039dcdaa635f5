"""
agentmem CLI — Scoped Memory Queries from the Shell

Commands:
    agentmem init  [--db PATH]                  — create an empty store
    agentmem query [--search TEXT] [--type T]   — run a structured query
    agentmem stats                              — store metrics
    agentmem serve [--fts-tokenizer FR]         — start MCP server (foreground)

Environment variables:
    AGENTMEM_DB     Path to SQLite database (default: .agentmem/memory.db)
    AGENTMEM_FTS    FTS5 tokenizer preset: fr|en|raw (default: fr)
    AGENTMEM_LIMIT  Default page size (default: 20)

Precedence:
    CLI --flag  >  AGENTMEM_* env var  >  compiled default

Exit codes:
    0  Success
    1  Operational error (invalid query, unknown scope)
    2  Internal failure (storage error, unexpected exception)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, Optional

from agentmem.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env parsing (bad values fall back to defaults)
# ---------------------------------------------------------------------------


def _env_int(name: str, default: int) -> int:
    """Parse integer env var with fallback. Never raises on bad input."""
    v = os.environ.get(name)
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Parse string env var with fallback."""
    return os.environ.get(name, default)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_db(args: Optional[argparse.Namespace] = None) -> str:
    """Resolve database path: CLI --db > AGENTMEM_DB > .agentmem/memory.db."""
    if args and getattr(args, "db", None):
        return args.db
    return _env_str("AGENTMEM_DB", ".agentmem/memory.db")


def _resolve_limit(args: Optional[argparse.Namespace] = None) -> int:
    """Resolve page size: CLI --limit > AGENTMEM_LIMIT > 20."""
    if args and getattr(args, "limit", None) is not None:
        return args.limit
    return _env_int("AGENTMEM_LIMIT", 20)


def _resolve_fts(value: str = "") -> str:
    """Resolve FTS tokenizer: preset name → tokenizer string."""
    from agentmem.store import FTS_TOKENIZER_PRESETS
    v = value or _env_str("AGENTMEM_FTS", "fr")
    return FTS_TOKENIZER_PRESETS.get(v, v)


def _open_store(db_path: str, fts_tokenizer: Optional[str] = None):
    """Open an EntryStore. Creates the DB and parent dirs if needed."""
    from agentmem.store import EntryStore
    return EntryStore(db_path=db_path, fts_tokenizer=fts_tokenizer or _resolve_fts())


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


# ===========================================================================
# Command: init
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Create (or open) the store so the schema exists."""
    db_path = _resolve_db(args)
    store = _open_store(db_path, _resolve_fts(getattr(args, "fts_tokenizer", None) or ""))
    fts = store.fts5_available
    store.close()
    _info(f"Initialized agentmem store: {db_path} (fts5={'yes' if fts else 'no'})")
    print(f'export AGENTMEM_DB="{db_path}"')


# ===========================================================================
# Command: query
# ===========================================================================


def _build_request(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate query flags into a request dict."""
    request: Dict[str, Any] = {
        "scope_type": args.scope_type,
        "scope_id": args.scope_id,
        "inherit": not args.no_inherit,
        "search": args.search,
        "semantic_search": False,
        "category": args.category,
        "level": args.level,
        "created_after": args.created_after,
        "created_before": args.created_before,
        "updated_after": args.updated_after,
        "updated_before": args.updated_before,
        "created_by": args.created_by,
        "include_inactive": args.include_inactive,
        "at_time": args.at_time,
        "limit": _resolve_limit(args),
        "offset": args.offset,
        "with_versions": args.with_versions,
    }
    if args.type:
        request["types"] = [t for chunk in args.type for t in chunk.split(",") if t]
    tag_filter = {
        key: [t.strip() for t in value.split(",") if t.strip()]
        for key, value in (
            ("require", args.tags), ("include", args.any_tags), ("exclude", args.exclude_tags),
        )
        if value
    }
    if tag_filter:
        request["tags"] = tag_filter
    if args.priority_min is not None or args.priority_max is not None:
        request["priority"] = {"min": args.priority_min, "max": args.priority_max}
    if args.related_to:
        rel_type, _, rel_id = args.related_to.partition(":")
        request["related_to"] = {
            "type": rel_type, "id": rel_id,
            "relation": args.relation, "direction": args.direction,
        }
    if args.valid_from or args.valid_until:
        request["valid_during"] = {"start": args.valid_from, "end": args.valid_until}
    return request


def cmd_query(args: argparse.Namespace) -> None:
    """Run a structured query and print the ranked page."""
    from agentmem.config import load_config
    from agentmem.pipeline import QueryPipeline

    config = load_config(getattr(args, "config", None), strict=True)
    store = _open_store(_resolve_db(args))
    pipeline = QueryPipeline(store, config)
    try:
        result = pipeline.run(_build_request(args))
    finally:
        store.close()

    if getattr(args, "json", False):
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return

    if not result.results:
        _info("No results found.")
        return
    print(f"Found {result.returned_count} entr{'y' if result.returned_count == 1 else 'ies'}"
          f"{' (more available)' if result.has_more else ''}:\n")
    for item in result.results:
        e = item.entry
        score = f"  score={item.score:.3f}" if item.score is not None else ""
        print(f"  [{item.type.upper():10s}] {item.id}  {e.label}{score}")
        print(f"    scope: {e.scope}   created: {e.created_at}")
        if item.tags:
            print(f"    tags: {', '.join(item.tags)}")
        if item.version is not None:
            print(f"    version: v{item.version.current.version_num} "
                  f"({len(item.version.history)} total)")
        print()


# ===========================================================================
# Command: stats
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    """Show entry store statistics."""
    store = _open_store(_resolve_db(args))
    stats = store.stats()
    store.close()

    if getattr(args, "json", False):
        stats["status"] = "ok"
        print(json.dumps(stats, indent=2, ensure_ascii=False))
        return

    print("Entry Store Statistics")
    print("=" * 40)
    print(f"  FTS5:     {'available' if stats['fts5_available'] else 'unavailable'}")
    if stats.get("fts_tokenizer"):
        print(f"  Tokenizer: {stats['fts_tokenizer']}")
    print("  Active entries:")
    for typ, count in stats["active_entries"].items():
        print(f"    {typ:12s}: {count}")
    print("  Versions:")
    for typ, count in stats["versions"].items():
        print(f"    {typ:12s}: {count}")
    print(f"  Embeddings: {stats['embeddings_count']}")


# ===========================================================================
# Command: serve  (start MCP server)
# ===========================================================================


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the agentmem MCP server in foreground."""
    try:
        from agentmem.mcp.server import build_parser as mcp_parser, create_server
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install mcp")
        sys.exit(1)

    server_argv = ["--db", _resolve_db(args), "--limit", str(_resolve_limit(args))]
    fts = getattr(args, "fts_tokenizer", None)
    if fts:
        server_argv.extend(["--fts-tokenizer", fts])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")

    server_args = mcp_parser().parse_args(server_argv)
    try:
        mcp, _ = create_server(server_args)
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install mcp")
        sys.exit(1)

    _info(f"agentmem MCP server (db={server_args.db})")
    _info("Press Ctrl+C to stop.")
    mcp.run()


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the top-level parser with its subcommands."""
    # SUPPRESS defaults keep subparser defaults from overriding values
    # parsed at the main-parser level (argparse parents quirk).
    _db_default = _env_str("AGENTMEM_DB", ".agentmem/memory.db")
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help=f"Path to SQLite database (default: {_db_default})",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output (query, stats)",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="agentmem",
        description="agentmem — scoped, versioned memory for coding agents",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- init --------------------------------------------------------------
    p_init = sub.add_parser("init", parents=[_common], help="Create an empty store")
    p_init.add_argument(
        "--fts-tokenizer", default=None,
        help="FTS5 tokenizer preset: fr|en|raw (default: AGENTMEM_FTS or fr)",
    )
    p_init.set_defaults(func=cmd_init)

    # -- query -------------------------------------------------------------
    p_query = sub.add_parser("query", parents=[_common], help="Query entries")
    p_query.add_argument(
        "--type", action="append", default=None,
        help="Entry type(s): tool|guideline|knowledge|experience (repeatable or comma-separated)",
    )
    p_query.add_argument("--scope-type", default="global", help="global|org|project|session")
    p_query.add_argument("--scope-id", default=None, help="Scope id (omit for global)")
    p_query.add_argument("--no-inherit", action="store_true", help="Do not read parent scopes")
    p_query.add_argument("--search", "-s", default=None, help="Full-text search text")
    p_query.add_argument("--related-to", default=None, help="Anchor entry as TYPE:ID")
    p_query.add_argument("--relation", default=None, help="Relation type filter for --related-to")
    p_query.add_argument(
        "--direction", default="both", choices=["forward", "backward", "both"],
        help="Link direction for --related-to (default: both)",
    )
    p_query.add_argument("--category", default=None, help="Category filter")
    p_query.add_argument("--priority-min", type=int, default=None, help="Guideline priority lower bound")
    p_query.add_argument("--priority-max", type=int, default=None, help="Guideline priority upper bound")
    p_query.add_argument("--level", default=None, help="Experience level (case|strategy)")
    p_query.add_argument("--tags", default=None, help="Required tags, comma-separated")
    p_query.add_argument("--any-tags", default=None, help="At least one of these tags")
    p_query.add_argument("--exclude-tags", default=None, help="Drop entries with any of these tags")
    p_query.add_argument("--created-after", default=None)
    p_query.add_argument("--created-before", default=None)
    p_query.add_argument("--updated-after", default=None)
    p_query.add_argument("--updated-before", default=None)
    p_query.add_argument("--created-by", default=None)
    p_query.add_argument("--include-inactive", action="store_true")
    p_query.add_argument("--at-time", default=None, help="Knowledge valid at this instant")
    p_query.add_argument("--valid-from", default=None, help="Validity window start (knowledge)")
    p_query.add_argument("--valid-until", default=None, help="Validity window end (knowledge)")
    p_query.add_argument("--limit", "-k", type=int, default=None,
                         help="Page size (default: AGENTMEM_LIMIT or 20)")
    p_query.add_argument("--offset", type=int, default=0, help="Page start (default: 0)")
    p_query.add_argument("--with-versions", action="store_true", help="Attach version history")
    p_query.add_argument("--config", default=None, help="JSON config file")
    p_query.set_defaults(func=cmd_query)

    # -- stats -------------------------------------------------------------
    p_stats = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p_stats.set_defaults(func=cmd_stats)

    # -- serve -------------------------------------------------------------
    p_serve = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p_serve.add_argument(
        "--fts-tokenizer", default=None,
        help="FTS5 tokenizer preset: fr|en|raw (default: AGENTMEM_FTS or fr)",
    )
    p_serve.add_argument("--limit", type=int, default=None, help="Default page size")
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main() -> None:
    """CLI entry point: agentmem <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args()

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except (ValidationError, NotFoundError) as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except BrokenPipeError:
        # Handle broken pipe gracefully (e.g. agentmem query | head)
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
