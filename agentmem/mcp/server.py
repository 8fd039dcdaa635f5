"""
agentmem MCP Server — Scoped Memory Queries for Coding Agents

Standalone MCP server exposing the agentmem query pipeline via the
Model Context Protocol.

Architecture: thin MCP layer delegating to QueryPipeline + EntryStore.
No business logic in this module.

Usage:
    python -m agentmem.mcp.server --db /path/to/memory.db
    python -m agentmem.mcp.server --fts-tokenizer en
"""

from __future__ import annotations

import argparse
import logging
import os

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP — always visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Scoped memory for coding agents: tools, guidelines, knowledge, experiences.\n"
    "\n"
    "QUERY: Use memory_query with scope_type/scope_id; inherit=true reads\n"
    "       parent scopes up to global.\n"
    "       Add search for full-text matching, semantic_search for similarity.\n"
    "STATS: Use memory_stats for entry counts.\n"
    "\n"
    "Rules:\n"
    "- Prefer narrow scopes (session/project) with inheritance\n"
    "- Use at_time / valid_during for knowledge that changes over time\n"
    "- Page with limit/offset; meta.has_more signals further pages\n"
)


def _env_int(name: str, default: int) -> int:
    """Read an integer from environment, with fallback."""
    val = os.environ.get(name)
    if val is not None:
        try:
            return int(val)
        except ValueError:
            logger.warning("Ignoring non-integer %s=%r", name, val)
    return default


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the agentmem MCP server."""
    p = argparse.ArgumentParser(
        prog="agentmem-mcp",
        description="agentmem MCP Server — scoped memory queries for coding agents",
    )
    p.add_argument(
        "--db",
        default=os.environ.get("AGENTMEM_DB", ".agentmem/memory.db"),
        help="SQLite database path (default: .agentmem/memory.db or $AGENTMEM_DB)",
    )
    p.add_argument(
        "--fts-tokenizer",
        default=os.environ.get("AGENTMEM_FTS", "fr"),
        help=(
            "FTS5 tokenizer preset: fr (accent-insensitive), en (porter stemming), "
            "raw (unicode61), or a custom tokenizer string. "
            "Default: fr or $AGENTMEM_FTS"
        ),
    )
    p.add_argument(
        "--limit",
        type=int,
        default=_env_int("AGENTMEM_LIMIT", 20),
        help="Default page size (default: 20 or $AGENTMEM_LIMIT)",
    )
    p.add_argument(
        "--config",
        default=None,
        help="JSON config file (store/query/scoring sections)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with query tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, store) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from agentmem.config import load_config
    from agentmem.mcp.tools import register_query_tools
    from agentmem.pipeline import QueryPipeline
    from agentmem.store import FTS_TOKENIZER_PRESETS, EntryStore

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config, strict=True)
    config.store.db_path = args.db
    config.store.fts_tokenizer = FTS_TOKENIZER_PRESETS.get(
        args.fts_tokenizer, args.fts_tokenizer,
    )
    config.query.default_limit = args.limit

    store = EntryStore(
        db_path=config.store.db_path,
        wal_mode=config.store.wal_mode,
        fts_tokenizer=config.store.fts_tokenizer,
    )
    pipeline = QueryPipeline(store, config)

    mcp = FastMCP(
        name="agentmem Memory",
        instructions=_MCP_INSTRUCTIONS,
    )
    register_query_tools(mcp, store, pipeline)

    logger.info(
        "agentmem MCP server ready: db=%s, fts=%s, limit=%d",
        args.db, args.fts_tokenizer, args.limit,
    )
    return mcp, store


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, _store = create_server(args)
    mcp.run()


if __name__ == "__main__":
    main()
