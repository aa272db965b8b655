"""
opsrecall MCP Handlers -- Maps tool names to async handler functions.

Each handler delegates to opsrecall.bridge for actual operations and returns
MCP-compatible response dicts.
"""

import logging
from typing import Any, Dict

logger = logging.getLogger("opsrecall.server.handlers")

_QUERY_MODES = ("hybrid", "lexical", "vector")
_MAX_TRAVERSE_DEPTH = 5


def _clamp_int(value, default: int, min_val: int = 1, max_val: int = 10000) -> int:
    """Clamp a numeric argument to safe bounds."""
    try:
        v = int(value)
        return max(min_val, min(v, max_val))
    except (TypeError, ValueError):
        return default


def _str_list(value) -> list:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


# ============================================================================
# Response Helpers
# ============================================================================


def mcp_response(text: str) -> dict:
    """Build a successful MCP response."""
    return {"content": [{"type": "text", "text": str(text)}]}


def mcp_error(text: str) -> dict:
    """Build an error MCP response."""
    return {"content": [{"type": "text", "text": f"Error: {text}"}], "isError": True}


# ============================================================================
# Handler: ops_knowledge_query
# ============================================================================


async def handle_ops_knowledge_query(arguments: dict) -> dict:
    """Search knowledge entries with the requested retrieval mode."""
    query_text = str(arguments.get("query", "")).strip()
    if not query_text:
        return mcp_error("query is required")

    mode = arguments.get("mode", "hybrid")
    if mode not in _QUERY_MODES:
        return mcp_error(f"mode must be one of: {', '.join(_QUERY_MODES)}")
    limit = _clamp_int(arguments.get("limit", 10), default=10, max_val=100)

    try:
        from opsrecall.bridge import query_knowledge

        return mcp_response(query_knowledge(query_text, limit=limit, mode=mode))
    except Exception as e:
        logger.error("ops_knowledge_query failed: %s", e)
        return mcp_error(f"Knowledge query failed: {e}")


# ============================================================================
# Handler: ops_reindex
# ============================================================================


async def handle_ops_reindex(arguments: dict) -> dict:
    """Rebuild lexical and vector indexes."""
    try:
        from opsrecall.bridge import reindex

        return mcp_response(reindex())
    except Exception as e:
        logger.error("ops_reindex failed: %s", e)
        return mcp_error(f"Reindex failed: {e}")


# ============================================================================
# Handler: ops_graph
# ============================================================================


async def handle_ops_graph(arguments: dict) -> dict:
    """Graph exploration, dispatched on ``action``."""
    action = arguments.get("action", "")
    node_id = str(arguments.get("node_id", "")).strip()

    try:
        from opsrecall import bridge

        if action == "neighbors":
            if not node_id:
                return mcp_error("node_id is required for action 'neighbors'")
            return mcp_response(bridge.graph_neighbors(node_id))

        if action == "traverse":
            if not node_id:
                return mcp_error("node_id is required for action 'traverse'")
            max_depth = _clamp_int(arguments.get("max_depth", 2), default=2, max_val=_MAX_TRAVERSE_DEPTH)
            max_nodes = arguments.get("max_nodes")
            if max_nodes is not None:
                max_nodes = _clamp_int(max_nodes, default=50, max_val=1000)
            return mcp_response(bridge.graph_traverse(node_id, max_depth=max_depth, max_nodes=max_nodes))

        if action == "find":
            keywords = _str_list(arguments.get("keywords"))
            if not keywords:
                return mcp_error("keywords is required for action 'find'")
            limit = _clamp_int(arguments.get("limit", 10), default=10, max_val=100)
            return mcp_response(bridge.graph_find(keywords, limit=limit))

        if action == "stats":
            return mcp_response(bridge.graph_stats())
    except Exception as e:
        logger.error("ops_graph (%s) failed: %s", action, e)
        return mcp_error(f"Graph {action} failed: {e}")

    return mcp_error(f"Unknown action: {action!r}. Use neighbors, traverse, find or stats.")


# ============================================================================
# Handler: ops_record_episode
# ============================================================================


async def handle_ops_record_episode(arguments: dict) -> dict:
    """Append an episode to the log."""
    sprint_phase = str(arguments.get("sprint_phase", "")).strip()
    action = str(arguments.get("action", "")).strip()
    outcome = str(arguments.get("outcome", "")).strip()
    if not (sprint_phase and action and outcome):
        return mcp_error("sprint_phase, action and outcome are required")

    lesson = arguments.get("lesson") or None
    tags = _str_list(arguments.get("tags"))

    try:
        from opsrecall.bridge import record_episode

        return mcp_response(record_episode(sprint_phase, action, outcome, lesson=lesson, tags=tags))
    except Exception as e:
        logger.error("ops_record_episode failed: %s", e)
        return mcp_error(f"Failed to record episode: {e}")


# ============================================================================
# Handler: ops_recall_episodes
# ============================================================================


async def handle_ops_recall_episodes(arguments: dict) -> dict:
    query_text = str(arguments.get("query", "")).strip()
    if not query_text:
        return mcp_error("query is required")
    limit = _clamp_int(arguments.get("limit", 10), default=10, max_val=100)
    sprint_phase = arguments.get("sprint_phase") or None

    try:
        from opsrecall.bridge import recall_episodes

        return mcp_response(recall_episodes(query_text, limit=limit, sprint_phase=sprint_phase))
    except Exception as e:
        logger.error("ops_recall_episodes failed: %s", e)
        return mcp_error(f"Episode recall failed: {e}")


# ============================================================================
# Handler: ops_stats
# ============================================================================


async def handle_ops_stats(arguments: dict) -> dict:
    try:
        from opsrecall.bridge import stats_report

        return mcp_response(stats_report())
    except Exception as e:
        logger.error("ops_stats failed: %s", e)
        return mcp_error(f"Stats failed: {e}")


# ============================================================================
# Handler Registry
# ============================================================================

HANDLERS: Dict[str, Any] = {
    "ops_knowledge_query": handle_ops_knowledge_query,
    "ops_reindex": handle_ops_reindex,
    "ops_graph": handle_ops_graph,
    "ops_record_episode": handle_ops_record_episode,
    "ops_recall_episodes": handle_ops_recall_episodes,
    "ops_stats": handle_ops_stats,
}
