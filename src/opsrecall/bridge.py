"""
opsrecall Bridge -- High-level API used by the MCP handlers and the CLI.

All functions delegate to a process-scoped RetrievalEngine and return
formatted markdown.

Public API:
    Knowledge:  query_knowledge, reindex
    Graph:      graph_neighbors, graph_traverse, graph_find, graph_stats
    Episodes:   record_episode, recall_episodes
    Health:     status, stats_report
    Testing:    reset_engine
"""

import atexit
import logging
import threading
from typing import Any, Dict, List, Optional

from opsrecall import config
from opsrecall.context import get_context, reset_context
from opsrecall.engine import RetrievalEngine

logger = logging.getLogger("opsrecall.bridge")

_PREVIEW_CHARS = 200


# ---------------------------------------------------------------------------
# Lazy singleton
# ---------------------------------------------------------------------------

_engine_instance: Optional[RetrievalEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> RetrievalEngine:
    """Get or create the process-scoped RetrievalEngine (thread-safe)."""
    global _engine_instance
    if _engine_instance is not None:
        return _engine_instance
    with _engine_lock:
        if _engine_instance is not None:
            return _engine_instance
        engine = RetrievalEngine(get_context(), knowledge_dir=config.knowledge_dir())
        engine.initialize()
        _engine_instance = engine
        atexit.register(_close_engine)
    return _engine_instance


def _close_engine():
    """Close the engine's context on process exit."""
    global _engine_instance
    if _engine_instance is not None:
        try:
            _engine_instance.close()
        except Exception as e:
            logger.debug("Engine close failed during exit: %s", e)


def reset_engine():
    """Drop the engine and its context (useful for testing)."""
    global _engine_instance
    with _engine_lock:
        _engine_instance = None
        reset_context()


def _preview(text: str, limit: int = _PREVIEW_CHARS) -> str:
    text = (text or "").replace("\n", " ")
    return text[:limit] + "..." if len(text) > limit else text


# ---------------------------------------------------------------------------
# Public API -- Knowledge
# ---------------------------------------------------------------------------


def query_knowledge(query_text: str, limit: int = 10, mode: str = "hybrid") -> str:
    """Search knowledge entries. Returns a markdown block of ranked results."""
    engine = get_engine()
    results = engine.search_knowledge(query_text, limit=limit, mode=mode)

    output = f"# Knowledge Results ({len(results)})\n\n"
    output += f"**Query:** {query_text}\n"
    output += f"**Mode:** {mode}\n\n"
    if not results:
        output += "*No matching knowledge found.*\n"
        return output

    for i, r in enumerate(results, 1):
        output += f"## {i}. [{r.source}] `{r.id}` (score: {r.combined_score:.3f})\n"
        output += f"{_preview(r.text)}\n"
        details = [f"fts {r.fts_score:.3f}"]
        if r.vector_score is not None:
            details.append(f"vector {r.vector_score:.3f}")
        if r.date:
            details.append(f"date {r.date[:10]}")
        output += f"*{' · '.join(details)}*\n\n"
    logger.info("Knowledge query %r (%s) returned %d results", query_text[:30], mode, len(results))
    return output


def reindex() -> str:
    """Rebuild the lexical and vector indexes from the knowledge directory."""
    engine = get_engine()
    counts = engine.reindex()
    output = "# Reindex Complete\n\n"
    output += f"- Knowledge entries: {counts['entries']}\n"
    if engine.vec_enabled:
        output += f"- Vectors: {counts['vectors']}\n"
    else:
        output += "- Vectors: skipped (sqlite-vec unavailable)\n"
    return output


def search_eval(modes: Optional[List[str]] = None) -> str:
    """Run the curated search eval and render one report per mode."""
    from opsrecall.search_eval import DEFAULT_EVAL_MODES, format_eval_report, run_search_eval

    summaries = run_search_eval(get_engine(), modes=modes or DEFAULT_EVAL_MODES)
    return "\n".join(format_eval_report(summary) for summary in summaries.values())


# ---------------------------------------------------------------------------
# Public API -- Graph
# ---------------------------------------------------------------------------


def graph_neighbors(node_id: str) -> str:
    engine = get_engine()
    node = engine.graph.get_node(node_id)
    if node is None:
        return f"Node `{node_id}` not found."
    neighbors = engine.graph.get_neighbors(node_id)
    output = f"# Neighbors of `{node_id}` ({len(neighbors)})\n\n"
    output += f"**{node.label}** [{node.type}]\n\n"
    for n in neighbors:
        arrow = "->" if n.direction == "outgoing" else "<-"
        output += (
            f"- {arrow} **{n.edge.relationship}** `{n.node.id}` "
            f"{n.node.label} [{n.node.type}] (weight {n.edge.weight:g})\n"
        )
    if not neighbors:
        output += "*No connected nodes.*\n"
    return output


def graph_traverse(start_id: str, max_depth: int = 2, max_nodes: Optional[int] = None) -> str:
    engine = get_engine()
    hits = engine.graph.traverse_bfs(start_id, max_depth=max_depth, max_nodes=max_nodes)
    output = f"# Traversal from `{start_id}` (depth {max_depth}, {len(hits)} nodes)\n\n"
    for hit in hits:
        indent = "  " * (hit.depth - 1)
        output += f"{indent}- [{hit.depth}] `{hit.node.id}` {hit.node.label} [{hit.node.type}] via *{hit.via}*\n"
    if not hits:
        output += "*No reachable nodes.*\n"
    return output


def graph_find(keywords: List[str], limit: int = 10) -> str:
    engine = get_engine()
    nodes = engine.graph.find_nodes_by_keywords(keywords, max_results=limit)
    output = f"# Graph Nodes ({len(nodes)})\n\n"
    output += f"**Keywords:** {', '.join(keywords)}\n\n"
    for node in nodes:
        output += f"- `{node.id}` {node.label} [{node.type}]\n"
    if not nodes:
        output += "*No matching nodes.*\n"
    return output


def graph_stats() -> str:
    stats = get_engine().graph.get_graph_stats()
    output = "# Knowledge Graph\n\n"
    output += f"- Nodes: {stats['nodes']}\n"
    output += f"- Edges: {stats['edges']}\n"
    for node_type, count in stats["node_types"].items():
        output += f"  - {node_type}: {count}\n"
    return output


# ---------------------------------------------------------------------------
# Public API -- Episodes
# ---------------------------------------------------------------------------


def record_episode(
    sprint_phase: str,
    action: str,
    outcome: str,
    lesson: Optional[str] = None,
    tags: Optional[List[str]] = None,
) -> str:
    episode = get_engine().episodes.record_episode(sprint_phase, action, outcome, lesson=lesson, tags=tags)
    return f"Episode #{episode.id} recorded ({episode.sprint_phase}, {episode.timestamp[:16]})."


def recall_episodes(query_text: str, limit: int = 10, sprint_phase: Optional[str] = None) -> str:
    """Keyword recall over past episodes, newest first."""
    episodes = get_engine().episodes.recall_episodes(query_text, limit=limit, sprint_phase=sprint_phase)
    output = f"# Episodes ({len(episodes)})\n\n"
    output += f"**Query:** {query_text}\n"
    if sprint_phase:
        output += f"**Phase:** {sprint_phase}\n"
    output += "\n"
    if not episodes:
        output += "*No matching episodes found.*\n"
        return output

    for ep in episodes:
        output += f"## #{ep.id} [{ep.sprint_phase}] {ep.timestamp[:16]}\n"
        output += f"**Action:** {_preview(ep.action)}\n"
        output += f"**Outcome:** {_preview(ep.outcome)}\n"
        if ep.lesson:
            output += f"**Lesson:** {_preview(ep.lesson)}\n"
        if ep.tags:
            output += f"*Tags: {', '.join(ep.tags[:5])}*\n"
        output += "\n"
    return output


# ---------------------------------------------------------------------------
# Public API -- Health
# ---------------------------------------------------------------------------


def status() -> Dict[str, Any]:
    """Return a machine-readable status dict."""
    try:
        stats = get_engine().stats()
    except Exception as e:
        logger.error("Status check failed: %s", e)
        return {"ok": False, "error": str(e)}
    stats["ok"] = True
    return stats


def stats_report() -> str:
    stats = status()
    if not stats.get("ok"):
        return f"# Status Error\n\n**Error:** {stats.get('error')}\n"
    output = "# opsrecall Status\n\n"
    output += f"- Database: `{stats['db_path']}`\n"
    output += f"- Knowledge entries: {stats['knowledge_entries']}\n"
    output += (
        f"- Vectors: {stats['vectors']['count']} x {stats['vectors']['dimensions']}d"
        f" (vocabulary {'ready' if stats['vocabulary_ready'] else 'not built'})\n"
    )
    output += f"- Graph: {stats['graph']['nodes']} nodes, {stats['graph']['edges']} edges\n"
    output += f"- Episodes: {stats['episodes']}\n"
    return output
