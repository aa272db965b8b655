"""opsrecall CLI -- indexing, search, episodes, graph inspection and the MCP server."""

import argparse
import json
import sys
import time

from opsrecall import config


def _join_words(words, usage: str) -> str:
    text = " ".join(words)
    if not text.strip():
        print(f"Usage: {usage}", file=sys.stderr)
        sys.exit(1)
    return text


def cmd_index(args):
    """Rebuild the keyword and vector indexes from the knowledge directory."""
    from opsrecall.bridge import reindex

    start = time.monotonic()
    print(reindex().rstrip())
    print(f"\n({time.monotonic() - start:.2f}s)")


def cmd_search(args):
    """Search knowledge entries."""
    query_text = _join_words(args.query_text, "opsrecall search <text> [--mode hybrid|lexical|vector]")

    if getattr(args, "json", False):
        from opsrecall.bridge import get_engine

        start = time.monotonic()
        results = get_engine().search_knowledge(query_text, limit=args.limit, mode=args.mode)
        elapsed = time.monotonic() - start
        out = [r.to_dict() for r in results]
        print(json.dumps({"results": out, "count": len(out), "elapsed_s": round(elapsed, 3)}, indent=2))
        return

    from opsrecall.bridge import query_knowledge

    print(query_knowledge(query_text, limit=args.limit, mode=args.mode).rstrip())


def cmd_recall(args):
    """Keyword recall over past episodes."""
    query_text = _join_words(args.query_text, "opsrecall recall <text> [--phase PHASE]")

    if getattr(args, "json", False):
        from opsrecall.bridge import get_engine

        episodes = get_engine().episodes.recall_episodes(query_text, limit=args.limit, sprint_phase=args.phase)
        print(json.dumps([e.to_dict() for e in episodes], indent=2))
        return

    from opsrecall.bridge import recall_episodes

    print(recall_episodes(query_text, limit=args.limit, sprint_phase=args.phase).rstrip())


def cmd_record(args):
    """Record an episode."""
    from opsrecall.bridge import record_episode

    tags = [t.strip() for t in (args.tags or "").split(",") if t.strip()]
    print(record_episode(args.phase, args.action, args.outcome, lesson=args.lesson, tags=tags))


def cmd_graph(args):
    """Inspect the knowledge graph."""
    from opsrecall import bridge

    action = args.graph_command
    if action == "neighbors":
        print(bridge.graph_neighbors(args.node_id).rstrip())
    elif action == "traverse":
        print(bridge.graph_traverse(args.node_id, max_depth=args.depth, max_nodes=args.max_nodes).rstrip())
    elif action == "find":
        print(bridge.graph_find(args.keywords, limit=args.limit).rstrip())
    else:
        print(bridge.graph_stats().rstrip())


def cmd_stats(args):
    """Show database location and store counts."""
    if getattr(args, "json", False):
        from opsrecall.bridge import status

        print(json.dumps(status(), indent=2, default=str))
        return

    from opsrecall.bridge import stats_report

    print(stats_report().rstrip())


def cmd_eval(args):
    """Score search quality over the curated eval cases."""
    modes = args.mode or None

    if getattr(args, "json", False):
        from opsrecall.bridge import get_engine
        from opsrecall.search_eval import DEFAULT_EVAL_MODES, run_search_eval

        summaries = run_search_eval(get_engine(), modes=modes or DEFAULT_EVAL_MODES)
        print(json.dumps({mode: s.to_dict() for mode, s in summaries.items()}, indent=2))
        return

    from opsrecall.bridge import search_eval

    print(search_eval(modes).rstrip())


def cmd_serve(args):
    """Run the opsrecall MCP server (stdio mode)."""
    import asyncio
    from opsrecall.server.mcp_server import serve

    asyncio.run(serve())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opsrecall",
        description="opsrecall -- hybrid knowledge retrieval for AI coding agents",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: $OPSRECALL_LOG_LEVEL or WARNING)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("index", help="Rebuild keyword and vector indexes from the knowledge directory")

    search_parser = subparsers.add_parser("search", help="Search knowledge entries")
    search_parser.add_argument("query_text", nargs="+", help="Search text")
    search_parser.add_argument("--mode", choices=["hybrid", "lexical", "vector"], default="hybrid",
                               help="Retrieval strategy (default: hybrid)")
    search_parser.add_argument("--limit", type=int, default=10, help="Max results (default: 10)")
    search_parser.add_argument("--json", action="store_true", help="Output as JSON")

    recall_parser = subparsers.add_parser("recall", help="Recall past episodes by keyword")
    recall_parser.add_argument("query_text", nargs="+", help="Search text")
    recall_parser.add_argument("--phase", default=None, help="Only episodes from this sprint phase")
    recall_parser.add_argument("--limit", type=int, default=10, help="Max results (default: 10)")
    recall_parser.add_argument("--json", action="store_true", help="Output as JSON")

    record_parser = subparsers.add_parser("record", help="Record an episode")
    record_parser.add_argument("--phase", required=True, help="Sprint phase, e.g. planning")
    record_parser.add_argument("--action", required=True, help="What was done")
    record_parser.add_argument("--outcome", required=True, help="What happened")
    record_parser.add_argument("--lesson", default=None, help="Optional takeaway")
    record_parser.add_argument("--tags", default=None, help="Comma-separated tags")

    graph_parser = subparsers.add_parser("graph", help="Inspect the knowledge graph")
    graph_sub = graph_parser.add_subparsers(dest="graph_command")
    graph_sub.add_parser("stats", help="Node and edge counts")
    neighbors_parser = graph_sub.add_parser("neighbors", help="One hop in both directions")
    neighbors_parser.add_argument("node_id")
    traverse_parser = graph_sub.add_parser("traverse", help="Breadth-first walk along outgoing edges")
    traverse_parser.add_argument("node_id")
    traverse_parser.add_argument("--depth", type=int, default=2, help="Hop limit (default: 2)")
    traverse_parser.add_argument("--max-nodes", type=int, default=None, help="Stop after this many nodes")
    find_parser = graph_sub.add_parser("find", help="Nodes whose label contains any keyword")
    find_parser.add_argument("keywords", nargs="+")
    find_parser.add_argument("--limit", type=int, default=10, help="Max results (default: 10)")

    stats_parser = subparsers.add_parser("stats", help="Show database location and store counts")
    stats_parser.add_argument("--json", action="store_true", help="Output as JSON")

    eval_parser = subparsers.add_parser("eval", help="Score search quality (Recall@5, Precision@5, MRR)")
    eval_parser.add_argument("--mode", action="append", choices=["hybrid", "lexical", "vector"],
                             help="Mode to evaluate; repeatable (default: lexical and hybrid)")
    eval_parser.add_argument("--json", action="store_true", help="Output as JSON")

    subparsers.add_parser("serve", help="Run MCP server (stdio mode)")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    config.configure_logging(args.log_level)

    commands = {
        "index": cmd_index,
        "search": cmd_search,
        "recall": cmd_recall,
        "record": cmd_record,
        "graph": cmd_graph,
        "stats": cmd_stats,
        "eval": cmd_eval,
        "serve": cmd_serve,
    }

    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
