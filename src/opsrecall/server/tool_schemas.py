"""opsrecall MCP Tool Schemas -- 6 tools over knowledge, graph and episodes.

The graph tool is action-discriminated; everything else maps to a single
bridge call.
"""

TOOL_SCHEMAS = [
    {
        "name": "ops_knowledge_query",
        "description": "Search stored patterns, lessons, decisions and deferred items. Modes: 'hybrid' (default) fuses keyword and vector similarity, 'lexical' is keyword-only, 'vector' is similarity-only.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query"},
                "mode": {
                    "type": "string",
                    "enum": ["hybrid", "lexical", "vector"],
                    "description": "Retrieval strategy (default 'hybrid')",
                },
                "limit": {"type": "integer", "default": 10, "minimum": 1, "maximum": 100},
            },
            "required": ["query"],
        },
    },
    {
        "name": "ops_reindex",
        "description": "Rebuild the keyword and vector indexes from the knowledge directory. Run after editing the knowledge JSON files.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "ops_graph",
        "description": "Explore the knowledge graph. Actions: 'neighbors' (one hop both ways), 'traverse' (breadth-first along outgoing edges), 'find' (nodes whose label contains any keyword), 'stats'.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["neighbors", "traverse", "find", "stats"],
                },
                "node_id": {"type": "string", "description": "Node id (neighbors, traverse)"},
                "max_depth": {"type": "integer", "default": 2, "minimum": 1, "maximum": 5, "description": "Hop limit for traverse"},
                "max_nodes": {"type": "integer", "minimum": 1, "description": "Stop traverse after this many nodes"},
                "keywords": {"type": "array", "items": {"type": "string"}, "description": "Label keywords (find)"},
                "limit": {"type": "integer", "default": 10, "description": "Max nodes returned by find"},
            },
            "required": ["action"],
        },
    },
    {
        "name": "ops_record_episode",
        "description": "Record what was done during a sprint phase and how it turned out, with an optional lesson and tags.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "sprint_phase": {"type": "string", "description": "Phase label, e.g. 'planning', 'execution', 'review'"},
                "action": {"type": "string", "description": "What was done"},
                "outcome": {"type": "string", "description": "What happened"},
                "lesson": {"type": "string", "description": "Optional takeaway"},
                "tags": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["sprint_phase", "action", "outcome"],
        },
    },
    {
        "name": "ops_recall_episodes",
        "description": "Keyword recall over past episodes, newest first. Optionally restricted to one sprint phase.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "sprint_phase": {"type": "string", "description": "Only episodes from this phase"},
                "limit": {"type": "integer", "default": 10},
            },
            "required": ["query"],
        },
    },
    {
        "name": "ops_stats",
        "description": "Show database location and counts for knowledge entries, vectors, graph nodes/edges and episodes.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]
