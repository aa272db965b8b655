"""opsrecall MCP Server tests -- schemas, handlers, rate limiting, extensions."""
import pytest

from opsrecall.server.extensions import NullExtension, ToolExtension, merge_tools
from opsrecall.server.handlers import HANDLERS, _clamp_int
from opsrecall.server.mcp_server import OpsRecallServer, RateLimiter
from opsrecall.server.tool_schemas import TOOL_SCHEMAS


# ============================================================================
# Schema / Registry Tests
# ============================================================================

def test_all_tools_have_handlers():
    """Every tool in TOOL_SCHEMAS should have a handler."""
    for schema in TOOL_SCHEMAS:
        assert schema["name"] in HANDLERS, f"Missing handler for {schema['name']}"


def test_tool_schemas_valid():
    for schema in TOOL_SCHEMAS:
        assert "name" in schema
        assert "description" in schema
        assert schema["inputSchema"]["type"] == "object"
        assert schema["name"].startswith("ops_")


def test_handler_count():
    assert len(TOOL_SCHEMAS) == 6
    assert set(HANDLERS) == {s["name"] for s in TOOL_SCHEMAS}


def test_clamp_int():
    assert _clamp_int("5", default=10) == 5
    assert _clamp_int(0, default=10) == 1
    assert _clamp_int(10**9, default=10, max_val=100) == 100
    assert _clamp_int("abc", default=10) == 10


# ============================================================================
# Handlers
# ============================================================================

def _text(result):
    return result["content"][0]["text"]


@pytest.mark.asyncio
async def test_knowledge_query(knowledge_dir):
    result = await HANDLERS["ops_knowledge_query"]({"query": "backoff", "mode": "lexical"})
    assert not result.get("isError")
    assert "`pattern-1`" in _text(result)


@pytest.mark.asyncio
async def test_knowledge_query_default_mode(knowledge_dir):
    result = await HANDLERS["ops_knowledge_query"]({"query": "backoff"})
    assert not result.get("isError")
    assert "**Mode:** hybrid" in _text(result)


@pytest.mark.asyncio
async def test_knowledge_query_empty(tmp_home):
    result = await HANDLERS["ops_knowledge_query"]({"query": "  "})
    assert result["isError"] is True
    assert "query is required" in _text(result)


@pytest.mark.asyncio
async def test_knowledge_query_bad_mode(tmp_home):
    result = await HANDLERS["ops_knowledge_query"]({"query": "x", "mode": "semantic"})
    assert result["isError"] is True


@pytest.mark.asyncio
async def test_reindex(knowledge_dir):
    result = await HANDLERS["ops_reindex"]({})
    assert "Knowledge entries: 6" in _text(result)


@pytest.mark.asyncio
async def test_record_and_recall(tmp_home):
    stored = await HANDLERS["ops_record_episode"]({
        "sprint_phase": "Phase 1", "action": "Chose SQLite", "outcome": "Fast", "tags": ["db"],
    })
    assert not stored.get("isError")

    found = await HANDLERS["ops_recall_episodes"]({"query": "sqlite"})
    assert "Chose SQLite" in _text(found)

    filtered = await HANDLERS["ops_recall_episodes"]({"query": "sqlite", "sprint_phase": "Phase 2"})
    assert "No matching episodes" in _text(filtered)


@pytest.mark.asyncio
async def test_record_episode_missing_fields(tmp_home):
    result = await HANDLERS["ops_record_episode"]({"sprint_phase": "Phase 1", "action": "x"})
    assert result["isError"] is True


@pytest.mark.asyncio
async def test_recall_symbols_only(tmp_home):
    result = await HANDLERS["ops_recall_episodes"]({"query": "! @ # $"})
    assert not result.get("isError")
    assert "# Episodes (0)" in _text(result)


@pytest.mark.asyncio
async def test_graph_actions(tmp_home):
    from opsrecall.bridge import get_engine
    from opsrecall.graph_store import GraphEdge, GraphNode

    g = get_engine().graph
    g.add_nodes([GraphNode("A", "lesson", "Alpha"), GraphNode("B", "lesson", "Beta")])
    g.add_edge(GraphEdge("A", "B", "produced"))

    neighbors = await HANDLERS["ops_graph"]({"action": "neighbors", "node_id": "A"})
    assert "`B`" in _text(neighbors)

    traverse = await HANDLERS["ops_graph"]({"action": "traverse", "node_id": "A", "max_depth": 99})
    assert "(depth 5, 1 nodes)" in _text(traverse)

    find = await HANDLERS["ops_graph"]({"action": "find", "keywords": "beta"})
    assert "`B` Beta" in _text(find)

    stats = await HANDLERS["ops_graph"]({"action": "stats"})
    assert "- Nodes: 2" in _text(stats)


@pytest.mark.asyncio
async def test_graph_argument_errors(tmp_home):
    assert (await HANDLERS["ops_graph"]({"action": "neighbors"}))["isError"] is True
    assert (await HANDLERS["ops_graph"]({"action": "find", "keywords": []}))["isError"] is True
    unknown = await HANDLERS["ops_graph"]({"action": "delete"})
    assert unknown["isError"] is True
    assert "Unknown action" in _text(unknown)


@pytest.mark.asyncio
async def test_stats(tmp_home):
    result = await HANDLERS["ops_stats"]({})
    assert "# opsrecall Status" in _text(result)


# ============================================================================
# Rate limiting
# ============================================================================

class TestRateLimiter:
    def test_global_limit(self):
        limiter = RateLimiter(global_limit=2, write_limit=10)
        assert limiter.check("ops_stats", now=0.0) is None
        assert limiter.check("ops_stats", now=1.0) is None
        assert "2 calls/min" in limiter.check("ops_stats", now=2.0)

    def test_window_slides(self):
        limiter = RateLimiter(global_limit=1, write_limit=10)
        assert limiter.check("ops_stats", now=0.0) is None
        assert limiter.check("ops_stats", now=30.0) is not None
        assert limiter.check("ops_stats", now=61.0) is None

    def test_write_tier(self):
        limiter = RateLimiter(global_limit=100, write_limit=1)
        assert limiter.check("ops_record_episode", now=0.0) is None
        assert "write calls/min" in limiter.check("ops_record_episode", now=1.0)
        assert limiter.check("ops_knowledge_query", now=1.0) is None

    def test_limits_from_env(self, tmp_home):
        import os
        os.environ["OPSRECALL_RATE_LIMIT_GLOBAL"] = "7"
        os.environ["OPSRECALL_RATE_LIMIT_WRITE"] = "3"
        limiter = RateLimiter()
        assert (limiter.global_limit, limiter.write_limit) == (7, 3)


# ============================================================================
# Server dispatch and extensions
# ============================================================================

class _EchoExtension(ToolExtension):
    name = "echo"
    write_tools = frozenset({"ops_echo"})

    def tool_schemas(self):
        return [{
            "name": "ops_echo",
            "description": "Echo the input back",
            "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}},
        }]

    def handlers(self):
        async def handle(arguments):
            return {"content": [{"type": "text", "text": arguments.get("text", "")}]}
        return {"ops_echo": handle}


class TestServer:
    def test_default_extension_adds_nothing(self):
        srv = OpsRecallServer()
        assert [t.name for t in srv.list_tools()] == [s["name"] for s in TOOL_SCHEMAS]

    def test_extension_tools_registered(self):
        srv = OpsRecallServer(extensions=[_EchoExtension()])
        assert "ops_echo" in [t.name for t in srv.list_tools()]
        assert "ops_echo" in srv.limiter.write_tools

    @pytest.mark.asyncio
    async def test_call_extension_tool(self):
        srv = OpsRecallServer(extensions=[_EchoExtension()])
        out = await srv.call_tool("ops_echo", {"text": "hello"})
        assert out[0].text == "hello"

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        out = await OpsRecallServer().call_tool("ops_nope", {})
        assert out[0].text == "Unknown tool: ops_nope"

    @pytest.mark.asyncio
    async def test_rate_limited_call(self):
        srv = OpsRecallServer(limiter=RateLimiter(global_limit=0, write_limit=0))
        out = await srv.call_tool("ops_stats", {})
        assert out[0].text.startswith("Rate limit exceeded")

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_text(self):
        class Broken(ToolExtension):
            name = "broken"

            def tool_schemas(self):
                return [{"name": "ops_broken", "description": "", "inputSchema": {"type": "object"}}]

            def handlers(self):
                async def handle(arguments):
                    raise RuntimeError("kaput")
                return {"ops_broken": handle}

        out = await OpsRecallServer(extensions=[Broken()]).call_tool("ops_broken", {})
        assert out[0].text == "Error in ops_broken: kaput"

    def test_duplicate_tool_rejected(self):
        class Clash(_EchoExtension):
            def tool_schemas(self):
                return [dict(TOOL_SCHEMAS[0])]

            def handlers(self):
                return {TOOL_SCHEMAS[0]["name"]: HANDLERS[TOOL_SCHEMAS[0]["name"]]}

        with pytest.raises(ValueError):
            OpsRecallServer(extensions=[Clash()])

    def test_schema_without_handler_rejected(self):
        class Missing(_EchoExtension):
            def handlers(self):
                return {}

        with pytest.raises(ValueError):
            merge_tools(TOOL_SCHEMAS, HANDLERS, [Missing()])

    def test_null_extension(self):
        ext = NullExtension()
        assert ext.tool_schemas() == []
        assert ext.handlers() == {}


def test_mcp_server_api():
    """The 1.x low-level Server exposes the decorators OpsRecallServer registers with."""
    from mcp.server import Server

    srv = Server("opsrecall-test")
    assert callable(srv.list_tools)
    assert callable(srv.call_tool)
