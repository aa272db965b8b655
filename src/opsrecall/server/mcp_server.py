"""opsrecall MCP Server -- stdio-based MCP server over the retrieval engine."""

import asyncio
import collections
import logging
import os
import time
from typing import Iterable, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from opsrecall import config
from opsrecall.server.extensions import NullExtension, ToolExtension, merge_tools
from opsrecall.server.handlers import HANDLERS as _CORE_HANDLERS
from opsrecall.server.tool_schemas import TOOL_SCHEMAS as _CORE_SCHEMAS

logger = logging.getLogger("opsrecall.server")

SERVER_NAME = "opsrecall"

_RATE_WINDOW_S = 60.0

_WRITE_TOOLS = frozenset({
    "ops_reindex",
    "ops_record_episode",
})


# ---------------------------------------------------------------------------
# Rate limiting -- sliding-window counters
# ---------------------------------------------------------------------------


class RateLimiter:
    """Two-tier sliding window: every call counts globally, writes also count separately."""

    def __init__(
        self,
        global_limit: Optional[int] = None,
        write_limit: Optional[int] = None,
        write_tools=_WRITE_TOOLS,
        window_s: float = _RATE_WINDOW_S,
    ):
        self.global_limit = global_limit if global_limit is not None else config.env_int(
            "OPSRECALL_RATE_LIMIT_GLOBAL", 300)
        self.write_limit = write_limit if write_limit is not None else config.env_int(
            "OPSRECALL_RATE_LIMIT_WRITE", 60)
        self.write_tools = frozenset(write_tools)
        self.window_s = window_s
        self._global: collections.deque = collections.deque()
        self._writes: collections.deque = collections.deque()

    @staticmethod
    def _prune(timestamps: collections.deque, cutoff: float) -> None:
        while timestamps and timestamps[0] < cutoff:
            timestamps.popleft()

    def check(self, tool_name: str, now: Optional[float] = None) -> Optional[str]:
        """Return an error message if a limit is exceeded, else record the call and return None."""
        now = time.monotonic() if now is None else now
        cutoff = now - self.window_s

        self._prune(self._global, cutoff)
        if len(self._global) >= self.global_limit:
            return f"Rate limit exceeded: {self.global_limit} calls/min globally. Try again shortly."

        if tool_name in self.write_tools:
            self._prune(self._writes, cutoff)
            if len(self._writes) >= self.write_limit:
                return f"Rate limit exceeded: {self.write_limit} write calls/min. Try again shortly."
            self._writes.append(now)

        self._global.append(now)
        return None


# ---------------------------------------------------------------------------
# Server construction
# ---------------------------------------------------------------------------


class OpsRecallServer:
    """Tool registry, rate limiter and MCP wiring for one server process."""

    def __init__(
        self,
        extensions: Optional[Iterable[ToolExtension]] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        extensions = list(extensions) if extensions else [NullExtension()]
        self.tool_schemas, self.handlers, extra_writes = merge_tools(
            _CORE_SCHEMAS, _CORE_HANDLERS, extensions)
        self.limiter = limiter or RateLimiter(write_tools=_WRITE_TOOLS | extra_writes)
        self.last_activity = time.monotonic()
        self.server = Server(SERVER_NAME)
        self._register()

    def _register(self) -> None:
        @self.server.list_tools()
        async def list_tools() -> list[Tool]:
            return self.list_tools()

        @self.server.call_tool()
        async def call_tool(name: str, arguments: dict) -> list[TextContent]:
            return await self.call_tool(name, arguments)

    def list_tools(self) -> list[Tool]:
        return [
            Tool(
                name=schema["name"],
                description=schema["description"],
                inputSchema=schema["inputSchema"],
            )
            for schema in self.tool_schemas
        ]

    async def call_tool(self, name: str, arguments: Optional[dict]) -> list[TextContent]:
        """Dispatch a tool call to its handler."""
        self.last_activity = time.monotonic()

        rate_err = self.limiter.check(name)
        if rate_err:
            return [TextContent(type="text", text=rate_err)]

        handler = self.handlers.get(name)
        if not handler:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]

        try:
            result = await handler(arguments or {})
            content_list = result.get("content", [{}])
            text = content_list[0].get("text", str(result)) if content_list else str(result)
            return [TextContent(type="text", text=text)]
        except Exception as e:
            logger.error("Tool %s failed: %s", name, e)
            return [TextContent(type="text", text=f"Error in {name}: {e}")]

    async def _idle_watchdog(self, timeout_s: int) -> None:
        """Stop serving once no tool call has arrived within the timeout."""
        while True:
            await asyncio.sleep(min(30, timeout_s))
            idle = time.monotonic() - self.last_activity
            if idle >= timeout_s:
                logger.warning("Idle for %.0fs (limit %ds), shutting down.", idle, timeout_s)
                return

    async def run(self) -> None:
        idle_timeout = config.env_int("OPSRECALL_IDLE_TIMEOUT", 3600)
        async with stdio_server() as (read_stream, write_stream):
            serve = asyncio.create_task(self.server.run(
                read_stream,
                write_stream,
                self.server.create_initialization_options(),
            ))
            if idle_timeout <= 0:
                await serve
                return
            watchdog = asyncio.create_task(self._idle_watchdog(idle_timeout))
            done, pending = await asyncio.wait({serve, watchdog}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            for task in done:
                task.result()


def create_server(extensions: Optional[Iterable[ToolExtension]] = None) -> OpsRecallServer:
    return OpsRecallServer(extensions=extensions)


async def serve(extensions: Optional[Iterable[ToolExtension]] = None) -> None:
    """Run the stdio server until the client disconnects or the idle timeout fires."""
    from opsrecall.bridge import reset_engine

    logger.info("Starting opsrecall MCP server (pid %d)...", os.getpid())
    try:
        await create_server(extensions).run()
    finally:
        reset_engine()


def main():
    """Entry point for the opsrecall MCP server."""
    config.configure_logging()
    asyncio.run(serve())


if __name__ == "__main__":
    main()
