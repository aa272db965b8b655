"""
opsrecall Tool Extensions -- optional tool groups handed to the server.

An extension contributes extra tool schemas and their async handlers. The
server merges them with the core tools once, at construction:

    class DigestTools(ToolExtension):
        name = "digest"
        write_tools = frozenset({"ops_digest_send"})

        def tool_schemas(self):
            return [DIGEST_SCHEMA]

        def handlers(self):
            return {"ops_digest_send": handle_digest_send}

    server = create_server(extensions=[DigestTools()])
"""

from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Tuple

Handler = Callable[[dict], Awaitable[dict]]


class ToolExtension:
    """Base capability: contributes no tools unless overridden."""

    name = "extension"
    write_tools: FrozenSet[str] = frozenset()

    def tool_schemas(self) -> List[Dict[str, Any]]:
        return []

    def handlers(self) -> Dict[str, Handler]:
        return {}


class NullExtension(ToolExtension):
    """Default when no optional tool groups are installed."""

    name = "none"


def merge_tools(
    core_schemas: List[Dict[str, Any]],
    core_handlers: Dict[str, Handler],
    extensions: Iterable[ToolExtension],
) -> Tuple[List[Dict[str, Any]], Dict[str, Handler], FrozenSet[str]]:
    """Combine core tools with every extension's tools.

    Returns (schemas, handlers, extra write tools). A tool name registered
    twice raises ValueError, as does a schema with no matching handler.
    """
    schemas = list(core_schemas)
    handlers = dict(core_handlers)
    write_tools = set()
    for ext in extensions:
        ext_schemas = ext.tool_schemas()
        ext_handlers = ext.handlers()
        for schema in ext_schemas:
            tool = schema["name"]
            if tool in handlers:
                raise ValueError(f"extension {ext.name!r} redefines tool {tool!r}")
            if tool not in ext_handlers:
                raise ValueError(f"extension {ext.name!r} has no handler for {tool!r}")
            schemas.append(schema)
            handlers[tool] = ext_handlers[tool]
        write_tools.update(ext.write_tools)
    return schemas, handlers, frozenset(write_tools)
