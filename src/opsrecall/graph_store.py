"""
opsrecall Graph Store -- typed nodes and directed, weighted edges.

Nodes are upserted by id (label and properties replaced, never merged).
Edges are identified by (source, target, relationship); rewriting one
replaces its weight rather than adding a parallel edge.
"""

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from opsrecall.context import MemoryContext

logger = logging.getLogger("opsrecall.graph_store")

_NODE_UPSERT_SQL = """
    INSERT INTO knowledge_nodes (id, type, label, properties)
    VALUES (?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
        label = excluded.label,
        properties = excluded.properties
"""

_EDGE_UPSERT_SQL = """
    INSERT INTO knowledge_edges (source, target, relationship, weight)
    VALUES (?, ?, ?, ?)
    ON CONFLICT(source, target, relationship) DO UPDATE SET
        weight = excluded.weight
"""


@dataclass
class GraphNode:
    id: str
    type: str
    label: str
    properties: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": self.type, "label": self.label, "properties": self.properties}

    @classmethod
    def from_row(cls, row) -> "GraphNode":
        node_id, node_type, label, properties = row
        return cls(id=node_id, type=node_type, label=label, properties=_parse_properties(properties))


@dataclass
class GraphEdge:
    source: str
    target: str
    relationship: str
    weight: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "relationship": self.relationship,
            "weight": self.weight,
        }


@dataclass
class Neighbor:
    node: GraphNode
    edge: GraphEdge
    direction: str  # "outgoing" | "incoming"


@dataclass
class TraversalHit:
    node: GraphNode
    depth: int
    via: str


def _parse_properties(raw) -> Dict[str, Any]:
    """Stored properties JSON -> dict; anything malformed degrades to {}."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("Malformed node properties, using {}: %r", raw[:80] if isinstance(raw, str) else raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class GraphStore:
    """Knowledge graph over the shared database."""

    def __init__(self, ctx: MemoryContext):
        self.ctx = ctx
        self._initialized = False

    def initialize(self) -> None:
        """Create node/edge tables and the edge source/target indexes. Idempotent."""
        if self._initialized:
            return
        with self.ctx.transaction() as c:
            c.execute("""
                CREATE TABLE IF NOT EXISTS knowledge_nodes (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    label TEXT NOT NULL,
                    properties TEXT DEFAULT '{}'
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS knowledge_edges (
                    source TEXT NOT NULL,
                    target TEXT NOT NULL,
                    relationship TEXT NOT NULL,
                    weight REAL DEFAULT 1.0,
                    PRIMARY KEY (source, target, relationship)
                )
            """)
            c.execute("CREATE INDEX IF NOT EXISTS idx_knowledge_nodes_type ON knowledge_nodes(type)")
            for col in ("source", "target"):
                c.execute(f"CREATE INDEX IF NOT EXISTS idx_edges_{col} ON knowledge_edges({col})")
        self._initialized = True

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    @staticmethod
    def _node_params(node: GraphNode) -> tuple:
        return (node.id, node.type, node.label, json.dumps(node.properties or {}))

    def add_node(self, node: GraphNode) -> None:
        self.initialize()
        with self.ctx.transaction() as c:
            c.execute(_NODE_UPSERT_SQL, self._node_params(node))

    def add_nodes(self, nodes: Iterable[GraphNode]) -> None:
        """Upsert many nodes in a single transaction."""
        params = [self._node_params(n) for n in nodes]
        if not params:
            return
        self.initialize()
        with self.ctx.transaction() as c:
            c.executemany(_NODE_UPSERT_SQL, params)

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        self.initialize()
        row = self.ctx.execute(
            "SELECT id, type, label, properties FROM knowledge_nodes WHERE id = ?", (node_id,)
        ).fetchone()
        return GraphNode.from_row(row) if row else None

    def get_nodes_by_type(self, node_type: str) -> List[GraphNode]:
        self.initialize()
        rows = self.ctx.execute(
            "SELECT id, type, label, properties FROM knowledge_nodes WHERE type = ? ORDER BY rowid",
            (node_type,),
        ).fetchall()
        return [GraphNode.from_row(r) for r in rows]

    def delete_node(self, node_id: str) -> bool:
        """Delete a node and every edge touching it."""
        self.initialize()
        with self.ctx.transaction() as c:
            cur = c.execute("DELETE FROM knowledge_nodes WHERE id = ?", (node_id,))
            c.execute("DELETE FROM knowledge_edges WHERE source = ? OR target = ?", (node_id, node_id))
        return cur.rowcount > 0

    def get_node_count(self) -> int:
        self.initialize()
        return self.ctx.execute("SELECT count(*) FROM knowledge_nodes").fetchone()[0]

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    @staticmethod
    def _edge_params(edge: GraphEdge) -> tuple:
        return (edge.source, edge.target, edge.relationship, float(edge.weight))

    def add_edge(self, edge: GraphEdge) -> None:
        self.initialize()
        with self.ctx.transaction() as c:
            c.execute(_EDGE_UPSERT_SQL, self._edge_params(edge))

    def add_edges(self, edges: Iterable[GraphEdge]) -> None:
        """Upsert many edges in a single transaction."""
        params = [self._edge_params(e) for e in edges]
        if not params:
            return
        self.initialize()
        with self.ctx.transaction() as c:
            c.executemany(_EDGE_UPSERT_SQL, params)

    def get_edge_count(self) -> int:
        self.initialize()
        return self.ctx.execute("SELECT count(*) FROM knowledge_edges").fetchone()[0]

    def get_edge(self, source: str, target: str, relationship: str) -> Optional[GraphEdge]:
        self.initialize()
        row = self.ctx.execute(
            """SELECT source, target, relationship, weight FROM knowledge_edges
               WHERE source = ? AND target = ? AND relationship = ?""",
            (source, target, relationship),
        ).fetchone()
        return GraphEdge(*row) if row else None

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def _outgoing(self, node_id: str) -> List[Neighbor]:
        rows = self.ctx.execute(
            """SELECT e.source, e.target, e.relationship, e.weight,
                      n.id, n.type, n.label, n.properties
               FROM knowledge_edges e
               JOIN knowledge_nodes n ON n.id = e.target
               WHERE e.source = ?
               ORDER BY e.rowid""",
            (node_id,),
        ).fetchall()
        return [Neighbor(GraphNode.from_row(r[4:]), GraphEdge(*r[:4]), "outgoing") for r in rows]

    def _incoming(self, node_id: str) -> List[Neighbor]:
        rows = self.ctx.execute(
            """SELECT e.source, e.target, e.relationship, e.weight,
                      n.id, n.type, n.label, n.properties
               FROM knowledge_edges e
               JOIN knowledge_nodes n ON n.id = e.source
               WHERE e.target = ?
               ORDER BY e.rowid""",
            (node_id,),
        ).fetchall()
        return [Neighbor(GraphNode.from_row(r[4:]), GraphEdge(*r[:4]), "incoming") for r in rows]

    def get_neighbors(self, node_id: str) -> List[Neighbor]:
        """One hop in both directions: outgoing edges first, then incoming."""
        self.initialize()
        return self._outgoing(node_id) + self._incoming(node_id)

    def traverse_bfs(
        self,
        start_id: str,
        max_depth: int = 2,
        max_nodes: Optional[int] = None,
    ) -> List[TraversalHit]:
        """Breadth-first walk along outgoing edges from *start_id*.

        Each node is reported once, at the depth it was first discovered.
        The start node is never reported. Emission stops at ``max_nodes``
        even in the middle of a frontier.
        """
        self.initialize()
        if max_nodes is not None and max_nodes <= 0:
            return []

        visited: Set[str] = {start_id}
        results: List[TraversalHit] = []
        queue = deque([(start_id, 0)])

        while queue:
            node_id, depth = queue.popleft()
            if depth >= max_depth:
                continue
            for neighbor in self._outgoing(node_id):
                nid = neighbor.node.id
                if nid in visited:
                    continue
                visited.add(nid)
                results.append(TraversalHit(node=neighbor.node, depth=depth + 1, via=neighbor.edge.relationship))
                if max_nodes is not None and len(results) >= max_nodes:
                    return results
                queue.append((nid, depth + 1))

        return results

    def find_nodes_by_keywords(self, keywords: Iterable[str], max_results: int = 10) -> List[GraphNode]:
        """Nodes whose label contains any keyword (case-insensitive)."""
        terms = [k.strip().lower() for k in keywords if k and k.strip()]
        if not terms:
            return []
        self.initialize()
        conditions = " OR ".join("LOWER(label) LIKE ? ESCAPE '\\'" for _ in terms)
        params: List[Any] = [f"%{_escape_like(t)}%" for t in terms]
        params.append(max_results)
        rows = self.ctx.execute(
            f"""SELECT id, type, label, properties
                FROM knowledge_nodes
                WHERE {conditions}
                LIMIT ?""",
            params,
        ).fetchall()
        return [GraphNode.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Stats / maintenance
    # ------------------------------------------------------------------

    def get_graph_stats(self) -> Dict[str, Any]:
        self.initialize()
        node_types = {
            t: cnt for t, cnt in self.ctx.execute(
                "SELECT type, count(*) FROM knowledge_nodes GROUP BY type ORDER BY type"
            ).fetchall()
        }
        return {"nodes": self.get_node_count(), "edges": self.get_edge_count(), "node_types": node_types}

    def clear_graph(self) -> None:
        """Delete every node and edge."""
        self.initialize()
        with self.ctx.transaction() as c:
            c.execute("DELETE FROM knowledge_edges")
            c.execute("DELETE FROM knowledge_nodes")
        logger.info("Knowledge graph cleared")
