from typing import Dict, Hashable, Iterable, List, Optional, Tuple

Edge = Tuple[Hashable, Hashable]


class DiGraph:
    """Directed graph kept as ordered outlinks: vertex -> list of targets."""

    def __init__(self) -> None:
        self._outlinks: Dict[Hashable, List[Hashable]] = {}
        self._data: Dict[Hashable, object] = {}

    @classmethod
    def from_outlinks(cls, outlinks: Dict[Hashable, Iterable[Hashable]]) -> "DiGraph":
        g = cls()
        for src, outs in outlinks.items():
            g.add_vertex(src)
            for dst in outs:
                g.add_edge(src, dst)
        return g

    @classmethod
    def from_edges(cls, edges: Iterable[Edge], vertices: Iterable[Hashable] = ()) -> "DiGraph":
        g = cls()
        for u in vertices:
            g.add_vertex(u)
        for src, dst in edges:
            g.add_edge(src, dst)
        return g

    def add_vertex(self, u: Hashable) -> None:
        if u not in self._outlinks:
            self._outlinks[u] = []

    def add_edge(self, u: Hashable, v: Hashable) -> None:
        self.add_vertex(u)
        self.add_vertex(v)
        outs = self._outlinks[u]
        if v not in outs:
            outs.append(v)

    def remove_edge(self, u: Hashable, v: Hashable) -> None:
        outs = self._outlinks.get(u)
        if outs and v in outs:
            outs.remove(v)

    def has_vertex(self, u: Hashable) -> bool:
        return u in self._outlinks

    def has_edge(self, u: Hashable, v: Hashable) -> bool:
        return v in self._outlinks.get(u, ())

    def order(self) -> int:
        return len(self._outlinks)

    def size(self) -> int:
        return sum(len(outs) for outs in self._outlinks.values())

    def vertex_keys(self) -> List[Hashable]:
        return list(self._outlinks)

    def edge_keys(self, u: Hashable) -> List[Hashable]:
        return self._outlinks.get(u, [])

    def degree(self, u: Hashable) -> int:
        return len(self._outlinks.get(u, ()))

    def vertex_data(self, u: Hashable, default=None):
        return self._data.get(u, default)

    def set_vertex_data(self, u: Hashable, value) -> None:
        self._data[u] = value

    def edges(self) -> List[Edge]:
        return [(u, v) for u, outs in self._outlinks.items() for v in outs]

    def copy(self) -> "DiGraph":
        g = DiGraph()
        g._outlinks = {u: list(outs) for u, outs in self._outlinks.items()}
        g._data = dict(self._data)
        return g

    def transpose(self) -> "DiGraph":
        """
        Reverse every edge. Vertex order is kept, and each vertex of the
        result carries its out-degree in this graph as vertex data.
        """
        t = DiGraph()
        for u in self._outlinks:
            t.add_vertex(u)
            t.set_vertex_data(u, self.degree(u))
        for u, outs in self._outlinks.items():
            for v in outs:
                t._outlinks[v].append(u)
        return t

    def apply_batch(self, deletions: Iterable[Edge], insertions: Iterable[Edge]) -> "DiGraph":
        """Return a new graph with `deletions` removed, then `insertions` added."""
        g = self.copy()
        g._data = {}
        for u, v in deletions:
            g.remove_edge(u, v)
        for u, v in insertions:
            g.add_edge(u, v)
        return g

    def __repr__(self) -> str:
        return f"DiGraph(order={self.order()}, size={self.size()})"


def dead_end_vertices(x: DiGraph) -> List[Hashable]:
    return [u for u in x.vertex_keys() if x.degree(u) == 0]


def batch_update(
    x: DiGraph,
    deletions: List[Edge],
    insertions: List[Edge],
    transpose: bool = True,
) -> Tuple[DiGraph, Optional[DiGraph]]:
    """
    Returns:
      y: x with the batch applied,
      yt: transpose of y (None when transpose=False)
    """
    y = x.apply_batch(deletions, insertions)
    return y, (y.transpose() if transpose else None)
