import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Set, Tuple

import numpy as np

from pagerank_graph import DiGraph, Edge

logger = logging.getLogger(__name__)

NORMS = ("L1", "L2", "LI")


def log_event(event_type: str, level: int = logging.INFO, **fields) -> None:
    if not logger.isEnabledFor(level):
        return
    payload = {
        "event_type": event_type,
        "ts": datetime.now(timezone.utc).isoformat(),
        **fields,
    }
    logger.log(level, json.dumps(payload))


@dataclass(frozen=True)
class PagerankOptions:
    damping: float = 0.85
    tolerance: float = 1e-10
    max_iterations: int = 500
    tolerance_norm: str = "L1"
    dead_ends: bool = False
    asynchronous: bool = False
    threads: int = 4
    repeat: int = 1

    def __post_init__(self) -> None:
        if not 0.0 < self.damping < 1.0:
            raise ValueError(f"damping must be in (0, 1), got {self.damping}")
        if self.tolerance < 0:
            raise ValueError(f"tolerance must be >= 0, got {self.tolerance}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.tolerance_norm not in NORMS:
            raise ValueError(f"tolerance_norm must be one of {NORMS}, got {self.tolerance_norm!r}")
        if self.threads < 1:
            raise ValueError(f"threads must be >= 1, got {self.threads}")
        if self.repeat < 1:
            raise ValueError(f"repeat must be >= 1, got {self.repeat}")


def _env_bool(raw: str) -> bool:
    return raw.lower() in ("1", "true", "yes", "on")


_ENV_FIELDS = {
    "PAGERANK_DAMPING": ("damping", float),
    "PAGERANK_TOLERANCE": ("tolerance", float),
    "PAGERANK_MAX_ITERATIONS": ("max_iterations", int),
    "PAGERANK_TOLERANCE_NORM": ("tolerance_norm", str.upper),
    "PAGERANK_DEAD_ENDS": ("dead_ends", _env_bool),
    "PAGERANK_ASYNC": ("asynchronous", _env_bool),
    "PAGERANK_THREADS": ("threads", int),
    "PAGERANK_REPEAT": ("repeat", int),
}


def options_from_env(environ: Optional[Mapping[str, str]] = None, **overrides) -> PagerankOptions:
    """Build options from PAGERANK_* variables; keyword overrides win."""
    env = os.environ if environ is None else environ
    kwargs = {}
    for name, (attr, convert) in _ENV_FIELDS.items():
        raw = (env.get(name, "") or "").strip()
        if raw:
            kwargs[attr] = convert(raw)
    kwargs.update(overrides)
    return PagerankOptions(**kwargs)


@dataclass
class PagerankResult:
    ranks: Dict[Hashable, float] = field(default_factory=dict)
    iterations: int = 0
    time: float = 0.0


class ThreadInfo:
    """Per-worker bookkeeping. Setting `crashed` stops the run at the next iteration boundary."""

    def __init__(self, id: int) -> None:
        self.id = id
        self.crashed = False
        self.processed = 0

    def __repr__(self) -> str:
        return f"ThreadInfo(id={self.id}, crashed={self.crashed}, processed={self.processed})"


def thread_infos(count: int) -> List[ThreadInfo]:
    return [ThreadInfo(t) for t in range(count)]


def crashed_count(threads: Iterable[ThreadInfo]) -> int:
    return sum(1 for t in threads if t.crashed)


def partition_range(start: int, count: int, parts: int) -> List[Tuple[int, int]]:
    """Split [start, start+count) into `parts` contiguous (start, count) chunks; trailing chunks may be empty."""
    base, extra = divmod(max(count, 0), parts)
    out = []
    lo = start
    for p in range(parts):
        size = base + (1 if p < extra else 0)
        out.append((lo, size))
        lo += size
    return out


class RankBuffers:
    """
    Rank storage for one run: two rank arrays with a live index instead of
    swapping, plus contributions (c) and per-vertex scale factors (f).
    """

    def __init__(self, a: np.ndarray, r: np.ndarray, c: np.ndarray, f: np.ndarray) -> None:
        self._ranks = [a, r]
        self._live = 0
        self.contribution = c
        self.scale = f

    @property
    def current(self) -> np.ndarray:
        return self._ranks[self._live]

    @property
    def previous(self) -> np.ndarray:
        return self._ranks[1 - self._live]

    def swap(self) -> None:
        self._live ^= 1

    def final(self, asynchronous: bool) -> np.ndarray:
        # synchronous runs swap after every sweep, leaving the latest ranks in `previous`
        return self.current if asynchronous else self.previous


def vertex_index(ks: List[Hashable]) -> Dict[Hashable, int]:
    return {k: p for p, k in enumerate(ks)}


def source_offsets(xt: DiGraph, ks: List[Hashable]) -> np.ndarray:
    xv = np.zeros(len(ks) + 1, dtype=np.int64)
    np.cumsum([len(xt.edge_keys(k)) for k in ks], out=xv[1:])
    return xv


def destination_indices(xt: DiGraph, ks: List[Hashable], index: Dict[Hashable, int]) -> np.ndarray:
    return np.fromiter((index[v] for k in ks for v in xt.edge_keys(k)), dtype=np.int64)


def out_degrees(xt: DiGraph, ks: List[Hashable]) -> np.ndarray:
    """Out-degree in the original graph, read from the transpose's vertex data."""
    return np.fromiter((xt.vertex_data(k, 0) for k in ks), dtype=np.int64, count=len(ks))


def pagerank_factor(f: np.ndarray, vdeg: np.ndarray, d: float, start: int, count: int) -> None:
    end = start + count
    deg = vdeg[start:end]
    np.divide(d, deg, out=f[start:end], where=deg > 0)
    f[start:end][deg == 0] = 0.0


def copy_values(dst: np.ndarray, src: np.ndarray, start: int, count: int) -> None:
    dst[start:start + count] = src[start:start + count]


def multiply_values(c: np.ndarray, a: np.ndarray, f: np.ndarray, start: int, count: int) -> None:
    end = start + count
    np.multiply(a[start:end], f[start:end], out=c[start:end])


def dead_end_mass(r: np.ndarray, vdeg: np.ndarray, start: int, count: int) -> float:
    end = start + count
    return float(r[start:end][vdeg[start:end] == 0].sum())


def teleport_constant(mass: float, d: float, n: int) -> float:
    return (1 - d) / n + d * mass / n


def pagerank_teleport(r: np.ndarray, vdeg: np.ndarray, d: float, n: int) -> float:
    """Teleport term plus rank trapped at dead ends, spread over all n vertices."""
    return teleport_constant(dead_end_mass(r, vdeg, 0, n), d, n)


def pagerank_error_partial(a: np.ndarray, r: np.ndarray, norm: str, start: int, count: int) -> float:
    if count <= 0:
        return 0.0
    diff = np.abs(a[start:start + count] - r[start:start + count])
    if norm == "L2":
        return float(np.dot(diff, diff))
    if norm == "LI":
        return float(diff.max())
    return float(diff.sum())


def combine_error(partials: Iterable[float], norm: str) -> float:
    if norm == "LI":
        return max(partials, default=0.0)
    total = sum(partials)
    return float(np.sqrt(total)) if norm == "L2" else total


def pagerank_error(a: np.ndarray, r: np.ndarray, norm: str, start: int, count: int) -> float:
    return combine_error([pagerank_error_partial(a, r, norm, start, count)], norm)


def pagerank_calculate_ranks(
    a: np.ndarray,
    c: np.ndarray,
    xv: np.ndarray,
    xe: np.ndarray,
    base: float,
    start: int,
    count: int,
    thread: ThreadInfo,
    fv: Optional[Callable[[ThreadInfo, int], None]],
    fa: Callable[[int], bool],
    f: Optional[np.ndarray] = None,
) -> None:
    """
    Recompute the rank of every affected vertex in [start, start+count) from
    the contributions of its in-neighbours. Unaffected vertices are left as
    they are. If `f` is given, the vertex's contribution is refreshed right away.
    """
    for v in range(start, start + count):
        if not fa(v):
            continue
        a[v] = base + c[xe[xv[v]:xv[v + 1]]].sum()
        if f is not None:
            c[v] = a[v] * f[v]
        thread.processed += 1
        if fv is not None:
            fv(thread, v)


def _dfs_visit(x: DiGraph, u: Hashable, vis: Set[Hashable]) -> None:
    stack = [u]
    while stack:
        v = stack.pop()
        if v in vis:
            continue
        vis.add(v)
        stack.extend(w for w in x.edge_keys(v) if w not in vis)


def pagerank_affected_vertices_traversal(
    x: DiGraph,
    deletions: List[Edge],
    insertions: List[Edge],
    y: Optional[DiGraph] = None,
) -> Set[Hashable]:
    """
    Returns:
      every vertex reachable from the source of a changed edge, in the old
      graph `x` and, if given, the new graph `y`; plus vertices new in `y`.
    """
    sources = [u for u, _ in deletions] + [u for u, _ in insertions]
    affected: Set[Hashable] = set()
    for g in (x, y):
        if g is None:
            continue
        vis: Set[Hashable] = set()
        for u in sources:
            if g.has_vertex(u):
                _dfs_visit(g, u, vis)
        affected |= vis
    if y is not None:
        affected.update(u for u in y.vertex_keys() if not x.has_vertex(u))
    return affected


def _dead_ends_of(xt: DiGraph) -> Set[Hashable]:
    return {k for k in xt.vertex_keys() if xt.vertex_data(k, 0) == 0}


def pagerank_affects_all(xt: DiGraph, yt: DiGraph, vaff: Set[Hashable], dead_ends: bool) -> bool:
    """
    True when the batch moves the base constant of every vertex: the vertex
    count changed, or, with dead-end handling, an affected vertex is a dead
    end before or after the batch (its rank feeds the dead-end mass).
    """
    if xt.order() != yt.order() or set(xt.vertex_keys()) != set(yt.vertex_keys()):
        return True
    if not dead_ends:
        return False
    x_dead, y_dead = _dead_ends_of(xt), _dead_ends_of(yt)
    return x_dead != y_dead or not vaff.isdisjoint(x_dead | y_dead)


def affected_mask(vaff: Set[Hashable], ks: List[Hashable]) -> np.ndarray:
    return np.fromiter((k in vaff for k in ks), dtype=bool, count=len(ks))


def _initial_ranks(q: Optional[Mapping[Hashable, float]], ks: List[Hashable]) -> np.ndarray:
    n = len(ks)
    if q is None:
        return np.full(n, 1.0 / n)
    return np.fromiter((q.get(k, 1.0 / n) for k in ks), dtype=np.float64, count=n)


def _pagerank_run(
    xt: DiGraph,
    q: Optional[Mapping[Hashable, float]],
    o: PagerankOptions,
    ks: List[Hashable],
    start: int,
    count: int,
    loop,
    fv,
    fa,
    threads: List[ThreadInfo],
    mode: str,
    **fields,
) -> PagerankResult:
    n = len(ks)
    d = o.damping
    index = vertex_index(ks)
    xv = source_offsets(xt, ks)
    xe = destination_indices(xt, ks, index)
    vdeg = out_degrees(xt, ks)
    log_event("pagerank_start", mode=mode, vertices=n, edges=int(xe.size), start=start, count=count,
              threads=len(threads), asynchronous=o.asynchronous, dead_ends=o.dead_ends, **fields)

    iters = 0
    bufs = None
    total = 0.0
    for _ in range(o.repeat):
        t0 = time.time()
        r = _initial_ranks(q, ks)
        a = r.copy()
        f = np.zeros(n)
        c = np.zeros(n)
        pagerank_factor(f, vdeg, d, 0, n)
        multiply_values(c, r, f, 0, n)
        bufs = RankBuffers(a, r, c, f)
        iters = loop(bufs, xv, xe, vdeg, n, d, o.tolerance, o.max_iterations, o.tolerance_norm,
                     start, count, threads, fv, fa, asynchronous=o.asynchronous, dead_ends=o.dead_ends)
        total += time.time() - t0

    ms = 1000.0 * total / o.repeat
    crashed = crashed_count(threads)
    log_event("pagerank_done", mode=mode, iterations=iters, ms=round(ms, 3), crashed=crashed)
    ranks = bufs.final(o.asynchronous)
    return PagerankResult({k: float(ranks[p]) for p, k in enumerate(ks)}, iters, ms)


def pagerank_seq(xt, q, o, ks, start, count, loop, fv, fa, mode="static", **fields) -> PagerankResult:
    """Run `loop` over [start, start+count) of the transpose `xt` with a single worker."""
    return _pagerank_run(xt, q, o, ks, start, count, loop, fv, fa, thread_infos(1), mode, **fields)


def pagerank_omp(xt, q, o, ks, start, count, loop, fv, fa, mode="static", **fields) -> PagerankResult:
    """Run `loop` over [start, start+count) of the transpose `xt` with `o.threads` workers."""
    return _pagerank_run(xt, q, o, ks, start, count, loop, fv, fa, thread_infos(o.threads), mode, **fields)
