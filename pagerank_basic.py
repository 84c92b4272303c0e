import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Hashable, List, Mapping, Optional

import numpy as np

from pagerank import (
    PagerankOptions,
    PagerankResult,
    RankBuffers,
    ThreadInfo,
    affected_mask,
    combine_error,
    copy_values,
    crashed_count,
    dead_end_mass,
    log_event,
    multiply_values,
    options_from_env,
    pagerank_affected_vertices_traversal,
    pagerank_affects_all,
    pagerank_calculate_ranks,
    pagerank_error,
    pagerank_error_partial,
    pagerank_omp,
    pagerank_seq,
    pagerank_teleport,
    partition_range,
    teleport_constant,
)
from pagerank_graph import DiGraph, Edge

VertexCallback = Optional[Callable[[ThreadInfo, int], None]]


def pagerank_basic_seq_loop(
    bufs: RankBuffers,
    xv: np.ndarray,
    xe: np.ndarray,
    vdeg: np.ndarray,
    n: int,
    d: float,
    tol: float,
    max_iter: int,
    norm: str,
    start: int,
    count: int,
    threads: List[ThreadInfo],
    fv: VertexCallback,
    fa: Callable[[int], bool],
    asynchronous: bool = False,
    dead_ends: bool = False,
) -> int:
    """
    Perform PageRank iterations over vertices [start, start+count) with one worker.

    Stops when the error drops below tol, after max_iter iterations, or once
    threads[0] is marked crashed.

    Returns:
      iterations performed
    """
    c, f = bufs.contribution, bufs.scale
    it = 0
    while it < max_iter:
        if asynchronous:
            copy_values(bufs.previous, bufs.current, start, count)
        a, r = bufs.current, bufs.previous
        base = pagerank_teleport(r, vdeg, d, n) if dead_ends else (1 - d) / n
        pagerank_calculate_ranks(a, c, xv, xe, base, start, count, threads[0], fv, fa, f if asynchronous else None)
        it += 1
        multiply_values(c, a, f, start, count)
        err = pagerank_error(a, r, norm, start, count)
        if not asynchronous:
            bufs.swap()
        log_event("pagerank_iteration", logging.DEBUG, iteration=it, error=err)
        if err < tol:
            break
        if threads[0].crashed:
            break
    return it


def pagerank_basic_omp_loop(
    bufs: RankBuffers,
    xv: np.ndarray,
    xe: np.ndarray,
    vdeg: np.ndarray,
    n: int,
    d: float,
    tol: float,
    max_iter: int,
    norm: str,
    start: int,
    count: int,
    threads: List[ThreadInfo],
    fv: VertexCallback,
    fa: Callable[[int], bool],
    asynchronous: bool = False,
    dead_ends: bool = False,
) -> int:
    """
    Same as pagerank_basic_seq_loop, with [start, start+count) split into one
    contiguous chunk per worker. Every step waits for all chunks before the
    next one starts; partial dead-end mass and error values are combined afterwards.
    """
    c, f = bufs.contribution, bufs.scale
    parts = partition_range(start, count, len(threads))
    every = partition_range(0, n, len(threads))
    fc = f if asynchronous else None
    it = 0
    with ThreadPoolExecutor(max_workers=len(threads)) as ex:
        while it < max_iter:
            if asynchronous:
                cur, prev = bufs.current, bufs.previous
                list(ex.map(lambda p: copy_values(prev, cur, *p), parts))
            a, r = bufs.current, bufs.previous
            if dead_ends:
                base = teleport_constant(sum(ex.map(lambda p: dead_end_mass(r, vdeg, *p), every)), d, n)
            else:
                base = (1 - d) / n
            list(ex.map(lambda p, t: pagerank_calculate_ranks(a, c, xv, xe, base, p[0], p[1], t, fv, fa, fc),
                        parts, threads))
            it += 1
            list(ex.map(lambda p: multiply_values(c, a, f, *p), parts))
            err = combine_error(list(ex.map(lambda p: pagerank_error_partial(a, r, norm, *p), parts)), norm)
            if not asynchronous:
                bufs.swap()
            log_event("pagerank_iteration", logging.DEBUG, iteration=it, error=err)
            if err < tol:
                break
            if crashed_count(threads) > 0:
                break
    return it


def _always_affected(v: int) -> bool:
    return True


def pagerank_basic_seq(
    xt: DiGraph,
    q: Optional[Mapping[Hashable, float]] = None,
    o: Optional[PagerankOptions] = None,
    fv: VertexCallback = None,
) -> PagerankResult:
    """
    Find the rank of each vertex of a graph, given its transpose `xt`.
    Passing the ranks of an earlier run as `q` gives the naive-dynamic mode.
    Without `o`, options come from the PAGERANK_* environment.
    """
    o = o or options_from_env()
    n = xt.order()
    if n == 0:
        return PagerankResult()
    ks = xt.vertex_keys()
    return pagerank_seq(xt, q, o, ks, 0, n, pagerank_basic_seq_loop, fv, _always_affected)


def pagerank_basic_omp(
    xt: DiGraph,
    q: Optional[Mapping[Hashable, float]] = None,
    o: Optional[PagerankOptions] = None,
    fv: VertexCallback = None,
) -> PagerankResult:
    o = o or options_from_env()
    n = xt.order()
    if n == 0:
        return PagerankResult()
    ks = xt.vertex_keys()
    return pagerank_omp(xt, q, o, ks, 0, n, pagerank_basic_omp_loop, fv, _always_affected)


def _affected_predicate(
    x: DiGraph,
    xt: DiGraph,
    y: DiGraph,
    yt: DiGraph,
    deletions: List[Edge],
    insertions: List[Edge],
    o: PagerankOptions,
):
    ks = yt.vertex_keys()
    vaff = pagerank_affected_vertices_traversal(x, deletions, insertions, y)
    if pagerank_affects_all(xt, yt, vaff, o.dead_ends):
        return ks, _always_affected, len(ks)
    mask = affected_mask(vaff, ks)

    def fa(v: int) -> bool:
        return bool(mask[v])

    return ks, fa, int(mask.sum())


def pagerank_basic_dynamic_traversal_seq(
    x: DiGraph,
    xt: DiGraph,
    y: DiGraph,
    yt: DiGraph,
    deletions: List[Edge],
    insertions: List[Edge],
    q: Optional[Mapping[Hashable, float]] = None,
    o: Optional[PagerankOptions] = None,
    fv: VertexCallback = None,
) -> PagerankResult:
    """
    Find the rank of each vertex of the updated graph `y`, recomputing only
    vertices reachable from an edge changed by the batch. All other vertices
    keep their rank from `q`, normally the ranks of `x`. If the batch changes
    the vertex set, or touches a dead end while dead ends are handled, every
    vertex is recomputed.
    """
    o = o or options_from_env()
    n = yt.order()
    if n == 0:
        return PagerankResult()
    ks, fa, naff = _affected_predicate(x, xt, y, yt, deletions, insertions, o)
    return pagerank_seq(yt, q, o, ks, 0, n, pagerank_basic_seq_loop, fv, fa,
                        mode="dynamic-traversal", affected=naff)


def pagerank_basic_dynamic_traversal_omp(
    x: DiGraph,
    xt: DiGraph,
    y: DiGraph,
    yt: DiGraph,
    deletions: List[Edge],
    insertions: List[Edge],
    q: Optional[Mapping[Hashable, float]] = None,
    o: Optional[PagerankOptions] = None,
    fv: VertexCallback = None,
) -> PagerankResult:
    o = o or options_from_env()
    n = yt.order()
    if n == 0:
        return PagerankResult()
    ks, fa, naff = _affected_predicate(x, xt, y, yt, deletions, insertions, o)
    return pagerank_omp(yt, q, o, ks, 0, n, pagerank_basic_omp_loop, fv, fa,
                        mode="dynamic-traversal", affected=naff)
