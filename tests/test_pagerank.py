import json
import logging

import numpy as np
import pytest

from pagerank import (
    PagerankOptions,
    RankBuffers,
    ThreadInfo,
    combine_error,
    crashed_count,
    dead_end_mass,
    destination_indices,
    options_from_env,
    out_degrees,
    pagerank_affected_vertices_traversal,
    pagerank_affects_all,
    pagerank_calculate_ranks,
    pagerank_error,
    pagerank_error_partial,
    pagerank_factor,
    pagerank_teleport,
    partition_range,
    source_offsets,
    thread_infos,
    vertex_index,
)
from pagerank_basic import pagerank_basic_seq
from pagerank_graph import DiGraph


def test_pagerank_invariants_and_order():
    n = 4
    outlinks = {
        0: [1, 2],
        1: [2],
        2: [0],
        3: [2],
    }
    xt = DiGraph.from_outlinks(outlinks).transpose()

    res = pagerank_basic_seq(xt, o=PagerankOptions(tolerance=1e-10, max_iterations=1000))
    pr = res.ranks

    assert res.iterations >= 1
    assert len(pr) == n
    assert all(v > 0 for v in pr.values())

    s = sum(pr.values())
    assert abs(s - 1.0) < 1e-6

    order = sorted(range(n), key=lambda i: pr[i], reverse=True)
    assert order[0] == 2
    assert order[-1] == 3


# options

def test_options_defaults():
    o = PagerankOptions()
    assert o.damping == 0.85
    assert o.tolerance == 1e-10
    assert o.max_iterations == 500
    assert o.tolerance_norm == "L1"
    assert not o.dead_ends and not o.asynchronous


@pytest.mark.parametrize(
    "kwargs",
    [
        {"damping": 0.0},
        {"damping": 1.0},
        {"tolerance": -1e-3},
        {"max_iterations": 0},
        {"tolerance_norm": "L3"},
        {"threads": 0},
        {"repeat": 0},
    ],
)
def test_options_reject_invalid_values(kwargs):
    with pytest.raises(ValueError):
        PagerankOptions(**kwargs)


def test_options_from_env():
    env = {
        "PAGERANK_DAMPING": "0.5",
        "PAGERANK_MAX_ITERATIONS": "20",
        "PAGERANK_TOLERANCE_NORM": "li",
        "PAGERANK_DEAD_ENDS": "true",
        "PAGERANK_ASYNC": "0",
        "PAGERANK_THREADS": " ",
    }
    o = options_from_env(env, threads=2)

    assert o.damping == 0.5
    assert o.max_iterations == 20
    assert o.tolerance_norm == "LI"
    assert o.dead_ends is True
    assert o.asynchronous is False
    assert o.threads == 2
    assert o.tolerance == 1e-10


def test_options_from_env_invalid_value_raises():
    with pytest.raises(ValueError):
        options_from_env({"PAGERANK_DAMPING": "1.5"})


# workers

def test_partition_range_is_contiguous_and_disjoint():
    parts = partition_range(3, 10, 4)
    assert parts == [(3, 3), (6, 3), (9, 2), (11, 2)]

    parts = partition_range(0, 2, 4)
    assert [n for _, n in parts] == [1, 1, 0, 0]
    assert sum(n for _, n in parts) == 2


def test_thread_infos_are_fresh():
    threads = thread_infos(3)
    assert [t.id for t in threads] == [0, 1, 2]
    assert crashed_count(threads) == 0
    threads[1].crashed = True
    assert crashed_count(threads) == 1
    assert crashed_count(thread_infos(3)) == 0


def test_rank_buffers_swap_without_copy():
    a, r = np.zeros(2), np.ones(2)
    bufs = RankBuffers(a, r, np.zeros(2), np.zeros(2))

    assert bufs.current is a and bufs.previous is r
    bufs.swap()
    assert bufs.current is r and bufs.previous is a
    assert bufs.final(asynchronous=False) is a
    assert bufs.final(asynchronous=True) is r


# services

def test_error_norms():
    a = np.array([0.1, 0.5, 0.4])
    r = np.array([0.2, 0.2, 0.6])

    assert pagerank_error(a, r, "L1", 0, 3) == pytest.approx(0.6)
    assert pagerank_error(a, r, "L2", 0, 3) == pytest.approx(np.sqrt(0.01 + 0.09 + 0.04))
    assert pagerank_error(a, r, "LI", 0, 3) == pytest.approx(0.3)
    assert pagerank_error(a, r, "L1", 1, 0) == 0.0


@pytest.mark.parametrize("norm", ["L1", "L2", "LI"])
def test_partial_errors_combine_to_whole(norm):
    rng = np.random.default_rng(7)
    a, r = rng.random(11), rng.random(11)
    partials = [pagerank_error_partial(a, r, norm, i, n) for i, n in partition_range(0, 11, 3)]

    assert combine_error(partials, norm) == pytest.approx(pagerank_error(a, r, norm, 0, 11))


def test_teleport_spreads_dead_end_mass():
    r = np.array([0.5, 0.3, 0.2])
    vdeg = np.array([0, 1, 0])

    assert dead_end_mass(r, vdeg, 0, 3) == pytest.approx(0.7)
    assert dead_end_mass(r, vdeg, 1, 2) == pytest.approx(0.2)
    assert pagerank_teleport(r, vdeg, 0.85, 3) == pytest.approx(0.15 / 3 + 0.85 * 0.7 / 3)


def test_factor_is_zero_for_dead_ends():
    f = np.full(3, -1.0)
    pagerank_factor(f, np.array([2, 0, 1]), 0.8, 0, 3)
    assert f.tolist() == pytest.approx([0.4, 0.0, 0.8])


def test_csr_arrays_from_transpose():
    xt = DiGraph.from_outlinks({"a": ["b", "c"], "b": ["c"], "c": []}).transpose()
    ks = xt.vertex_keys()
    index = vertex_index(ks)

    xv = source_offsets(xt, ks)
    xe = destination_indices(xt, ks, index)

    assert xv.tolist() == [0, 0, 1, 3]
    assert sorted(xe[xv[2]:xv[3]].tolist()) == [0, 1]
    assert out_degrees(xt, ks).tolist() == [2, 1, 0]


def test_calculate_ranks_only_touches_affected():
    xt = DiGraph.from_edges([(0, 1), (1, 2), (2, 0)]).transpose()
    ks = xt.vertex_keys()
    xv = source_offsets(xt, ks)
    xe = destination_indices(xt, ks, vertex_index(ks))
    a = np.array([9.0, 9.0, 9.0])
    c = np.array([0.1, 0.2, 0.3])
    thread = ThreadInfo(0)
    seen = []

    pagerank_calculate_ranks(a, c, xv, xe, 0.05, 0, 3, thread, lambda t, v: seen.append(v), lambda v: v != 1)

    assert a.tolist() == pytest.approx([0.35, 9.0, 0.25])
    assert seen == [0, 2]
    assert thread.processed == 2


def test_calculate_ranks_refreshes_contribution_in_place():
    xt = DiGraph.from_edges([(0, 1), (1, 2), (2, 0)]).transpose()
    ks = xt.vertex_keys()
    xv = source_offsets(xt, ks)
    xe = destination_indices(xt, ks, vertex_index(ks))
    a = np.zeros(3)
    c = np.array([0.1, 0.2, 0.3])
    f = np.full(3, 0.5)

    pagerank_calculate_ranks(a, c, xv, xe, 0.0, 0, 3, ThreadInfo(0), None, lambda v: True, f)

    # vertex 1 reads vertex 0's contribution from this same sweep
    assert a[0] == pytest.approx(0.3)
    assert a[1] == pytest.approx(0.15)
    assert a[2] == pytest.approx(0.075)
    assert c.tolist() == pytest.approx([0.15, 0.075, 0.0375])


# affected vertices

@pytest.fixture
def two_region_graph() -> DiGraph:
    # 6-7-8 feed into 1, nothing flows back
    return DiGraph.from_edges([
        (1, 2), (2, 3), (3, 1), (1, 4), (4, 5), (5, 4),
        (6, 7), (7, 8), (8, 6), (8, 1),
    ])


def test_affected_by_insertion_includes_new_reach(two_region_graph):
    x = two_region_graph
    y = x.apply_batch([], [(2, 1)])

    assert pagerank_affected_vertices_traversal(x, [], [(2, 1)], y) == {1, 2, 3, 4, 5}


def test_affected_uses_post_change_graph():
    x = DiGraph.from_edges([(1, 2), (3, 4)])
    y = x.apply_batch([], [(2, 3)])

    assert pagerank_affected_vertices_traversal(x, [], [(2, 3)]) == {2}
    assert pagerank_affected_vertices_traversal(x, [], [(2, 3)], y) == {2, 3, 4}


def test_affected_by_deletion_and_new_vertices(two_region_graph):
    x = two_region_graph
    y = x.apply_batch([(8, 1)], [(9, 6)])
    vaff = pagerank_affected_vertices_traversal(x, [(8, 1)], [(9, 6)], y)

    assert {8, 6, 7, 1, 2, 3, 4, 5, 9} == vaff


def test_affected_empty_batch():
    x = DiGraph.from_edges([(1, 2)])
    assert pagerank_affected_vertices_traversal(x, [], [], x) == set()


def test_affects_all_when_vertex_added(two_region_graph):
    x = two_region_graph
    y = x.apply_batch([], [(9, 1)])
    vaff = pagerank_affected_vertices_traversal(x, [], [(9, 1)], y)

    assert pagerank_affects_all(x.transpose(), y.transpose(), vaff, dead_ends=False)


@pytest.mark.parametrize("deletions, insertions", [([(5, 4)], []), ([], [(6, 4)])])
def test_affects_all_when_dead_end_touched(deletions, insertions):
    # 5 is a dead end only after deleting (5, 4); 3 stays a dead end throughout
    x = DiGraph.from_edges([(1, 2), (2, 1), (4, 5), (5, 4), (6, 3)])
    y = x.apply_batch(deletions, insertions)
    xt, yt = x.transpose(), y.transpose()
    vaff = pagerank_affected_vertices_traversal(x, deletions, insertions, y)

    assert pagerank_affects_all(xt, yt, vaff, dead_ends=True)
    assert not pagerank_affects_all(xt, yt, vaff, dead_ends=False)


def test_affects_all_dead_end_removed():
    x = DiGraph.from_edges([(1, 2), (2, 1), (1, 3)])
    y = x.apply_batch([], [(3, 1)])
    vaff = pagerank_affected_vertices_traversal(x, [], [(3, 1)], y)

    assert pagerank_affects_all(x.transpose(), y.transpose(), vaff, dead_ends=True)


def test_affects_all_not_when_dead_ends_unreached(two_region_graph):
    x = two_region_graph.copy()
    x.add_edge(6, 10)
    y = x.apply_batch([], [(2, 1)])
    vaff = pagerank_affected_vertices_traversal(x, [], [(2, 1)], y)

    assert 10 not in vaff
    assert not pagerank_affects_all(x.transpose(), y.transpose(), vaff, dead_ends=True)


# logging

def test_driver_logs_json_events(caplog):
    xt = DiGraph.from_edges([(1, 2), (2, 1)]).transpose()
    with caplog.at_level(logging.INFO, logger="pagerank"):
        res = pagerank_basic_seq(xt)

    events = [json.loads(rec.getMessage()) for rec in caplog.records if rec.name == "pagerank"]
    kinds = [e["event_type"] for e in events]
    assert kinds == ["pagerank_start", "pagerank_done"]
    assert events[0]["vertices"] == 2
    assert events[1]["iterations"] == res.iterations
    assert events[1]["crashed"] == 0
