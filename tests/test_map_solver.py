"""Local-search MAP inference."""

import logging
import random

import pytest

from graphinfer import (
    UNKNOWN_LABEL,
    FactorFeature,
    FeatureIndex,
    GraphInference,
    InferenceConfig,
    MapSolver,
    PairwiseFeature,
)


class BlockingChecker:
    """Nodes of type "blocked" have no legal label; "only7" may only be 7."""

    def permissible_labels(self, node):
        if node.type == "blocked":
            return set()
        if node.type == "only7":
            return {7}
        if node.candidates is not None:
            return set(node.candidates)
        return None


def _random_model(seed, n_nodes=6, labels=(0, 1, 2, 3), max_passes=1000):
    rng = random.Random(seed)
    gi = GraphInference(InferenceConfig(max_passes=max_passes))
    qb = gi.create_query()
    for _ in range(n_nodes):
        qb.add_node(candidates=labels)
    for _ in range(n_nodes + 2):
        qb.add_arc(rng.randrange(n_nodes), rng.randrange(n_nodes), rng.randrange(2))
    qb.add_factor(rng.sample(range(n_nodes), 3))
    for la in labels:
        for lb in labels:
            for t in range(2):
                gi.store.set(PairwiseFeature(la, lb, t), rng.uniform(-2, 2))
    for x in labels:
        for y in labels:
            for z in labels:
                if x <= y <= z:
                    gi.store.set(FactorFeature.of([x, y, z]), rng.uniform(-2, 2))
    gi.prepare_for_inference()
    return gi, qb.build()


def test_two_node_example(gi, chain):
    gi.store.set(PairwiseFeature(1, 1, 0), 5.0)
    gi.store.set(PairwiseFeature(2, 2, 0), 1.0)
    gi.prepare_for_inference()
    q = chain(gi, 2)
    a = gi.create_assignment(q)
    report = gi.map_inference(q, a)
    assert a.labels == [1, 1]
    assert a.score == 5.0
    assert report.final_score == 5.0


def test_chain_prefers_joint_best(gi, chain):
    gi.store.set(PairwiseFeature(1, 2, 0), 3.0)
    gi.store.set(PairwiseFeature(2, 1, 0), 2.0)
    gi.store.set(PairwiseFeature(2, 2, 0), 1.0)
    gi.prepare_for_inference()
    q = chain(gi, 3)
    a = gi.create_assignment(q)
    gi.map_inference(q, a)
    assert a.labels == [1, 2, 1]
    assert a.score == 5.0


def test_given_nodes_are_never_moved_and_guide_neighbours(gi):
    gi.store.set(PairwiseFeature(7, 3, 0), 2.0)
    gi.store.set(PairwiseFeature(7, 4, 0), 1.0)
    gi.prepare_for_inference()
    qb = gi.create_query()
    qb.add_node()
    qb.add_node()
    qb.add_arc(0, 1, 0)
    q = qb.build()
    a = gi.create_assignment(q)
    a.set_given(0, 7)
    gi.map_inference(q, a)
    assert a.labels == [7, 3]
    assert a.is_given(0)


def test_factor_proposals_complete_a_factor(gi):
    gi.store.set(FactorFeature.of([1, 2, 3]), 4.0)
    gi.prepare_for_inference()
    qb = gi.create_query()
    for _ in range(3):
        qb.add_node()
    qb.add_factor([0, 1, 2])
    q = qb.build()
    a = gi.create_assignment(q)
    gi.map_inference(q, a)
    assert a.labels == [1, 2, 3]
    assert a.score == 4.0


def test_factor_pass_escapes_a_labeling_node_moves_cannot_improve(gi):
    gi.store.set(FactorFeature.of([1, 2, 3]), 4.0)
    gi.prepare_for_inference()
    qb = gi.create_query()
    for _ in range(3):
        qb.add_node()
    qb.add_factor([0, 1, 2])
    q = qb.build()
    a = gi.create_assignment(q)
    a.set_labels({0: 5, 1: 5, 2: 5})
    report = gi.map_inference(q, a)
    assert a.labels == [1, 2, 3]
    assert report.moves == 1


def test_empty_permissible_set_pins_unknown():
    solver = MapSolver(FeatureIndex(), BlockingChecker(), InferenceConfig())
    gi = GraphInference(checker=BlockingChecker())
    qb = gi.create_query()
    qb.add_node(type="blocked", candidates=[1, 2])
    qb.add_node(candidates=[1, 2])
    qb.add_arc(0, 1, 0)
    q = qb.build()
    a = gi.create_assignment(q)
    report = solver.solve(a)
    assert a.labels[0] == UNKNOWN_LABEL
    assert a.labels[1] == 1
    assert report.pinned_unknown == 1


def test_labeled_node_with_empty_permissible_set_is_pinned():
    gi = GraphInference(checker=BlockingChecker())
    gi.store.set(PairwiseFeature(1, 1, 0), 3.0)
    qb = gi.create_query()
    qb.add_node(type="blocked", candidates=[1, 2])
    qb.add_node(candidates=[1, 2])
    qb.add_arc(0, 1, 0)
    q = qb.build()
    a = gi.create_assignment(q)
    a.set_labels({0: 1, 1: 1})
    report = gi.map_solver().solve(a)
    assert a.labels[0] == UNKNOWN_LABEL
    assert report.pinned_unknown == 1
    assert a.score == pytest.approx(a.total_score())


def test_solve_starts_from_current_weights(gi, chain):
    q = chain(gi, 2)
    a = gi.create_assignment(q)
    a.set_labels({0: 1, 1: 1})
    gi.store.set(PairwiseFeature(1, 1, 0), 5.0)
    report = gi.map_solver().solve(a)
    assert report.initial_score == 5.0
    assert a.labels == [1, 1]
    assert a.score == 5.0


def test_fallback_uses_most_frequent_permissible_label():
    gi = GraphInference(checker=BlockingChecker())
    gi.label_frequency.update({7: 3, 4: 5})
    gi.prepare_for_inference()
    qb = gi.create_query()
    qb.add_node()
    qb.add_node(type="only7")
    q = qb.build()
    a = gi.create_assignment(q)
    gi.map_inference(q, a)
    assert a.labels == [4, 7]


@pytest.mark.parametrize("seed", range(8))
def test_solve_is_monotone_and_idempotent(seed):
    gi, q = _random_model(seed)
    a = gi.create_assignment(q)
    report = gi.map_inference(q, a)
    assert all(d > 0.0 for d in report.accepted_deltas)
    assert a.score == pytest.approx(a.total_score())
    labels = list(a.labels)

    again = gi.map_inference(q, a)
    assert again.moves == 0
    assert a.labels == labels


@pytest.mark.parametrize("seed", range(8))
def test_result_is_a_local_optimum_over_candidates(seed):
    gi, q = _random_model(seed)
    a = gi.create_assignment(q)
    gi.map_inference(q, a)
    eps = gi.config.min_improvement
    for node in range(q.num_nodes):
        for lab in q.nodes[node].candidates:
            if lab != a.labels[node]:
                assert a.score_delta({node: lab}) <= eps


def test_disabling_arc_and_factor_moves(chain):
    gi = GraphInference(InferenceConfig(enable_arc_moves=False, enable_factor_moves=False))
    gi.store.set(PairwiseFeature(1, 1, 0), 5.0)
    gi.prepare_for_inference()
    q = chain(gi, 2)
    a = gi.create_assignment(q)
    gi.map_inference(q, a)
    assert a.labels == [1, 1]


def test_stale_index_is_logged(gi, chain, gold, caplog):
    gi.prepare_for_inference()
    q = chain(gi, 2)
    g = gold(gi, q, [1, 1])
    gi.ssvm_learn(q, g, 0.1)
    a = gi.create_assignment(q)
    with caplog.at_level(logging.WARNING, logger="graphinfer.graph_inference"):
        gi.map_inference(q, a)
    assert any("stale" in r.getMessage() for r in caplog.records)

    caplog.clear()
    gi.prepare_for_inference()
    with caplog.at_level(logging.WARNING, logger="graphinfer.graph_inference"):
        gi.map_inference(q, gi.create_assignment(q))
    assert not caplog.records


def test_map_inference_rejects_foreign_assignment(gi, chain):
    q1 = chain(gi, 2)
    q2 = chain(gi, 2)
    with pytest.raises(ValueError):
        gi.map_inference(q1, gi.create_assignment(q2))


def test_proposals_are_capped(chain):
    gi = GraphInference(InferenceConfig(max_label_proposals=2))
    for b in range(10):
        gi.store.set(PairwiseFeature(1, b, 0), float(b))
    gi.prepare_for_inference()
    q = chain(gi, 2, candidates=None)
    a = gi.create_assignment(q)
    a.set_given(0, 1)
    props = gi.map_solver().proposals(a, 1, None)
    assert props == [9, 8]
