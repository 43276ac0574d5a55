"""Structured SVM learning, including concurrent (Hogwild) use."""

import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from graphinfer import PairwiseFeature, PrecisionStats, SSVMLearner


def test_single_update_moves_gold_up_and_violator_down(gi, chain, gold):
    gi.ssvm_init(1.0)
    gi.prepare_for_inference()
    q = chain(gi, 2)
    g = gold(gi, q, [1, 1])

    upd = gi.ssvm_learn(q, g, 0.1)

    assert upd.violator.labels == [2, 2]
    assert gi.store.get(PairwiseFeature(1, 1, 0)) == pytest.approx(0.1)
    assert gi.store.get(PairwiseFeature(2, 2, 0)) == pytest.approx(-0.1)
    assert upd.num_increased == 1
    assert upd.num_decreased == 1
    assert upd.violator.penalties == {}
    assert upd.violator_score == pytest.approx(-0.1)


def test_update_widens_gap_by_learning_rate_times_difference(gi, chain, gold):
    gi.ssvm_init(1.0)
    gi.prepare_for_inference()
    q = chain(gi, 2)
    g = gold(gi, q, [1, 1])

    violator = SSVMLearner(gi.store, gi.map_solver(), 1.0).loss_augmented(g)
    violator.clear_penalties()
    before = g.total_score() - violator.total_score()
    diff = sum(((g.active_features() - violator.active_features()) + (violator.active_features() - g.active_features())).values())

    lr = 0.1
    gi.ssvm_learn(q, g, lr)
    after = g.total_score() - violator.total_score()
    assert after - before >= lr * diff - 1e-12


def test_no_update_when_gold_wins_by_margin(gi, chain, gold):
    gi.store.set(PairwiseFeature(1, 1, 0), 5.0)
    gi.ssvm_init(1.0)
    gi.prepare_for_inference()
    q = chain(gi, 2)
    g = gold(gi, q, [1, 1])
    upd = gi.ssvm_learn(q, g, 0.1)
    assert upd.violator.labels == [1, 1]
    assert upd.num_increased == upd.num_decreased == 0
    assert gi.store.get(PairwiseFeature(1, 1, 0)) == 5.0


def test_stats_are_recorded(gi, chain, gold):
    gi.ssvm_init(1.0)
    gi.prepare_for_inference()
    q = chain(gi, 2)
    g = gold(gi, q, [1, 1])
    stats = PrecisionStats()
    gi.ssvm_learn(q, g, 0.1, stats)
    assert stats.correct_labels == 0
    assert stats.incorrect_labels == 2
    assert stats.num_known_predictions == 2


def test_gold_for_another_query_is_rejected(gi, chain, gold):
    q1 = chain(gi, 2)
    q2 = chain(gi, 2)
    with pytest.raises(ValueError):
        gi.ssvm_learn(q1, gold(gi, q2, [1, 1]), 0.1)


def test_concurrent_learning_keeps_weights_finite(gi, chain, gold):
    rng = random.Random(3)
    examples = []
    for _ in range(40):
        n = rng.randrange(2, 6)
        q = chain(gi, n, candidates=(1, 2, 3))
        examples.append((q, gold(gi, q, [rng.choice((1, 2, 3)) for _ in range(n)])))
    for q, g in examples:
        gi.add_query_to_model(q, g)
    gi.initialize_feature_weights(0.0)
    gi.ssvm_init(0.5)
    gi.prepare_for_inference()

    stats = PrecisionStats()
    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [pool.submit(gi.ssvm_learn, q, g, 0.05, stats) for q, g in examples * 3]
        for fut in futures:
            fut.result()

    gi.prepare_for_inference()
    assert gi.store.all_finite()
    assert all(isinstance(k, PairwiseFeature) for k, _ in gi.store.items())
    total = stats.correct_labels + stats.incorrect_labels
    assert total == 3 * sum(q.num_nodes for q, _ in examples)
