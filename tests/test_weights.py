"""WeightStore / LockFreeWeight behaviour, including Hogwild writers."""

import math
import threading

import pytest

from graphinfer import FactorFeature, GraphInference, LockFreeWeight, PairwiseFeature, WeightStore
from graphinfer.weights import PENDING_LIMIT


def test_missing_key_reads_zero_and_is_not_created():
    store = WeightStore()
    key = PairwiseFeature(1, 2, 0)
    assert store.get(key) == 0.0
    assert key not in store
    assert len(store) == 0


def test_add_delta_creates_lazily_and_accumulates():
    store = WeightStore()
    key = FactorFeature.of([1, 2])
    store.add_delta(key, 0.5)
    store.add_delta(key, -0.25)
    assert key in store
    assert store.get(key) == 0.25


def test_set_overrides_pending_deltas():
    store = WeightStore()
    key = PairwiseFeature(1, 1, 0)
    store.add_delta(key, 3.0)
    store.set(key, 1.0)
    assert store.get(key) == 1.0


def test_fold_keeps_value():
    cell = LockFreeWeight(1.0)
    for _ in range(10):
        cell.add(0.1)
    before = cell.value
    cell.fold()
    assert math.isclose(cell.value, before)
    assert math.isclose(cell.value, 2.0)


def test_register_makes_key_enumerable_at_zero():
    store = WeightStore()
    store.register(PairwiseFeature(3, 4, 1))
    assert list(store.items()) == [(PairwiseFeature(3, 4, 1), 0.0)]


def test_items_split_by_kind():
    store = WeightStore()
    store.set(PairwiseFeature(1, 2, 0), 1.0)
    store.set(FactorFeature.of([1, 2, 3]), 2.0)
    assert [k for k, _ in store.pairwise_items()] == [PairwiseFeature(1, 2, 0)]
    assert [k for k, _ in store.factor_items()] == [FactorFeature.of([1, 2, 3])]


def test_concurrent_add_delta_reflects_every_delta():
    store = WeightStore()
    keys = [PairwiseFeature(i % 3, 0, 0) for i in range(6)]
    n_threads, n_iter = 8, 2000
    barrier = threading.Barrier(n_threads)

    def worker():
        barrier.wait()
        for i in range(n_iter):
            store.add_delta(keys[i % len(keys)], 1.0)

    threads = [threading.Thread(target=worker) for _ in range(n_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    total = sum(w for _, w in store.items())
    assert total == n_threads * n_iter
    assert len(store) == 3
    assert store.all_finite()


def test_pending_list_is_compacted_and_value_stays_exact():
    cell = LockFreeWeight(0.5)
    for _ in range(5000):
        cell.add(0.25)
        assert cell.pending_count < PENDING_LIMIT
    assert cell.value == 0.5 + 5000 * 0.25


def test_repeated_ssvm_updates_without_prepare_stay_bounded(chain, gold):
    gi = GraphInference()
    gi.ssvm_init(1e9)
    gi.prepare_for_inference()
    q = chain(gi, 2)
    g = gold(gi, q, [1, 1])
    for _ in range(1000):
        gi.ssvm_learn(q, g, 0.01)
    assert gi.store.get(PairwiseFeature(1, 1, 0)) == pytest.approx(10.0)
    assert gi.store.pending_deltas() < 2 * PENDING_LIMIT
