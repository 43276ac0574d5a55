# graphinfer/training.py
# -*- coding: utf-8 -*-

"""
Epoch drivers.

train_ssvm: Hogwild SSVM. Each epoch shuffles the examples, splits them into
            `num_workers` disjoint shards and runs every shard on its own
            thread against the shared WeightStore. Between epochs (no worker
            running) the store is folded and the index rebuilt, then the
            learning rate is decayed.
train_pl:   the same loop for pseudo-likelihood, strictly serial.
evaluate:   MAP inference on a cleared copy of each gold assignment.
"""

from __future__ import annotations

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple

from .graph_inference import GraphInference
from .query import Assignment, Query
from .stats import PrecisionStats


_logger = logging.getLogger(__name__)

Example = Tuple[Query, Assignment]


def _shards(items: Sequence[Example], n: int) -> List[List[Example]]:
    n = max(1, int(n))
    return [list(items[i::n]) for i in range(n)]


def _run_shard(inference: GraphInference, shard: List[Example], lr: float, stats: PrecisionStats) -> int:
    for query, gold in shard:
        inference.ssvm_learn(query, gold, lr, stats)
    return len(shard)


def train_ssvm(
    inference: GraphInference,
    examples: Sequence[Example],
    epochs: int = 5,
    learning_rate: float = 0.1,
    num_workers: int = 4,
    decay: float = 0.5,
    seed: int = 42,
) -> List[PrecisionStats]:
    rng = random.Random(int(seed))
    order = list(examples)
    history: List[PrecisionStats] = []
    lr = float(learning_rate)

    inference.prepare_for_inference()
    for ep in range(int(epochs)):
        t0 = time.time()
        rng.shuffle(order)
        stats = PrecisionStats()
        shards = [s for s in _shards(order, num_workers) if s]
        if len(shards) <= 1:
            for shard in shards:
                _run_shard(inference, shard, lr, stats)
        else:
            with ThreadPoolExecutor(max_workers=len(shards)) as pool:
                futures = [pool.submit(_run_shard, inference, shard, lr, stats) for shard in shards]
                for fut in futures:
                    fut.result()
        inference.prepare_for_inference()
        history.append(stats)
        _logger.info(
            "[ssvm %d/%d] lr=%.4g examples=%d precision=%.4f (%d/%d) %.2fs",
            ep + 1, int(epochs), lr, len(order), stats.precision,
            stats.correct_labels, stats.correct_labels + stats.incorrect_labels, time.time() - t0,
        )
        lr *= float(decay)
    return history


def train_pl(
    inference: GraphInference,
    examples: Sequence[Example],
    epochs: int = 5,
    learning_rate: float = 0.1,
    decay: float = 0.5,
    seed: int = 42,
) -> List[float]:
    rng = random.Random(int(seed))
    order = list(examples)
    history: List[float] = []
    lr = float(learning_rate)

    inference.prepare_for_inference()
    for ep in range(int(epochs)):
        rng.shuffle(order)
        total_ll = 0.0
        for query, gold in order:
            total_ll += inference.pl_learn(query, gold, lr).log_likelihood
        inference.prepare_for_inference()
        history.append(total_ll)
        _logger.info("[pl %d/%d] lr=%.4g pseudo-log-likelihood=%.6g", ep + 1, int(epochs), lr, total_ll)
        lr *= float(decay)
    return history


def evaluate(
    inference: GraphInference,
    examples: Sequence[Example],
    stats: Optional[PrecisionStats] = None,
) -> PrecisionStats:
    stats = stats if stats is not None else PrecisionStats()
    for query, gold in examples:
        pred = gold.copy()
        pred.penalties = {}
        pred.clear_inferred()
        inference.map_inference(query, pred)
        inference.update_stats(gold, pred, stats)
    return stats


__all__ = ["Example", "train_ssvm", "train_pl", "evaluate"]
