# graphinfer/ssvm.py
# -*- coding: utf-8 -*-

"""
Margin-rescaled structured SVM learning (one online subgradient step).

For a training pair (query, gold):
  1) copy gold, clear the inferred labels, and give every inferred node's gold
     label a -margin penalty: every wrong label looks `margin` better than it
     is, so the solver is pushed toward a genuinely violating assignment;
  2) run the MAP solver on that loss-augmented copy;
  3) take the multiset difference of active features:
       gold-only features      += learning_rate * count
       violator-only features  -= learning_rate * count
     through WeightStore.add_delta().

Safe for Hogwild use: many workers may call learn() at once on disjoint
examples against one WeightStore. It must not overlap with index rebuilds,
model load/save or pseudo-likelihood learning.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .map_solver import MapSolver
from .query import Assignment, Query
from .stats import PrecisionStats
from .weights import WeightStore


@dataclass
class SSVMUpdate:
    num_increased: int = 0
    num_decreased: int = 0
    violator_score: float = 0.0
    violator: Optional[Assignment] = None


class SSVMLearner:
    def __init__(self, store: WeightStore, solver: MapSolver, margin: float):
        self.store = store
        self.solver = solver
        self.margin = float(margin)

    def loss_augmented(self, gold: Assignment) -> Assignment:
        a = gold.copy()
        a.penalties = {}
        a.clear_inferred()
        for n in a.inferred_nodes():
            lab = gold.labels[n]
            if lab != gold.unknown_label:
                a.add_penalty(n, lab, -self.margin)
        self.solver.solve(a)
        return a

    def learn(
        self,
        query: Query,
        gold: Assignment,
        learning_rate: float,
        stats: Optional[PrecisionStats] = None,
    ) -> SSVMUpdate:
        if gold.query is not query:
            raise ValueError("gold assignment was created for a different query")

        violator = self.loss_augmented(gold)

        if stats is not None:
            correct = incorrect = known = 0
            for n in gold.inferred_nodes():
                if gold.labels[n] == gold.unknown_label:
                    continue
                pred = violator.labels[n]
                if pred != gold.unknown_label:
                    known += 1
                if pred == gold.labels[n]:
                    correct += 1
                else:
                    incorrect += 1
            stats.add(correct, incorrect, known)

        gold_f = gold.active_features()
        viol_f = violator.active_features()
        plus = gold_f - viol_f
        minus = viol_f - gold_f
        lr = float(learning_rate)
        for key, count in plus.items():
            self.store.add_delta(key, lr * count)
        for key, count in minus.items():
            self.store.add_delta(key, -lr * count)

        violator.penalties = {}
        violator.recompute_score()
        return SSVMUpdate(
            num_increased=len(plus),
            num_decreased=len(minus),
            violator_score=violator.score,
            violator=violator,
        )


__all__ = ["SSVMUpdate", "SSVMLearner"]
