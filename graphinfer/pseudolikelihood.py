# graphinfer/pseudolikelihood.py
# -*- coding: utf-8 -*-

"""
Pseudo-likelihood learning with a bounded beam.

For each inferred node i (all other nodes held at their gold labels):
  beam    = gold label + top-B proposals (FeatureIndex driven) by local score
  p(l)    = softmax over the beam of local_score(i, l)
  grad_f += sum_l (1[l == gold] - p(l)) * count_f(i, l)

Gradients of all nodes of one query are accumulated against the weights as
they were when the call started, then applied once per touched feature:
  w_f <- w_f + lr * (grad_f - regularization * w_f)

Writes use WeightStore.set(), so this learner is single-threaded: callers must
serialize it against itself and against SSVM workers.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List

import numpy as np

from .map_solver import MapSolver
from .query import Assignment, Query
from .weights import FeatureKey, WeightStore


@dataclass
class PLUpdate:
    nodes: int = 0
    log_likelihood: float = 0.0
    touched_features: int = 0


def _softmax(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    m = np.max(x)
    e = np.exp(x - m)
    return e / np.clip(np.sum(e), 1e-300, None)


class PseudoLikelihoodLearner:
    def __init__(self, store: WeightStore, solver: MapSolver, beam_size: int, regularization: float = 0.0):
        self.store = store
        self.solver = solver
        self.beam_size = int(beam_size)
        self.regularization = float(regularization)

    def beam(self, gold: Assignment, node: int) -> List[int]:
        allowed = self.solver.checker.permissible_labels(gold.query.nodes[node])
        if allowed is not None:
            allowed = set(allowed)
        cands = self.solver.proposals(gold, node, allowed)
        scored = sorted(cands, key=lambda lab: (-gold.local_score(node, lab), lab))
        out = scored[: self.beam_size]
        g = gold.labels[node]
        if g not in out:
            out.append(g)
        return out

    def learn(self, query: Query, gold: Assignment, learning_rate: float) -> PLUpdate:
        if gold.query is not query:
            raise ValueError("gold assignment was created for a different query")

        report = PLUpdate()
        grad: Dict[FeatureKey, float] = defaultdict(float)
        for node in gold.inferred_nodes():
            g = gold.labels[node]
            if g == gold.unknown_label:
                continue
            labels = self.beam(gold, node)
            scores = np.array([gold.local_score(node, lab) for lab in labels], dtype=np.float64)
            p = _softmax(scores)
            report.nodes += 1
            report.log_likelihood += float(np.log(max(p[labels.index(g)], 1e-300)))
            if len(labels) == 1:
                continue
            for lab, pl in zip(labels, p.tolist()):
                coef = (1.0 if lab == g else 0.0) - pl
                if coef == 0.0:
                    continue
                for key, count in gold.incident_features(node, lab).items():
                    grad[key] += coef * count

        lr = float(learning_rate)
        reg = self.regularization
        for key, gval in grad.items():
            w = self.store.get(key)
            self.store.set(key, w + lr * (gval - reg * w))
        report.touched_features = len(grad)
        return report


__all__ = ["PLUpdate", "PseudoLikelihoodLearner"]
