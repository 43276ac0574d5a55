# graphinfer/loopy_bp.py
# -*- coding: utf-8 -*-

"""
Loopy belief propagation (max-product, run in the log domain as max-sum).

Message graph (bipartite):
  variables  inferred nodes with a non-empty domain
  factors    arcs between two variables, and query factors with >= 2
             variable members; connectivity is exactly the factor's node set

Terms that touch a single variable (arcs to labeled non-variables, self loops,
factors whose other members are all labeled, loss-augmentation penalties) are
folded into that variable's unary vector.

Domains: explicit candidates (filtered by the label checker), else the current
label, then the labels the feature index proposes from known neighbours, then
the most frequent permissible labels. Given nodes are clamped and never become
variables. Only nodes whose permissible set is empty are pinned to unknown;
other nodes left without a domain keep their current label.

Factors whose joint domain is larger than bp_max_factor_states are not
tabulated; their outgoing messages condition on the other members' current
argmax.

The graph is loopy, so there is no convergence guarantee. Every round is
decoded and scored exactly; the best decoded assignment is kept and written
back to the caller's Assignment.

Scoring reads weights only through the assignment's WeightsView; the feature
index (optional) only widens domains.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import product
from typing import Dict, List, Mapping, Optional, Set

import numpy as np

from .config import InferenceConfig
from .feature_index import FeatureIndex
from .features import FactorFeature, PairwiseFeature
from .map_solver import MapSolver
from .query import AllowAllChecker, Assignment, LabelChecker


_logger = logging.getLogger(__name__)


@dataclass
class BPReport:
    rounds: int = 0
    converged: bool = False
    best_round: int = -1
    best_score: float = float("-inf")
    max_change: float = float("inf")
    pinned_unknown: int = 0


@dataclass
class _BPFactor:
    vars: List[int]                     # positions in the variable list
    table: Optional[np.ndarray] = None  # dense log-potential, one axis per var
    # conditioned (non-tabulated) factors
    fixed_labels: List[int] = field(default_factory=list)


class LoopyBPSolver:
    def __init__(
        self,
        checker: Optional[LabelChecker] = None,
        config: Optional[InferenceConfig] = None,
        label_frequency: Optional[Mapping[int, int]] = None,
        index: Optional[FeatureIndex] = None,
    ):
        self.checker = checker if checker is not None else AllowAllChecker()
        self.cfg = config if config is not None else InferenceConfig()
        self.label_frequency: Mapping[int, int] = label_frequency if label_frequency is not None else {}
        self._frequent = sorted(self.label_frequency, key=lambda lab: (-self.label_frequency[lab], lab))
        self._proposer = MapSolver(index, self.checker, self.cfg, self.label_frequency) if index is not None else None

    # -----------------------------
    # Graph construction
    # -----------------------------

    def _domain(self, a: Assignment, node: int) -> Optional[List[int]]:
        """Sorted label domain of an inferred node, or None if nothing is permissible."""
        unknown = a.unknown_label
        allowed = self.checker.permissible_labels(a.query.nodes[node])
        if allowed is not None:
            allowed = {int(x) for x in allowed if int(x) != unknown}
            if not allowed:
                return None
        cands = a.query.nodes[node].candidates
        if cands is not None:
            return sorted(lab for lab in cands if lab != unknown and (allowed is None or lab in allowed))

        limit = int(self.cfg.bp_domain_size)
        order: List[int] = []
        if a.labels[node] != unknown:
            order.append(a.labels[node])
        if self._proposer is not None:
            order.extend(self._proposer.proposals(a, node, allowed))
        order.extend(self._frequent)
        if allowed is not None:
            order.extend(sorted(allowed))

        dom: Set[int] = set()
        for lab in order:
            if len(dom) >= limit:
                break
            if lab != unknown and (allowed is None or lab in allowed):
                dom.add(lab)
        return sorted(dom)

    def _build(self, a: Assignment):
        q = a.query
        w = a.weights
        unknown = a.unknown_label

        var_nodes: List[int] = []
        var_of: Dict[int, int] = {}
        domains: List[List[int]] = []
        blocked: List[int] = []
        for node in a.inferred_nodes():
            dom = self._domain(a, node)
            if dom is None:
                blocked.append(node)
                continue
            if not dom:
                continue
            var_of[node] = len(var_nodes)
            var_nodes.append(node)
            domains.append(dom)

        unary = [np.array([a.penalty(n, lab) for lab in domains[v]], dtype=np.float64)
                 for v, n in enumerate(var_nodes)]
        factors: List[_BPFactor] = []
        blocked_set = set(blocked)

        def fixed_label(node: int) -> Optional[int]:
            # current label of a non-variable node, or None if it is unknown or pinned
            if node in var_of or node in blocked_set:
                return None
            lab = a.labels[node]
            return None if lab == unknown else lab

        for arc in q.arcs:
            va = var_of.get(arc.a)
            vb = var_of.get(arc.b)
            if va is not None and vb is not None:
                if va == vb:
                    dom = domains[va]
                    unary[va] += np.array([w.get(PairwiseFeature(x, x, arc.type)) for x in dom])
                    continue
                tab = np.array(
                    [[w.get(PairwiseFeature(x, y, arc.type)) for y in domains[vb]] for x in domains[va]],
                    dtype=np.float64,
                )
                factors.append(_BPFactor(vars=[va, vb], table=tab))
            elif va is not None:
                lb = fixed_label(arc.b)
                if lb is not None:
                    unary[va] += np.array([w.get(PairwiseFeature(x, lb, arc.type)) for x in domains[va]])
            elif vb is not None:
                la = fixed_label(arc.a)
                if la is not None:
                    unary[vb] += np.array([w.get(PairwiseFeature(la, y, arc.type)) for y in domains[vb]])

        cap = int(self.cfg.bp_max_factor_states)
        for fac in q.factors:
            vs = [var_of[m] for m in fac.members if m in var_of]
            if not vs:
                continue
            fixed: List[int] = []
            inactive = False
            for m in fac.members:
                if m in var_of:
                    continue
                lab = fixed_label(m)
                if lab is None:
                    inactive = True
                    break
                fixed.append(lab)
            if inactive:
                continue
            if len(vs) == 1:
                v = vs[0]
                unary[v] += np.array([w.get(FactorFeature.of(fixed + [x])) for x in domains[v]])
                continue
            shape = tuple(len(domains[v]) for v in vs)
            if int(np.prod(shape)) <= cap:
                tab = np.empty(shape, dtype=np.float64)
                for idx in product(*[range(s) for s in shape]):
                    labs = fixed + [domains[v][i] for v, i in zip(vs, idx)]
                    tab[idx] = w.get(FactorFeature.of(labs))
                factors.append(_BPFactor(vars=vs, table=tab))
            else:
                factors.append(_BPFactor(vars=vs, fixed_labels=fixed))

        return var_nodes, domains, unary, factors, blocked

    # -----------------------------
    # Message passing
    # -----------------------------

    @staticmethod
    def _normalize(m: np.ndarray) -> np.ndarray:
        return m - np.max(m) if m.size else m

    def _factor_to_var(
        self,
        f: _BPFactor,
        k: int,
        incoming: List[np.ndarray],
        domains: List[List[int]],
        choice: List[int],
        weights,
    ) -> np.ndarray:
        if f.table is not None:
            t = f.table.copy()
            for j, msg in enumerate(incoming):
                if j == k:
                    continue
                shape = [1] * t.ndim
                shape[j] = msg.shape[0]
                t = t + msg.reshape(shape)
            axes = tuple(j for j in range(t.ndim) if j != k)
            return np.max(t, axis=axes) if axes else t

        v = f.vars[k]
        others = [domains[u][choice[u]] for j, u in enumerate(f.vars) if j != k]
        bonus = sum(float(incoming[j][choice[u]]) for j, u in enumerate(f.vars) if j != k)
        return np.array(
            [weights.get(FactorFeature.of(f.fixed_labels + others + [x])) + bonus for x in domains[v]],
            dtype=np.float64,
        )

    def solve(self, a: Assignment) -> BPReport:
        a.recompute_score()
        report = BPReport()
        var_nodes, domains, unary, factors, blocked = self._build(a)
        pinned = {n: a.unknown_label for n in blocked}
        report.pinned_unknown = len(pinned)
        if not var_nodes:
            a.set_labels(pinned)
            report.best_score = a.score
            report.converged = True
            return report

        nv = len(var_nodes)
        var_factors: List[List[tuple]] = [[] for _ in range(nv)]
        for fi, f in enumerate(factors):
            for k, v in enumerate(f.vars):
                var_factors[v].append((fi, k))

        v2f = [[np.zeros(len(domains[v])) for v in f.vars] for f in factors]
        f2v = [[np.zeros(len(domains[v])) for v in f.vars] for f in factors]
        damping = float(self.cfg.bp_damping)

        trial = a.copy()
        best_labels: Optional[Dict[int, int]] = None
        best_score = float("-inf")
        choice = [int(np.argmax(u)) for u in unary]

        for rnd in range(int(self.cfg.bp_max_rounds)):
            report.rounds = rnd + 1

            # variable -> factor
            for v in range(nv):
                total = unary[v].copy()
                for fi, k in var_factors[v]:
                    total += f2v[fi][k]
                for fi, k in var_factors[v]:
                    v2f[fi][k] = self._normalize(total - f2v[fi][k])

            # factor -> variable
            max_change = 0.0
            for fi, f in enumerate(factors):
                for k in range(len(f.vars)):
                    new = self._normalize(self._factor_to_var(f, k, v2f[fi], domains, choice, a.weights))
                    if damping > 0.0:
                        new = (1.0 - damping) * new + damping * f2v[fi][k]
                    if new.size:
                        max_change = max(max_change, float(np.max(np.abs(new - f2v[fi][k]))))
                    f2v[fi][k] = new

            # decode (np.argmax picks the lowest label on ties; domains are sorted)
            for v in range(nv):
                belief = unary[v].copy()
                for fi, k in var_factors[v]:
                    belief += f2v[fi][k]
                choice[v] = int(np.argmax(belief))
            labels = dict(pinned)
            labels.update({var_nodes[v]: domains[v][choice[v]] for v in range(nv)})
            trial.set_labels(labels)
            if trial.score > best_score:
                best_score = trial.score
                best_labels = labels
                report.best_round = rnd

            report.max_change = max_change
            if max_change < float(self.cfg.bp_tolerance):
                report.converged = True
                break

        if best_labels is not None:
            a.set_labels(best_labels)
        report.best_score = a.score
        _logger.debug(
            "loopy bp: vars=%d factors=%d rounds=%d converged=%s best_round=%d score=%.6g",
            nv, len(factors), report.rounds, report.converged, report.best_round, report.best_score,
        )
        return report


__all__ = ["BPReport", "LoopyBPSolver"]
