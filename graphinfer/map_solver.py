# graphinfer/map_solver.py
# -*- coding: utf-8 -*-

"""
Approximate MAP inference by local search.

Stage 0 (initial greedy pass):
  every inferred node that is still UNKNOWN gets, in node id order, the
  proposal with the best local score given the labels fixed so far; nodes
  without proposals fall back to their most frequent permissible label. Any
  inferred node whose permissible set is empty, labeled or not, is pinned to
  UNKNOWN. The cached score is recomputed before the pass.

Stage 1 (hill climbing), repeated until a full pass accepts no move or
max_passes is reached:
  - per-node moves: change one node to one of its proposals
  - per-arc moves: relabel both endpoints of an arc with a top feature of the
    arc's type
  - per-factor moves: complete a factor from a top factor feature consistent
    with its given members
  Every candidate move is scored exactly through Assignment.score_delta();
  only strictly improving moves are applied (ties: lowest label id; nodes,
  arcs and factors are visited in id order).

Proposals come from the FeatureIndex, so the set of moves is bounded and the
result is a local optimum, not the global one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import islice, permutations
from typing import Dict, List, Mapping, Optional, Sequence, Set

from .config import InferenceConfig
from .feature_index import FeatureIndex
from .query import AllowAllChecker, Assignment, LabelChecker


_logger = logging.getLogger(__name__)


@dataclass
class SolveReport:
    passes: int = 0
    moves: int = 0
    initial_score: float = 0.0
    final_score: float = 0.0
    pinned_unknown: int = 0
    accepted_deltas: List[float] = field(default_factory=list)


class MapSolver:
    def __init__(
        self,
        index: FeatureIndex,
        checker: Optional[LabelChecker] = None,
        config: Optional[InferenceConfig] = None,
        label_frequency: Optional[Mapping[int, int]] = None,
    ):
        self.index = index
        self.checker = checker if checker is not None else AllowAllChecker()
        self.cfg = config if config is not None else InferenceConfig()
        self.label_frequency: Mapping[int, int] = label_frequency if label_frequency is not None else {}

    # -----------------------------
    # Candidate generation
    # -----------------------------

    def _permissible(self, a: Assignment, cache: Dict[int, Optional[Set[int]]], node: int) -> Optional[Set[int]]:
        if node not in cache:
            allowed = self.checker.permissible_labels(a.query.nodes[node])
            if allowed is not None:
                allowed = {int(x) for x in allowed if int(x) != a.unknown_label}
            cache[node] = allowed
        return cache[node]

    def proposals(self, a: Assignment, node: int, allowed: Optional[Set[int]]) -> List[int]:
        """Labels worth trying at `node` given its neighbours' current labels."""
        q = a.query
        unknown = a.unknown_label
        seen: Dict[int, None] = {}

        n = q.nodes[node]
        if n.candidates is not None:
            for lab in sorted(n.candidates):
                seen[lab] = None

        for ai in q.arcs_of[node]:
            arc = q.arcs[ai]
            if arc.a == arc.b:
                continue
            if arc.a == node:
                other = a.labels[arc.b]
                if other != unknown:
                    for _, f in self.index.top_pairwise(b=other, type=arc.type):
                        seen[f.a] = None
            else:
                other = a.labels[arc.a]
                if other != unknown:
                    for _, f in self.index.top_pairwise(a=other, type=arc.type):
                        seen[f.b] = None

        for fi in q.factors_of[node]:
            fac = q.factors[fi]
            others = [a.labels[m] for m in fac.members if m != node and a.labels[m] != unknown]
            for _, ff in self.index.top_factors(fac.size, others[:2]):
                if not ff.contains_all(others):
                    continue
                for lab in ff.without(others):
                    seen[lab] = None

        out = [lab for lab in seen if lab != unknown and (allowed is None or lab in allowed)]
        return out[: int(self.cfg.max_label_proposals)]

    def _fallback_label(self, allowed: Optional[Set[int]], unknown: int) -> int:
        best = unknown
        best_count = -1
        for lab, cnt in self.label_frequency.items():
            if allowed is not None and lab not in allowed:
                continue
            if cnt > best_count or (cnt == best_count and lab < best):
                best, best_count = lab, cnt
        if best == unknown and allowed:
            return min(allowed)
        return best

    # -----------------------------
    # Passes
    # -----------------------------

    def initial_pass(self, a: Assignment, cache: Dict[int, Optional[Set[int]]], report: SolveReport) -> None:
        for node in a.inferred_nodes():
            allowed = self._permissible(a, cache, node)
            if allowed is not None and len(allowed) == 0:
                if a.labels[node] != a.unknown_label:
                    a.set_label(node, a.unknown_label)
                report.pinned_unknown += 1
                _logger.debug("node %d has no permissible label; pinned to unknown", node)
                continue
            if a.labels[node] != a.unknown_label:
                continue
            cands = self.proposals(a, node, allowed)
            if not cands:
                lab = self._fallback_label(allowed, a.unknown_label)
                if lab != a.unknown_label:
                    a.set_label(node, lab)
                continue
            best_lab = cands[0]
            best_key = None
            for lab in cands:
                key = (a.local_score(node, lab), self.label_frequency.get(lab, 0), -lab)
                if best_key is None or key > best_key:
                    best_key, best_lab = key, lab
            a.set_label(node, best_lab)

    def _accept(self, a: Assignment, changes: Dict[int, int], delta: float, report: SolveReport) -> None:
        applied = a.set_labels(changes)
        report.moves += 1
        report.accepted_deltas.append(applied)
        if applied <= 0.0:
            # score_delta and set_labels disagree only if weights moved under us
            _logger.warning("accepted move %s had non-positive applied delta %.6g (predicted %.6g)", changes, applied, delta)

    def node_pass(self, a: Assignment, cache: Dict[int, Optional[Set[int]]], report: SolveReport) -> int:
        moves = 0
        eps = float(self.cfg.min_improvement)
        for node in a.inferred_nodes():
            allowed = self._permissible(a, cache, node)
            if allowed is not None and len(allowed) == 0:
                continue
            cur = a.labels[node]
            base = a.local_score(node, cur)
            best_lab = None
            best_delta = eps
            for lab in sorted(self.proposals(a, node, allowed)):
                if lab == cur:
                    continue
                d = a.local_score(node, lab) - base
                if d > best_delta:
                    best_delta, best_lab = d, lab
            if best_lab is not None:
                self._accept(a, {node: best_lab}, best_delta, report)
                moves += 1
        return moves

    def arc_pass(self, a: Assignment, cache: Dict[int, Optional[Set[int]]], report: SolveReport) -> int:
        moves = 0
        eps = float(self.cfg.min_improvement)
        q = a.query
        for arc in q.arcs:
            if arc.a == arc.b or a.is_given(arc.a) or a.is_given(arc.b):
                continue
            allowed_a = self._permissible(a, cache, arc.a)
            allowed_b = self._permissible(a, cache, arc.b)
            best_changes = None
            best_delta = eps
            for _, f in self.index.top_pairwise(type=arc.type):
                if f.a == a.labels[arc.a] and f.b == a.labels[arc.b]:
                    continue
                if allowed_a is not None and f.a not in allowed_a:
                    continue
                if allowed_b is not None and f.b not in allowed_b:
                    continue
                changes = {arc.a: f.a, arc.b: f.b}
                d = a.score_delta(changes)
                if d > best_delta:
                    best_delta, best_changes = d, changes
            if best_changes is not None:
                self._accept(a, best_changes, best_delta, report)
                moves += 1
        return moves

    def factor_pass(self, a: Assignment, cache: Dict[int, Optional[Set[int]]], report: SolveReport) -> int:
        moves = 0
        eps = float(self.cfg.min_improvement)
        cap = int(self.cfg.max_factor_permutations)
        unknown = a.unknown_label
        for fac in a.query.factors:
            free = [m for m in fac.members if not a.is_given(m)]
            if len(free) < 2:
                continue
            fixed = [a.labels[m] for m in fac.members if a.is_given(m)]
            if unknown in fixed:
                continue
            best_changes = None
            best_delta = eps
            for _, ff in self.index.top_factors(fac.size, fixed[:2]):
                if not ff.contains_all(fixed):
                    continue
                rest = ff.without(fixed)
                for perm in sorted(set(islice(permutations(rest), cap * 4)))[:cap]:
                    changes = dict(zip(free, perm))
                    if all(a.labels[m] == lab for m, lab in changes.items()):
                        continue
                    if not self._all_permissible(a, cache, changes):
                        continue
                    d = a.score_delta(changes)
                    if d > best_delta:
                        best_delta, best_changes = d, changes
            if best_changes is not None:
                self._accept(a, best_changes, best_delta, report)
                moves += 1
        return moves

    def _all_permissible(self, a: Assignment, cache: Dict[int, Optional[Set[int]]], changes: Mapping[int, int]) -> bool:
        for m, lab in changes.items():
            allowed = self._permissible(a, cache, m)
            if allowed is not None and lab not in allowed:
                return False
        return True

    # -----------------------------
    # Public API
    # -----------------------------

    def solve(self, a: Assignment) -> SolveReport:
        a.recompute_score()
        report = SolveReport(initial_score=a.score)
        cache: Dict[int, Optional[Set[int]]] = {}
        self.initial_pass(a, cache, report)

        for _ in range(int(self.cfg.max_passes)):
            report.passes += 1
            moved = self.node_pass(a, cache, report)
            if self.cfg.enable_arc_moves:
                moved += self.arc_pass(a, cache, report)
            if self.cfg.enable_factor_moves and a.query.factors:
                moved += self.factor_pass(a, cache, report)
            if moved == 0:
                break

        report.final_score = a.score
        _logger.debug(
            "map solve: passes=%d moves=%d score %.6g -> %.6g",
            report.passes, report.moves, report.initial_score, report.final_score,
        )
        return report


__all__ = ["SolveReport", "MapSolver"]
