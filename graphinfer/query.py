# graphinfer/query.py
# -*- coding: utf-8 -*-

"""
Query / Assignment model.

Query (immutable once built):
  nodes    dense ids 0..n-1, each with a type, an optional explicit candidate
           label set and an opaque `context` for the label checker
  arcs     pairwise feature instances Arc(a, b, type)
  factors  higher-order feature instances over a set of node ids

Assignment (mutable, one per query):
  labels[i]       current label of node i (UNKNOWN_LABEL when unset)
  must_infer[i]   False for given (observed) nodes; solvers never move them
  penalties       per (node, label) additive terms, used for loss-augmented
                  inference during SSVM training
  score           running total, kept equal to recompute_score() after every
                  mutation

An arc contributes weight(PairwiseFeature(label_a, label_b, type)) when both
endpoints are known; a factor contributes weight(FactorFeature(labels)) when
all of its members are known.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol, Set, Tuple

from .features import UNKNOWN_LABEL, FactorFeature, PairwiseFeature
from .weights import FeatureKey


# -----------------------------
# Collaborator interfaces
# -----------------------------

class WeightsView(Protocol):
    """Read-only access to feature weights (what scoring and BP need)."""

    def get(self, key: FeatureKey) -> float: ...


class LabelChecker(Protocol):
    """Returns the legal labels for a node, or None when any label is legal."""

    def permissible_labels(self, node: "Node") -> Optional[Set[int]]: ...


class StringTable(Protocol):
    def intern(self, s: str) -> int: ...

    def resolve(self, idx: int) -> str: ...


class AllowAllChecker:
    """Only restricts nodes that carry an explicit candidate set."""

    def permissible_labels(self, node: "Node") -> Optional[Set[int]]:
        if node.candidates is None:
            return None
        return set(node.candidates)


class InMemoryStringTable:
    def __init__(self) -> None:
        self._ids: Dict[str, int] = {}
        self._strings: List[str] = []

    def __len__(self) -> int:
        return len(self._strings)

    def intern(self, s: str) -> int:
        idx = self._ids.get(s)
        if idx is None:
            idx = len(self._strings)
            self._ids[s] = idx
            self._strings.append(s)
        return idx

    def resolve(self, idx: int) -> str:
        if idx == UNKNOWN_LABEL:
            return "?"
        return self._strings[idx]


# -----------------------------
# Query structure
# -----------------------------

@dataclass(frozen=True)
class Node:
    id: int
    type: str = ""
    candidates: Optional[FrozenSet[int]] = None
    context: Any = None
    name: Optional[str] = None


@dataclass(frozen=True)
class Arc:
    a: int
    b: int
    type: int


@dataclass(frozen=True)
class Factor:
    nodes: FrozenSet[int]

    def __post_init__(self) -> None:
        if len(self.nodes) == 0:
            raise ValueError("factor must contain at least one node")

    @property
    def members(self) -> Tuple[int, ...]:
        return tuple(sorted(self.nodes))

    @property
    def size(self) -> int:
        return len(self.nodes)


@dataclass(frozen=True)
class Query:
    nodes: Tuple[Node, ...]
    arcs: Tuple[Arc, ...]
    factors: Tuple[Factor, ...]
    # adjacency: node id -> indices into arcs / factors
    arcs_of: Tuple[Tuple[int, ...], ...] = field(repr=False, default=())
    factors_of: Tuple[Tuple[int, ...], ...] = field(repr=False, default=())

    @property
    def num_nodes(self) -> int:
        return len(self.nodes)

    def neighbours(self, node: int) -> List[int]:
        out: List[int] = []
        for ai in self.arcs_of[node]:
            arc = self.arcs[ai]
            out.append(arc.b if arc.a == node else arc.a)
        return out


class QueryBuilder:
    """Collects nodes, arcs and factors, then freezes them into a Query."""

    def __init__(self) -> None:
        self._nodes: List[Node] = []
        self._arcs: List[Arc] = []
        self._factors: List[Factor] = []
        self._factor_set: Set[Factor] = set()

    def add_node(
        self,
        type: str = "",
        candidates: Optional[Iterable[int]] = None,
        context: Any = None,
        name: Optional[str] = None,
    ) -> int:
        idx = len(self._nodes)
        cands = frozenset(int(c) for c in candidates) if candidates is not None else None
        self._nodes.append(Node(id=idx, type=type, candidates=cands, context=context, name=name))
        return idx

    def _check_node(self, idx: int) -> None:
        if not (0 <= int(idx) < len(self._nodes)):
            raise ValueError(f"unknown node id {idx} (have {len(self._nodes)} nodes)")

    def add_arc(self, a: int, b: int, type: int) -> None:
        self._check_node(a)
        self._check_node(b)
        self._arcs.append(Arc(int(a), int(b), int(type)))

    def add_factor(self, node_ids: Iterable[int]) -> bool:
        """Adds a factor; returns False if an equal factor already exists."""
        ids = [int(i) for i in node_ids]
        if len(set(ids)) != len(ids):
            raise ValueError(f"factor has duplicate node ids: {ids}")
        for i in ids:
            self._check_node(i)
        fac = Factor(frozenset(ids))
        if fac in self._factor_set:
            return False
        self._factor_set.add(fac)
        self._factors.append(fac)
        return True

    def build(self) -> Query:
        n = len(self._nodes)
        arcs_of: List[List[int]] = [[] for _ in range(n)]
        factors_of: List[List[int]] = [[] for _ in range(n)]
        for ai, arc in enumerate(self._arcs):
            arcs_of[arc.a].append(ai)
            if arc.b != arc.a:
                arcs_of[arc.b].append(ai)
        for fi, fac in enumerate(self._factors):
            for m in fac.members:
                factors_of[m].append(fi)
        return Query(
            nodes=tuple(self._nodes),
            arcs=tuple(self._arcs),
            factors=tuple(self._factors),
            arcs_of=tuple(tuple(x) for x in arcs_of),
            factors_of=tuple(tuple(x) for x in factors_of),
        )


# -----------------------------
# Assignment
# -----------------------------

class Assignment:
    def __init__(self, query: Query, weights: WeightsView, unknown_label: int = UNKNOWN_LABEL):
        self.query = query
        self.weights = weights
        self.unknown_label = int(unknown_label)
        n = query.num_nodes
        self.labels: List[int] = [self.unknown_label] * n
        self.must_infer: List[bool] = [True] * n
        self.penalties: Dict[int, Dict[int, float]] = {}
        self._score = 0.0

    # ---- read side ----

    @property
    def score(self) -> float:
        return self._score

    def label(self, node: int) -> int:
        return self.labels[node]

    def is_given(self, node: int) -> bool:
        return not self.must_infer[node]

    def inferred_nodes(self) -> List[int]:
        return [i for i in range(self.query.num_nodes) if self.must_infer[i]]

    def penalty(self, node: int, label: int) -> float:
        row = self.penalties.get(node)
        if row is None:
            return 0.0
        return row.get(label, 0.0)

    def _arc_feature(self, arc: Arc, overrides: Mapping[int, int]) -> Optional[PairwiseFeature]:
        la = overrides.get(arc.a, self.labels[arc.a])
        lb = overrides.get(arc.b, self.labels[arc.b])
        if la == self.unknown_label or lb == self.unknown_label:
            return None
        return PairwiseFeature(la, lb, arc.type)

    def _factor_feature(self, fac: Factor, overrides: Mapping[int, int]) -> Optional[FactorFeature]:
        labs = []
        for m in fac.members:
            lab = overrides.get(m, self.labels[m])
            if lab == self.unknown_label:
                return None
            labs.append(lab)
        return FactorFeature.of(labs)

    def _incident(self, nodes: Iterable[int]) -> Tuple[Set[int], Set[int]]:
        arc_ids: Set[int] = set()
        fac_ids: Set[int] = set()
        for n in nodes:
            arc_ids.update(self.query.arcs_of[n])
            fac_ids.update(self.query.factors_of[n])
        return arc_ids, fac_ids

    def _partial_score(self, nodes: Iterable[int], overrides: Mapping[int, int]) -> float:
        nodes = list(nodes)
        arc_ids, fac_ids = self._incident(nodes)
        total = 0.0
        for ai in arc_ids:
            f = self._arc_feature(self.query.arcs[ai], overrides)
            if f is not None:
                total += self.weights.get(f)
        for fi in fac_ids:
            f = self._factor_feature(self.query.factors[fi], overrides)
            if f is not None:
                total += self.weights.get(f)
        for n in nodes:
            total += self.penalty(n, overrides.get(n, self.labels[n]))
        return total

    def incident_features(self, node: int, label: int) -> Counter:
        """Active features touching `node` if it were labeled `label`."""
        out: Counter = Counter()
        overrides = {node: label}
        for ai in self.query.arcs_of[node]:
            f = self._arc_feature(self.query.arcs[ai], overrides)
            if f is not None:
                out[f] += 1
        for fi in self.query.factors_of[node]:
            f = self._factor_feature(self.query.factors[fi], overrides)
            if f is not None:
                out[f] += 1
        return out

    def local_score(self, node: int, label: int) -> float:
        """Sum of every term touching `node` if it were labeled `label`."""
        return self._partial_score([node], {node: label})

    def score_delta(self, changes: Mapping[int, int]) -> float:
        """Exact score change if all `changes` (node -> label) were applied together."""
        if not changes:
            return 0.0
        return self._partial_score(changes.keys(), changes) - self._partial_score(changes.keys(), {})

    # ---- write side ----

    def set_label(self, node: int, label: int) -> float:
        return self.set_labels({node: label})

    def set_labels(self, changes: Mapping[int, int]) -> float:
        changes = {int(n): int(l) for n, l in changes.items() if self.labels[n] != l}
        delta = self.score_delta(changes)
        for n, lab in changes.items():
            self.labels[n] = lab
        self._score += delta
        return delta

    def set_given(self, node: int, label: int) -> None:
        self.must_infer[node] = False
        self.set_label(node, label)

    def add_penalty(self, node: int, label: int, amount: float) -> None:
        row = self.penalties.setdefault(node, {})
        row[label] = row.get(label, 0.0) + float(amount)
        if self.labels[node] == label:
            self._score += float(amount)

    def clear_penalties(self) -> None:
        self.penalties = {}
        self.recompute_score()

    def clear_inferred(self) -> None:
        for n in range(self.query.num_nodes):
            if self.must_infer[n]:
                self.labels[n] = self.unknown_label
        self.recompute_score()

    def recompute_score(self) -> float:
        self._score = self.total_score()
        return self._score

    def total_score(self) -> float:
        """Score recomputed from scratch over every active feature."""
        total = 0.0
        for key, count in self.active_features().items():
            total += count * self.weights.get(key)
        for n, lab in enumerate(self.labels):
            total += self.penalty(n, lab)
        return total

    def active_features(self) -> Counter:
        """Multiset of feature keys active under the current labeling."""
        out: Counter = Counter()
        for arc in self.query.arcs:
            f = self._arc_feature(arc, {})
            if f is not None:
                out[f] += 1
        for fac in self.query.factors:
            f = self._factor_feature(fac, {})
            if f is not None:
                out[f] += 1
        return out

    def copy(self) -> "Assignment":
        other = Assignment(self.query, self.weights, self.unknown_label)
        other.labels = list(self.labels)
        other.must_infer = list(self.must_infer)
        other.penalties = {n: dict(row) for n, row in self.penalties.items()}
        other._score = self._score
        return other

    def __repr__(self) -> str:
        return f"Assignment(labels={self.labels}, score={self._score:.6g})"


__all__ = [
    "WeightsView",
    "LabelChecker",
    "StringTable",
    "AllowAllChecker",
    "InMemoryStringTable",
    "Node",
    "Arc",
    "Factor",
    "Query",
    "QueryBuilder",
    "Assignment",
]
