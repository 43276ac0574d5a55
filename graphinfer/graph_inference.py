# graphinfer/graph_inference.py
# -*- coding: utf-8 -*-

"""
GraphInference: the orchestrator.

Owns:
  - the WeightStore (pairwise + factor feature weights)
  - the FeatureIndex built from it
  - the label frequency table and the `unknown` label sentinel
  - the InferenceConfig (regularization, SSVM margin, beam width, solver knobs)
  - the collaborators: a LabelChecker and a StringTable

Lifecycle:
  add_query_to_model()  for every training pair (registers features, counts labels)
  initialize_feature_weights(), ssvm_init() / pl_init()
  prepare_for_inference()          rebuild the index (serialize vs. training!)
  ssvm_learn() x N (Hogwild-safe)  or  pl_learn() x N (serial)
  prepare_for_inference()
  map_inference() / get_assignment_score()

Inference against an index that predates training writes is a caller
contract violation; it is logged, not raised.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple, Union

from .config import InferenceConfig
from .errors import ConfigurationError
from .feature_index import FeatureIndex
from .features import UNKNOWN_LABEL, FactorFeature, PairwiseFeature
from .loopy_bp import BPReport, LoopyBPSolver
from .map_solver import MapSolver, SolveReport
from .pseudolikelihood import PLUpdate, PseudoLikelihoodLearner
from .query import AllowAllChecker, Assignment, InMemoryStringTable, LabelChecker, Query, QueryBuilder, StringTable
from .ssvm import SSVMLearner, SSVMUpdate
from .stats import NodeConfusionStats, PrecisionStats
from .weights import FeatureKey, WeightStore


_logger = logging.getLogger(__name__)


# -----------------------------
# Persistence snapshot
# -----------------------------

@dataclass
class ModelSnapshot:
    pairwise: List[Tuple[int, int, int, float]] = field(default_factory=list)
    factors: List[Tuple[Tuple[int, ...], float]] = field(default_factory=list)
    label_frequency: Dict[int, int] = field(default_factory=dict)
    unknown_label: int = UNKNOWN_LABEL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unknown_label": int(self.unknown_label),
            "label_frequency": [[int(k), int(v)] for k, v in sorted(self.label_frequency.items())],
            "pairwise": [[int(a), int(b), int(t), float(w)] for a, b, t, w in self.pairwise],
            "factors": [[list(labels), float(w)] for labels, w in self.factors],
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "ModelSnapshot":
        if not isinstance(obj, dict):
            raise ValueError(f"model root must be dict, got: {type(obj)}")
        return cls(
            pairwise=[(int(a), int(b), int(t), float(w)) for a, b, t, w in obj.get("pairwise", [])],
            factors=[(tuple(int(x) for x in labels), float(w)) for labels, w in obj.get("factors", [])],
            label_frequency={int(k): int(v) for k, v in obj.get("label_frequency", [])},
            unknown_label=int(obj.get("unknown_label", UNKNOWN_LABEL)),
        )


class GraphInference:
    def __init__(
        self,
        config: Optional[InferenceConfig] = None,
        checker: Optional[LabelChecker] = None,
        strings: Optional[StringTable] = None,
    ):
        self.config = (config if config is not None else InferenceConfig()).validate()
        self.checker: LabelChecker = checker if checker is not None else AllowAllChecker()
        self.strings: StringTable = strings if strings is not None else InMemoryStringTable()
        self.unknown_label = UNKNOWN_LABEL
        self.label_frequency: Dict[int, int] = {}
        self.store = WeightStore()
        self.index = FeatureIndex(top_k=self.config.index_top_k, unknown_label=self.unknown_label)
        self.num_svm_training_samples = 0
        self._index_stale = False

    # -----------------------------
    # Solvers / learners (bound to the current config)
    # -----------------------------

    def map_solver(self) -> MapSolver:
        return MapSolver(self.index, self.checker, self.config, self.label_frequency)

    def bp_solver(self) -> LoopyBPSolver:
        return LoopyBPSolver(self.checker, self.config, self.label_frequency, self.index)

    # -----------------------------
    # Persistence
    # -----------------------------

    def snapshot(self) -> ModelSnapshot:
        snap = ModelSnapshot(label_frequency=dict(self.label_frequency), unknown_label=self.unknown_label)
        for key, w in sorted(self.store.items(), key=lambda kv: (isinstance(kv[0], FactorFeature), kv[0])):
            if isinstance(key, PairwiseFeature):
                snap.pairwise.append((key.a, key.b, key.type, w))
            else:
                snap.factors.append((key.labels, w))
        return snap

    def restore(self, snap: ModelSnapshot) -> None:
        """
        Replace all in-memory model state. Not safe during training or inference.

        The store is refilled in place so assignments created earlier keep
        reading the live weights.
        """
        store = self.store
        store.clear()
        for a, b, t, w in snap.pairwise:
            store.set(PairwiseFeature(a, b, t), w)
        for labels, w in snap.factors:
            store.set(FactorFeature.of(labels), w)
        self.label_frequency = dict(snap.label_frequency)
        self.unknown_label = int(snap.unknown_label)
        self.index = FeatureIndex(top_k=self.config.index_top_k, unknown_label=self.unknown_label)
        self.prepare_for_inference()

    def save_model(self, path: str) -> None:
        self.store.fold()
        d = os.path.dirname(os.path.abspath(path))
        os.makedirs(d, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.snapshot().to_dict(), f)
            f.write("\n")
        _logger.info("saved model to %s (%d weights, %d labels)", path, len(self.store), len(self.label_frequency))

    def load_model(self, path: str) -> None:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
        self.restore(ModelSnapshot.from_dict(obj))
        _logger.info("loaded model from %s (%d weights, %d labels)", path, len(self.store), len(self.label_frequency))

    # -----------------------------
    # Queries / assignments
    # -----------------------------

    def create_query(self) -> QueryBuilder:
        return QueryBuilder()

    def create_assignment(self, query: Query) -> Assignment:
        return Assignment(query, self.store, self.unknown_label)

    def add_query_to_model(self, query: Query, assignment: Assignment) -> None:
        """Register every feature active in a gold assignment and count its labels."""
        if assignment.query is not query:
            raise ValueError("assignment was created for a different query")
        for key in assignment.active_features():
            self.store.register(key)
        for lab in assignment.labels:
            if lab != self.unknown_label:
                self.label_frequency[lab] = self.label_frequency.get(lab, 0) + 1
        self._index_stale = True

    # -----------------------------
    # Training setup
    # -----------------------------

    def initialize_feature_weights(self, regularization: float) -> None:
        if not (float(regularization) >= 0.0):
            raise ConfigurationError(f"regularization must be >= 0, got {regularization}")
        self.config = replace(self.config, regularization=float(regularization))
        for key, _ in list(self.store.items()):
            self.store.set(key, 0.0)
        self.num_svm_training_samples = 0
        self._index_stale = True

    def ssvm_init(self, margin: float) -> None:
        if not (float(margin) >= 0.0):
            raise ConfigurationError(f"svm margin must be >= 0, got {margin}")
        self.config = replace(self.config, svm_margin=float(margin))

    def pl_init(self, beam_size: int) -> None:
        if int(beam_size) < 1:
            raise ConfigurationError(f"beam size must be >= 1, got {beam_size}")
        self.config = replace(self.config, beam_size=int(beam_size))

    # -----------------------------
    # Learning
    # -----------------------------

    def ssvm_learn(
        self,
        query: Query,
        assignment: Assignment,
        learning_rate: float,
        stats: Optional[PrecisionStats] = None,
    ) -> SSVMUpdate:
        """Hogwild-safe: may run concurrently with itself, nothing else."""
        learner = SSVMLearner(self.store, self.map_solver(), self.config.svm_margin)
        upd = learner.learn(query, assignment, learning_rate, stats)
        self.num_svm_training_samples += 1
        self._index_stale = True
        return upd

    def pl_learn(self, query: Query, assignment: Assignment, learning_rate: float) -> PLUpdate:
        learner = PseudoLikelihoodLearner(
            self.store, self.map_solver(), self.config.beam_size, self.config.regularization
        )
        upd = learner.learn(query, assignment, learning_rate)
        self._index_stale = True
        return upd

    def prepare_for_inference(self) -> None:
        """Fold pending deltas and rebuild the feature index. Serialize against training."""
        self.store.fold()
        self.index.rebuild(self.store)
        self._index_stale = False

    # -----------------------------
    # Inference
    # -----------------------------

    def map_inference(self, query: Query, assignment: Assignment) -> Union[SolveReport, BPReport]:
        if assignment.query is not query:
            raise ValueError("assignment was created for a different query")
        if self._index_stale:
            _logger.warning("map_inference on a stale feature index; call prepare_for_inference() after training")
        if self.config.solver == "bp":
            return self.bp_solver().solve(assignment)
        return self.map_solver().solve(assignment)

    def get_assignment_score(self, assignment: Assignment) -> float:
        return assignment.total_score()

    def update_stats(self, gold: Assignment, predicted: Assignment, stats: PrecisionStats) -> None:
        correct = incorrect = known = 0
        for n in gold.inferred_nodes():
            g = gold.labels[n]
            if g == self.unknown_label:
                continue
            p = predicted.labels[n]
            if p != self.unknown_label:
                known += 1
            if p == g:
                correct += 1
            else:
                incorrect += 1
        stats.add(correct, incorrect, known)

    # -----------------------------
    # Debug / statistics (peripheral)
    # -----------------------------

    def confusion_statistics(
        self,
        query: Query,
        assignment: Assignment,
        stats: Optional[NodeConfusionStats] = None,
    ) -> NodeConfusionStats:
        """
        A node is confusable when more than one label is proposed for it; each
        non-gold proposal scoring at least as well as the gold label counts as
        an expected confusion.
        """
        stats = stats if stats is not None else NodeConfusionStats()
        solver = self.map_solver()
        for n in assignment.inferred_nodes():
            g = assignment.labels[n]
            if g == self.unknown_label:
                continue
            allowed = self.checker.permissible_labels(query.nodes[n])
            cands = solver.proposals(assignment, n, set(allowed) if allowed is not None else None)
            others = [lab for lab in cands if lab != g]
            if not others:
                stats.num_non_confusable_nodes += 1
                continue
            stats.num_confusable_nodes += 1
            gs = assignment.local_score(n, g)
            stats.num_expected_confusions += sum(1 for lab in others if assignment.local_score(n, lab) >= gs)
        return stats

    def dump_weights(self) -> List[Tuple[FeatureKey, float]]:
        return sorted(self.store.items(), key=lambda kv: (-kv[1], isinstance(kv[0], FactorFeature), kv[0]))

    def print_debug_info(self, limit: int = 20) -> None:
        _logger.info(
            "model: %d weights (%d pending deltas), %d labels, unknown=%d, svm samples=%d",
            len(self.store), self.store.pending_deltas(), len(self.label_frequency),
            self.unknown_label, self.num_svm_training_samples,
        )
        for key, w in self.dump_weights()[:limit]:
            _logger.info("  %+.6f  %s", w, key)

    def display_graph(self, query: Query, assignment: Assignment) -> Dict[str, Any]:
        """Labeled-graph view with labels resolved through the string table."""

        def name(lab: int) -> str:
            return "?" if lab == self.unknown_label else self.strings.resolve(lab)

        nodes = []
        for n in query.nodes:
            lab = assignment.labels[n.id]
            nodes.append({
                "id": n.id,
                "type": n.type,
                "name": n.name,
                "label": name(lab),
                "given": assignment.is_given(n.id),
            })
        edges = []
        for arc in query.arcs:
            la, lb = assignment.labels[arc.a], assignment.labels[arc.b]
            w = 0.0
            if la != self.unknown_label and lb != self.unknown_label:
                w = self.store.get(PairwiseFeature(la, lb, arc.type))
            edges.append({"source": arc.a, "target": arc.b, "type": arc.type, "weight": w})
        factors = [{"nodes": list(fac.members)} for fac in query.factors]
        return {"nodes": nodes, "edges": edges, "factors": factors, "score": assignment.total_score()}


__all__ = ["ModelSnapshot", "GraphInference"]
