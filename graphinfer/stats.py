# graphinfer/stats.py
# -*- coding: utf-8 -*-

"""
Precision / confusion counters for operator inspection.

Not part of the inference / training contract; the learners only increment
these when a stats object is passed in.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Dict


def _safe_div(a: float, b: float) -> float:
    return float(a / b) if b > 0 else 0.0


@dataclass
class PrecisionStats:
    correct_labels: int = 0
    incorrect_labels: int = 0
    num_known_predictions: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(self, correct: int, incorrect: int, known: int) -> None:
        # shared across Hogwild workers
        with self._lock:
            self.correct_labels += int(correct)
            self.incorrect_labels += int(incorrect)
            self.num_known_predictions += int(known)

    def merge(self, other: "PrecisionStats") -> None:
        self.add(other.correct_labels, other.incorrect_labels, other.num_known_predictions)

    @property
    def precision(self) -> float:
        return _safe_div(self.correct_labels, self.correct_labels + self.incorrect_labels)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correct_labels": self.correct_labels,
            "incorrect_labels": self.incorrect_labels,
            "num_known_predictions": self.num_known_predictions,
            "precision": self.precision,
        }


@dataclass
class NodeConfusionStats:
    num_non_confusable_nodes: int = 0
    num_confusable_nodes: int = 0
    num_expected_confusions: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


__all__ = ["PrecisionStats", "NodeConfusionStats"]
