# graphinfer/config.py
# -*- coding: utf-8 -*-

"""
Configuration for the inference / training engine.

One flat dataclass with defaults; every knob can be overridden from a YAML or
JSON file (root must be a dict) or with dataclasses.replace().
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError


SOLVERS = ("local", "bp")


@dataclass
class InferenceConfig:
    # ===== learning =====
    regularization: float = 0.0      # L2 strength used by pseudo-likelihood updates
    svm_margin: float = 0.1          # per-node margin for loss-augmented inference
    beam_size: int = 8               # pseudo-likelihood beam width

    # ===== feature index =====
    index_top_k: int = 32

    # ===== MAP solver (local search) =====
    solver: str = "local"            # "local" or "bp"
    max_passes: int = 10
    max_label_proposals: int = 64    # per node and pass
    min_improvement: float = 1e-9
    enable_arc_moves: bool = True
    enable_factor_moves: bool = True
    max_factor_permutations: int = 24

    # ===== loopy BP =====
    bp_max_rounds: int = 30
    bp_tolerance: float = 1e-6
    bp_damping: float = 0.0
    bp_domain_size: int = 16
    bp_max_factor_states: int = 4096

    def validate(self) -> "InferenceConfig":
        if not (self.regularization >= 0.0):
            raise ConfigurationError(f"regularization must be >= 0, got {self.regularization}")
        if not (self.svm_margin >= 0.0):
            raise ConfigurationError(f"svm_margin must be >= 0, got {self.svm_margin}")
        if int(self.beam_size) < 1:
            raise ConfigurationError(f"beam_size must be >= 1, got {self.beam_size}")
        if int(self.index_top_k) < 1:
            raise ConfigurationError(f"index_top_k must be >= 1, got {self.index_top_k}")
        if self.solver not in SOLVERS:
            raise ConfigurationError(f"Unknown solver={self.solver}. Use 'local' or 'bp'.")
        if int(self.max_passes) < 0 or int(self.bp_max_rounds) < 1:
            raise ConfigurationError("max_passes must be >= 0 and bp_max_rounds >= 1")
        if not (0.0 <= self.bp_damping < 1.0):
            raise ConfigurationError(f"bp_damping must be in [0, 1), got {self.bp_damping}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _load_cfg(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    ext = os.path.splitext(path)[1].lower()
    with open(path, "r", encoding="utf-8") as f:
        txt = f.read()
    if ext in (".yaml", ".yml"):
        obj = yaml.safe_load(txt)
    else:
        obj = json.loads(txt)
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ConfigurationError(f"Config root must be dict, got: {type(obj)}")
    return obj


def config_from_dict(obj: Dict[str, Any], base: Optional[InferenceConfig] = None) -> InferenceConfig:
    base = base if base is not None else InferenceConfig()
    known = {f.name for f in fields(InferenceConfig)}
    unknown = sorted(k for k in obj if k not in known)
    if unknown:
        raise ConfigurationError(f"unknown config key(s): {unknown}")
    return replace(base, **obj).validate()


def load_config(path: Optional[str], **overrides: Any) -> InferenceConfig:
    """Load a YAML/JSON config file; keyword overrides win over file values."""
    obj = _load_cfg(path)
    obj.update(overrides)
    return config_from_dict(obj)


__all__ = ["SOLVERS", "InferenceConfig", "config_from_dict", "load_config"]
