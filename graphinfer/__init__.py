"""
graphinfer: structured prediction over relational graphs.

Learns pairwise / factor feature weights from labeled graphs (structured SVM
or pseudo-likelihood) and predicts joint labelings with an index-driven local
search MAP solver or loopy belief propagation.
"""

from .config import InferenceConfig, load_config
from .errors import ConfigurationError, GraphInferenceError
from .feature_index import FeatureIndex
from .features import UNKNOWN_LABEL, FactorFeature, PairwiseFeature
from .graph_inference import GraphInference, ModelSnapshot
from .loopy_bp import BPReport, LoopyBPSolver
from .map_solver import MapSolver, SolveReport
from .pseudolikelihood import PseudoLikelihoodLearner
from .query import (
    AllowAllChecker,
    Arc,
    Assignment,
    Factor,
    InMemoryStringTable,
    LabelChecker,
    Node,
    Query,
    QueryBuilder,
    StringTable,
)
from .ssvm import SSVMLearner
from .stats import NodeConfusionStats, PrecisionStats
from .training import evaluate, train_pl, train_ssvm
from .weights import LockFreeWeight, WeightStore

__version__ = "0.1.0"

__all__ = [
    "InferenceConfig",
    "load_config",
    "ConfigurationError",
    "GraphInferenceError",
    "FeatureIndex",
    "UNKNOWN_LABEL",
    "FactorFeature",
    "PairwiseFeature",
    "GraphInference",
    "ModelSnapshot",
    "BPReport",
    "LoopyBPSolver",
    "MapSolver",
    "SolveReport",
    "PseudoLikelihoodLearner",
    "AllowAllChecker",
    "Arc",
    "Assignment",
    "Factor",
    "InMemoryStringTable",
    "LabelChecker",
    "Node",
    "Query",
    "QueryBuilder",
    "StringTable",
    "SSVMLearner",
    "NodeConfusionStats",
    "PrecisionStats",
    "evaluate",
    "train_pl",
    "train_ssvm",
    "LockFreeWeight",
    "WeightStore",
]
