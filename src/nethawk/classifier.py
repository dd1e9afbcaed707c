"""
================================================================================
NetHawk - Classifier
================================================================================

Inference path of the packet classifier.

The model artifact is a (StandardScaler, RandomForestClassifier) pair fit
offline by ``nethawk.training.random_forest`` and stored by
``nethawk.model_versioning``. At inference time the same scaler is applied
before the forest votes; the fraction of trees voting "malicious" is the
malicious probability.

The decision threshold (default 0.7) is applied to that probability and is
independent of the forest's internal 0.5 majority vote, so operators can
trade recall against false positives without retraining.

Thread safety:
    The loaded artifact lives in an immutable ModelHandle. ``predict`` reads
    the handle reference once and never locks; ``swap`` replaces the
    reference under a lock. A prediction in flight keeps using the handle it
    started with.

Usage:
    classifier = Classifier.from_directory('models', threshold=0.7)
    result = classifier.predict(FeatureExtractor().extract(packet))

================================================================================
"""

import pickle
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from .errors import ModelUnavailable, SchemaError
from .features import FeatureVector, N_FEATURES, validate_schema
from .model_versioning import load_versioned_model, resolve_version_dir
from .utils import get_logger, suppress_warnings

suppress_warnings()
logger = get_logger(__name__)

DEFAULT_THRESHOLD = 0.7

# Class index used for "malicious" in the training labels
MALICIOUS_CLASS = 1


class Label(str, Enum):
    NORMAL = 'normal'
    MALICIOUS = 'malicious'
    UNKNOWN = 'unknown'


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of classifying one packet."""
    label: Label
    confidence: float
    malicious_probability: float = 0.0
    model_version: Optional[str] = None

    @property
    def is_malicious(self) -> bool:
        return self.label is Label.MALICIOUS

    @classmethod
    def unknown(cls) -> 'ClassificationResult':
        """Result used when no model can classify the packet."""
        return cls(label=Label.UNKNOWN, confidence=0.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'label': self.label.value,
            'confidence': round(self.confidence, 4),
            'malicious_probability': round(self.malicious_probability, 4),
            'model_version': self.model_version,
        }


@dataclass(frozen=True)
class ModelHandle:
    """An immutable, loaded (scaler, model) version."""
    model: Any
    scaler: Any
    version: str
    schema: Dict[str, Any]

    def __post_init__(self):
        validate_schema(self.schema)
        if not hasattr(self.model, 'predict_proba'):
            raise SchemaError(f"Model {type(self.model).__name__} has no predict_proba")
        classes = list(getattr(self.model, 'classes_', []))
        if MALICIOUS_CLASS not in classes:
            raise SchemaError(f"Model classes {classes} do not include the malicious class")

    @property
    def malicious_index(self) -> int:
        return list(self.model.classes_).index(MALICIOUS_CLASS)

    @classmethod
    def load(cls, version_dir: Path) -> 'ModelHandle':
        """Load a handle from a version directory."""
        artifact = load_versioned_model(version_dir)
        return cls(
            model=artifact['model'],
            scaler=artifact['scaler'],
            version=artifact['version_id'],
            schema=artifact['schema'],
        )


class Classifier:
    """
    Maps a FeatureVector to a ClassificationResult.

    Fails closed: without a loaded handle ``predict`` raises
    ModelUnavailable instead of defaulting to "normal".
    """

    def __init__(self, handle: Optional[ModelHandle] = None,
                 threshold: float = DEFAULT_THRESHOLD):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be in [0, 1], got {threshold}")
        self.threshold = threshold
        self._handle = handle
        self._swap_lock = threading.Lock()

    @classmethod
    def from_directory(cls, models_dir: Path, version: str = 'latest',
                       threshold: float = DEFAULT_THRESHOLD) -> 'Classifier':
        """
        Build a classifier from a models directory.

        A missing or unusable artifact is logged and yields a classifier
        that refuses predictions.
        """
        classifier = cls(threshold=threshold)
        classifier.load(models_dir, version)
        return classifier

    # ------------------------------------------------------------------
    # Artifact management
    # ------------------------------------------------------------------

    @property
    def available(self) -> bool:
        return self._handle is not None

    @property
    def version(self) -> Optional[str]:
        handle = self._handle
        return handle.version if handle is not None else None

    def load(self, models_dir: Path, version: str = 'latest') -> bool:
        """
        Load a version and swap it in.

        Returns:
            True if the new version is now serving. On failure the
            currently served handle, if any, is kept.
        """
        try:
            version_dir = resolve_version_dir(Path(models_dir), version)
            handle = ModelHandle.load(version_dir)
        except (OSError, EOFError, ValueError, pickle.UnpicklingError) as e:
            logger.error(f"Model unavailable ({models_dir}, {version}): {e}")
            return False
        except Exception:
            # Unpickling can raise anything the stored estimator's classes raise
            logger.exception(f"Model unavailable ({models_dir}, {version})")
            return False
        self.swap(handle)
        return True

    def swap(self, handle: Optional[ModelHandle]) -> Optional[ModelHandle]:
        """Atomically replace the served handle, returning the previous one."""
        with self._swap_lock:
            previous = self._handle
            self._handle = handle
        if handle is not None:
            logger.info(f"Serving model version {handle.version}")
        return previous

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def _require_handle(self) -> ModelHandle:
        handle = self._handle
        if handle is None:
            raise ModelUnavailable("No classifier model loaded")
        return handle

    def _malicious_probability(self, handle: ModelHandle, matrix: np.ndarray) -> np.ndarray:
        try:
            scaled = handle.scaler.transform(matrix)
            proba = handle.model.predict_proba(scaled)
        except (ValueError, AttributeError) as e:
            raise ModelUnavailable(f"Model {handle.version} failed to predict: {e}")
        return proba[:, handle.malicious_index]

    def _result(self, probability: float, version: str) -> ClassificationResult:
        probability = float(min(max(probability, 0.0), 1.0))
        if probability >= self.threshold:
            return ClassificationResult(Label.MALICIOUS, probability, probability, version)
        return ClassificationResult(Label.NORMAL, 1.0 - probability, probability, version)

    def predict(self, features: FeatureVector) -> ClassificationResult:
        """
        Classify one feature vector.

        Raises:
            ModelUnavailable: if no model is loaded
        """
        handle = self._require_handle()
        probability = self._malicious_probability(handle, features.as_row())[0]
        return self._result(probability, handle.version)

    def predict_batch(self, matrix: np.ndarray) -> List[ClassificationResult]:
        """Classify an (n, N_FEATURES) matrix with a single handle."""
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[1] != N_FEATURES:
            raise SchemaError(f"Expected (n, {N_FEATURES}) matrix, got {matrix.shape}")
        handle = self._require_handle()
        if len(matrix) == 0:
            return []
        probabilities = self._malicious_probability(handle, matrix)
        return [self._result(p, handle.version) for p in probabilities]
