"""
================================================================================
NetHawk - Model Versioning System
================================================================================

Versioned storage for the (scaler, model) pair the classifier serves.

DIRECTORY LAYOUT:
-----------------
models/
├── rf_20261019_101500/
│   ├── model.pkl          # RandomForestClassifier
│   ├── scaler.pkl         # StandardScaler fit on the same training data
│   ├── schema.json        # feature schema version + order
│   └── results.json       # training parameters and validation metrics
├── rf_20261019_113000/
│   └── ...
└── LATEST                 # name of the version served by default

A version directory is written completely before LATEST is switched to it,
and LATEST is replaced with an atomic rename, so a reader never sees a half
written version.

================================================================================
"""

import json
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import joblib

from .features import get_schema
from .utils import get_logger, get_timestamp

logger = get_logger(__name__)

MODEL_FILE = 'model.pkl'
SCALER_FILE = 'scaler.pkl'
SCHEMA_FILE = 'schema.json'
RESULTS_FILE = 'results.json'
LATEST_POINTER = 'LATEST'


def generate_version_id(prefix: str = 'rf') -> str:
    """Version id from the training time, e.g. ``rf_20261019_101500``."""
    return f"{prefix}_{get_timestamp()}"


def save_versioned_model(model, scaler, results: Dict[str, Any], models_dir: Path,
                         version_id: Optional[str] = None,
                         update_latest: bool = True) -> Tuple[Path, str]:
    """
    Persist a trained (scaler, model) pair as a new version.

    Args:
        model: Fitted classifier
        scaler: Scaler fitted on the same training data
        results: Training results (parameters, metrics)
        models_dir: Root models directory
        version_id: Explicit id (default: generated from the timestamp)
        update_latest: Point LATEST at the new version

    Returns:
        Tuple (version directory, version id)
    """
    models_dir = Path(models_dir)
    version_id = version_id or generate_version_id()
    version_dir = models_dir / version_id
    version_dir.mkdir(parents=True, exist_ok=True)

    results = dict(results)
    results['version'] = {
        'version_id': version_id,
        'created_at': datetime.now().isoformat(),
    }

    joblib.dump(scaler, version_dir / SCALER_FILE)
    joblib.dump(model, version_dir / MODEL_FILE)
    logger.info(f"Model saved: {version_dir / MODEL_FILE}")

    with open(version_dir / SCHEMA_FILE, 'w') as f:
        json.dump(get_schema(), f, indent=2)

    with open(version_dir / RESULTS_FILE, 'w') as f:
        json.dump(results, f, indent=2, default=str)
    logger.info(f"Results saved: {version_dir / RESULTS_FILE}")

    if update_latest:
        set_latest_version(models_dir, version_id)

    return version_dir, version_id


def set_latest_version(models_dir: Path, version_id: str) -> None:
    """Atomically point LATEST at ``version_id``."""
    models_dir = Path(models_dir)
    if not (models_dir / version_id / MODEL_FILE).exists():
        raise FileNotFoundError(f"No model for version {version_id} in {models_dir}")

    tmp_path = models_dir / f".{LATEST_POINTER}.tmp"
    tmp_path.write_text(version_id + '\n')
    os.replace(tmp_path, models_dir / LATEST_POINTER)
    logger.info(f"LATEST -> {version_id}")


def get_latest_version(models_dir: Path) -> Optional[str]:
    """Version named by LATEST, or the newest version directory."""
    models_dir = Path(models_dir)
    pointer = models_dir / LATEST_POINTER
    if pointer.exists():
        version_id = pointer.read_text().strip()
        if version_id:
            return version_id

    versions = list_model_versions(models_dir)
    if not versions:
        return None
    return max(versions, key=lambda v: v.get('created_at', ''))['version_id']


def resolve_version_dir(models_dir: Path, version: str = 'latest') -> Path:
    """
    Directory holding a given version.

    Raises:
        FileNotFoundError: if no such version exists
    """
    models_dir = Path(models_dir)
    if version == 'latest':
        version_id = get_latest_version(models_dir)
        if version_id is None:
            raise FileNotFoundError(f"No trained models in {models_dir}")
    elif version == 'best':
        best = get_best_version(models_dir)
        if best is None:
            raise FileNotFoundError(f"No trained models in {models_dir}")
        version_id = best['version_id']
    else:
        version_id = version

    version_dir = models_dir / version_id
    if not (version_dir / MODEL_FILE).exists():
        raise FileNotFoundError(f"Model not found in {version_dir}")
    return version_dir


def load_versioned_model(version_dir: Path) -> Dict[str, Any]:
    """
    Load every file of a version directory.

    Returns:
        Dict with model, scaler, schema, results and version_id
    """
    version_dir = Path(version_dir)
    model_path = version_dir / MODEL_FILE
    if not model_path.exists():
        raise FileNotFoundError(f"Model not found in {version_dir}")

    scaler_path = version_dir / SCALER_FILE
    if not scaler_path.exists():
        raise FileNotFoundError(f"Scaler not found in {version_dir}")

    schema = None
    schema_path = version_dir / SCHEMA_FILE
    if schema_path.exists():
        with open(schema_path) as f:
            schema = json.load(f)

    results = {}
    results_path = version_dir / RESULTS_FILE
    if results_path.exists():
        with open(results_path) as f:
            results = json.load(f)

    return {
        'model': joblib.load(model_path),
        'scaler': joblib.load(scaler_path),
        'schema': schema,
        'results': results,
        'version_id': version_dir.name,
    }


def list_model_versions(models_dir: Path) -> List[Dict[str, Any]]:
    """
    List every version available under ``models_dir``.

    Returns:
        List of dicts with version_id, path, created_at, validation_metrics
    """
    models_dir = Path(models_dir)
    if not models_dir.exists():
        return []

    versions = []
    for version_dir in sorted(models_dir.iterdir()):
        if not version_dir.is_dir() or not (version_dir / MODEL_FILE).exists():
            continue

        info = {
            'version_id': version_dir.name,
            'path': version_dir,
            'created_at': '',
            'validation_metrics': {},
        }

        results_file = version_dir / RESULTS_FILE
        if results_file.exists():
            try:
                with open(results_file) as f:
                    results = json.load(f)
                info['created_at'] = results.get('version', {}).get('created_at', '')
                info['validation_metrics'] = results.get('validation_metrics', {})
                info['train_time'] = results.get('train_time_seconds', 0)
            except (OSError, ValueError) as e:
                logger.warning(f"Could not read results {results_file}: {e}")

        versions.append(info)

    return versions


def get_best_version(models_dir: Path) -> Optional[Dict[str, Any]]:
    """Version with the highest validation F1."""
    versions = list_model_versions(models_dir)
    if not versions:
        return None
    return max(versions, key=lambda v: v['validation_metrics'].get('f1', 0))


def cleanup_old_versions(models_dir: Path, keep_n: int = 5) -> List[str]:
    """
    Remove the oldest versions, keeping ``keep_n`` and never the LATEST one.

    Returns:
        Ids of the removed versions
    """
    versions = list_model_versions(models_dir)
    if len(versions) <= keep_n:
        return []

    latest = get_latest_version(models_dir)
    versions.sort(key=lambda v: v['created_at'], reverse=True)

    removed = []
    for v in versions[keep_n:]:
        if v['version_id'] == latest:
            continue
        try:
            shutil.rmtree(v['path'])
            removed.append(v['version_id'])
            logger.info(f"Removed version: {v['path']}")
        except OSError as e:
            logger.warning(f"Could not remove {v['path']}: {e}")
    return removed


def print_versions_summary(models_dir: Path) -> None:
    """Print a table of the available versions."""
    versions = list_model_versions(models_dir)

    if not versions:
        print("No model versions found.")
        return

    latest = get_latest_version(models_dir)

    print("\n" + "=" * 78)
    print("AVAILABLE MODEL VERSIONS")
    print("=" * 78)
    print(f"\n{'Version':<28} {'F1':>8} {'Recall':>8} {'FPR':>8} {'Created':>22}")
    print("-" * 78)
    for v in versions:
        metrics = v['validation_metrics']
        marker = ' *' if v['version_id'] == latest else ''
        print(f"{v['version_id'] + marker:<28} "
              f"{metrics.get('f1', 0):>8.4f} "
              f"{metrics.get('recall', 0):>8.4f} "
              f"{metrics.get('false_positive_rate', 0):>8.4f} "
              f"{v['created_at'][:19]:>22}")
    print("=" * 78)
    print("* = LATEST")
