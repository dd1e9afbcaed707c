"""
================================================================================
NetHawk - Training Random Forest
================================================================================

Offline training of the packet classifier.

Fits a StandardScaler on the training split, then a RandomForestClassifier
on the scaled features, measures it on a held out split and stores the
pair as a new model version.

USAGE:
------
    python -m nethawk.training.random_forest [options]

Options:
    --samples INT         Synthetic samples to generate (default: 20000)
    --data PATH           Labelled CSV with the feature columns and 'label'
    --n-estimators INT    Trees in the forest (default: 100)
    --max-depth INT       Maximum tree depth (default: unlimited)
    --n-jobs INT          CPU cores (default: auto, total - 2)
    --models-dir PATH     Where versions are stored
    --keep INT            Versions to keep after training
    --random-state INT    Seed

EXAMPLES:
---------
# Standard training on synthetic traffic
python -m nethawk.training.random_forest

# Quick test
python -m nethawk.training.random_forest --samples 2000 --n-estimators 20

================================================================================
"""

import argparse
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestClassifier
from sklearn.metrics import (accuracy_score, confusion_matrix, f1_score, precision_score,
                             recall_score)
from sklearn.model_selection import train_test_split
from sklearn.preprocessing import StandardScaler

from ..config import get_config
from ..errors import SchemaError
from ..features import FEATURE_NAMES, FEATURE_SCHEMA_VERSION
from ..generator import LABEL_COLUMN, SyntheticTrafficGenerator
from ..model_versioning import cleanup_old_versions, save_versioned_model
from ..utils import RANDOM_STATE, VAL_SIZE, get_logger, get_n_jobs, log_resource_status

logger = get_logger(__name__)


# ==============================================================================
# DATA
# ==============================================================================

def prepare_xy(df: pd.DataFrame) -> Tuple[np.ndarray, np.ndarray]:
    """
    Split a labelled table into the feature matrix and labels.

    Columns are taken in schema order, whatever their order in the table.

    Raises:
        SchemaError: if a feature column or the label column is missing
    """
    missing = [c for c in FEATURE_NAMES + [LABEL_COLUMN] if c not in df.columns]
    if missing:
        raise SchemaError(f"Training data is missing columns: {missing}")
    X = df[FEATURE_NAMES].to_numpy(dtype=np.float64)
    y = df[LABEL_COLUMN].to_numpy(dtype=np.int64)
    return X, y


def load_training_data(data_path: Optional[str] = None, n_samples: int = 20000,
                       malicious_rate: float = 0.12,
                       random_state: int = RANDOM_STATE) -> pd.DataFrame:
    """Labelled CSV if given, synthetic traffic otherwise."""
    if data_path:
        logger.info(f"Loading training data: {data_path}")
        return pd.read_csv(data_path)

    logger.info(f"Generating {n_samples:,} synthetic samples...")
    generator = SyntheticTrafficGenerator(malicious_rate=malicious_rate, seed=random_state)
    return generator.generate_dataset(n_samples, show_progress=True)


# ==============================================================================
# TRAINING
# ==============================================================================

def compute_metrics(y_true: np.ndarray, y_pred: np.ndarray) -> Dict[str, float]:
    """Binary validation metrics, class 1 being malicious."""
    tn, fp, fn, tp = confusion_matrix(y_true, y_pred, labels=[0, 1]).ravel()
    return {
        'accuracy': float(accuracy_score(y_true, y_pred)),
        'precision': float(precision_score(y_true, y_pred, zero_division=0)),
        'recall': float(recall_score(y_true, y_pred, zero_division=0)),
        'f1': float(f1_score(y_true, y_pred, zero_division=0)),
        'false_positive_rate': float(fp / (fp + tn)) if (fp + tn) > 0 else 0.0,
        'false_negative_rate': float(fn / (fn + tp)) if (fn + tp) > 0 else 0.0,
        'specificity': float(tn / (tn + fp)) if (tn + fp) > 0 else 0.0,
    }


def train_random_forest(X_train: np.ndarray,
                        y_train: np.ndarray,
                        X_val: np.ndarray,
                        y_val: np.ndarray,
                        n_estimators: int = 100,
                        max_depth: Optional[int] = None,
                        n_jobs: Optional[int] = None,
                        random_state: int = RANDOM_STATE
                        ) -> Tuple[RandomForestClassifier, StandardScaler, Dict[str, Any]]:
    """
    Fit the scaler, then the forest, and validate.

    Returns:
        Tuple (model, scaler, results)
    """
    n_jobs = get_n_jobs(n_jobs)

    logger.info("=" * 50)
    logger.info("TRAINING RANDOM FOREST")
    logger.info("=" * 50)
    logger.info(f"Train: {X_train.shape[0]:,} x {X_train.shape[1]}")
    logger.info(f"Config: n_estimators={n_estimators}, max_depth={max_depth}, n_jobs={n_jobs}")

    scaler = StandardScaler()
    X_train_scaled = scaler.fit_transform(X_train)
    X_val_scaled = scaler.transform(X_val)

    model = RandomForestClassifier(
        n_estimators=n_estimators,
        max_depth=max_depth,
        class_weight='balanced',
        random_state=random_state,
        n_jobs=n_jobs,
    )

    start_time = datetime.now()
    model.fit(X_train_scaled, y_train)
    train_time = (datetime.now() - start_time).total_seconds()
    logger.info(f"Training completed in {train_time:.1f}s")

    metrics = compute_metrics(y_val, model.predict(X_val_scaled))

    logger.info("Validation metrics:")
    for name, value in metrics.items():
        logger.info(f"  {name}: {value:.4f}")

    results = {
        'model_name': 'RandomForest',
        'feature_schema_version': FEATURE_SCHEMA_VERSION,
        'params': {
            'n_estimators': n_estimators,
            'max_depth': max_depth,
            'class_weight': 'balanced',
            'random_state': random_state,
        },
        'validation_metrics': metrics,
        'train_time_seconds': train_time,
        'train_samples': int(len(X_train)),
        'val_samples': int(len(X_val)),
        'malicious_ratio': float(np.mean(y_train)),
        'n_features': int(X_train.shape[1]),
        'n_jobs': n_jobs,
    }
    return model, scaler, results


def run_training(models_dir: Path,
                 data_path: Optional[str] = None,
                 n_samples: int = 20000,
                 n_estimators: int = 100,
                 max_depth: Optional[int] = None,
                 malicious_rate: float = 0.12,
                 n_jobs: Optional[int] = None,
                 random_state: int = RANDOM_STATE,
                 keep: Optional[int] = None,
                 version_id: Optional[str] = None) -> Tuple[Path, Dict[str, Any]]:
    """
    Load or generate data, train, and store a new version as LATEST.

    Returns:
        Tuple (version directory, results)
    """
    log_resource_status(logger)

    df = load_training_data(data_path, n_samples, malicious_rate, random_state)
    X, y = prepare_xy(df)
    if len(np.unique(y)) < 2:
        raise ValueError("Training data must contain both normal and malicious samples")

    X_train, X_val, y_train, y_val = train_test_split(
        X, y, test_size=VAL_SIZE, stratify=y, random_state=random_state
    )

    model, scaler, results = train_random_forest(
        X_train, y_train, X_val, y_val,
        n_estimators=n_estimators,
        max_depth=max_depth,
        n_jobs=n_jobs,
        random_state=random_state,
    )
    results['data_source'] = data_path or 'synthetic'

    version_dir, version_id = save_versioned_model(
        model, scaler, results, models_dir, version_id=version_id
    )
    logger.info(f"New version: {version_id}")

    if keep:
        cleanup_old_versions(models_dir, keep_n=keep)

    log_resource_status(logger)
    return version_dir, results


# ==============================================================================
# ARGUMENT PARSER
# ==============================================================================

def parse_arguments(argv=None):
    """Parse CLI arguments."""
    config = get_config()
    parser = argparse.ArgumentParser(
        description='Train the NetHawk packet classifier',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m nethawk.training.random_forest
  python -m nethawk.training.random_forest --samples 2000 --n-estimators 20
  python -m nethawk.training.random_forest --data labelled.csv
        """
    )

    parser.add_argument('--samples', type=int, default=config.model.training_samples,
                        help=f'Synthetic samples (default: {config.model.training_samples})')
    parser.add_argument('--data', type=str, default=None,
                        help='Labelled CSV instead of synthetic traffic')
    parser.add_argument('--n-estimators', type=int, default=config.model.n_estimators,
                        help=f'Trees (default: {config.model.n_estimators})')
    parser.add_argument('--max-depth', type=int, default=config.model.max_depth,
                        help='Maximum depth (default: unlimited)')
    parser.add_argument('--malicious-rate', type=float, default=config.capture.malicious_rate,
                        help='Malicious share of synthetic traffic')
    parser.add_argument('--n-jobs', type=int, default=None,
                        help='CPU cores (default: auto)')
    parser.add_argument('--models-dir', type=str, default=str(config.paths.models_dir),
                        help='Models directory')
    parser.add_argument('--keep', type=int, default=None,
                        help='Versions to keep after training')
    parser.add_argument('--random-state', type=int, default=RANDOM_STATE,
                        help='Random seed')

    return parser.parse_args(argv)


# ==============================================================================
# MAIN
# ==============================================================================

def main(argv=None):
    """Main entry point."""
    args = parse_arguments(argv)

    print("\n" + "=" * 60)
    print("RANDOM FOREST TRAINING")
    print("=" * 60)
    print(f"\nParameters:")
    print(f"  Data:          {args.data or f'synthetic ({args.samples:,} samples)'}")
    print(f"  Trees:         {args.n_estimators}")
    print(f"  Max depth:     {args.max_depth or 'unlimited'}")
    print(f"  Models dir:    {args.models_dir}")

    version_dir, results = run_training(
        models_dir=Path(args.models_dir),
        data_path=args.data,
        n_samples=args.samples,
        n_estimators=args.n_estimators,
        max_depth=args.max_depth,
        malicious_rate=args.malicious_rate,
        n_jobs=args.n_jobs,
        random_state=args.random_state,
        keep=args.keep,
    )

    metrics = results['validation_metrics']
    print("\n" + "=" * 60)
    print("TRAINING COMPLETED")
    print("=" * 60)
    print(f"\nValidation:")
    print(f"  F1:        {metrics['f1']:.4f}")
    print(f"  Recall:    {metrics['recall']:.4f}")
    print(f"  FPR:       {metrics['false_positive_rate']:.4f}")
    print(f"\nSaved to: {version_dir}")


if __name__ == '__main__':
    main()
