import json

import numpy as np
import pytest
from sklearn.dummy import DummyClassifier
from sklearn.preprocessing import StandardScaler

from nethawk.classifier import Classifier
from nethawk.features import N_FEATURES, get_schema
from nethawk.model_versioning import (LATEST_POINTER, cleanup_old_versions, get_best_version,
                                      get_latest_version, list_model_versions,
                                      load_versioned_model, resolve_version_dir,
                                      save_versioned_model, set_latest_version)


def fitted_pair():
    rng = np.random.default_rng(0)
    X = rng.normal(size=(20, N_FEATURES))
    y = np.array([0, 1] * 10)
    return DummyClassifier(strategy='prior').fit(X, y), StandardScaler().fit(X)


def save(models_dir, version_id, f1, created_at=None, **kwargs):
    model, scaler = fitted_pair()
    results = {'validation_metrics': {'f1': f1}}
    version_dir, _ = save_versioned_model(model, scaler, results, models_dir,
                                          version_id=version_id, **kwargs)
    if created_at:
        path = version_dir / 'results.json'
        data = json.loads(path.read_text())
        data['version']['created_at'] = created_at
        path.write_text(json.dumps(data))
    return version_dir


def test_save_and_load(tmp_path):
    version_dir = save(tmp_path, 'rf_a', 0.9)

    artifact = load_versioned_model(version_dir)
    assert artifact['version_id'] == 'rf_a'
    assert artifact['schema'] == get_schema()
    assert artifact['results']['validation_metrics']['f1'] == 0.9
    assert hasattr(artifact['model'], 'predict_proba')
    assert (tmp_path / LATEST_POINTER).read_text().strip() == 'rf_a'


def test_latest_pointer_follows_newest_save(tmp_path):
    save(tmp_path, 'rf_a', 0.9)
    save(tmp_path, 'rf_b', 0.8)
    assert get_latest_version(tmp_path) == 'rf_b'
    assert resolve_version_dir(tmp_path) == tmp_path / 'rf_b'

    set_latest_version(tmp_path, 'rf_a')
    assert get_latest_version(tmp_path) == 'rf_a'


def test_save_without_updating_latest(tmp_path):
    save(tmp_path, 'rf_a', 0.9)
    save(tmp_path, 'rf_b', 0.95, update_latest=False)
    assert get_latest_version(tmp_path) == 'rf_a'


def test_set_latest_requires_existing_version(tmp_path):
    with pytest.raises(FileNotFoundError):
        set_latest_version(tmp_path, 'ghost')


def test_resolve_best_and_explicit(tmp_path):
    save(tmp_path, 'rf_a', 0.95)
    save(tmp_path, 'rf_b', 0.80)

    assert resolve_version_dir(tmp_path, 'best') == tmp_path / 'rf_a'
    assert resolve_version_dir(tmp_path, 'rf_b') == tmp_path / 'rf_b'
    assert get_best_version(tmp_path)['version_id'] == 'rf_a'

    with pytest.raises(FileNotFoundError):
        resolve_version_dir(tmp_path, 'rf_missing')


def test_empty_models_dir(tmp_path):
    assert list_model_versions(tmp_path / 'none') == []
    assert get_latest_version(tmp_path) is None
    assert get_best_version(tmp_path) is None
    with pytest.raises(FileNotFoundError):
        resolve_version_dir(tmp_path)


def test_cleanup_keeps_latest(tmp_path):
    save(tmp_path, 'rf_1', 0.9, created_at='2026-01-01T00:00:00')
    save(tmp_path, 'rf_2', 0.9, created_at='2026-01-02T00:00:00')
    save(tmp_path, 'rf_3', 0.9, created_at='2026-01-03T00:00:00')
    set_latest_version(tmp_path, 'rf_1')

    removed = cleanup_old_versions(tmp_path, keep_n=1)

    assert removed == ['rf_2']
    assert sorted(v['version_id'] for v in list_model_versions(tmp_path)) == ['rf_1', 'rf_3']


def test_classifier_loads_saved_version(tmp_path):
    save(tmp_path, 'rf_a', 0.9)
    classifier = Classifier.from_directory(tmp_path)
    assert classifier.available
    assert classifier.version == 'rf_a'


def test_version_without_schema_is_rejected(tmp_path):
    version_dir = save(tmp_path, 'rf_a', 0.9)
    (version_dir / 'schema.json').unlink()

    classifier = Classifier.from_directory(tmp_path)
    assert not classifier.available
