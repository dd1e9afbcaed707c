import shutil
import threading

import numpy as np
import pytest

from nethawk.classifier import ClassificationResult, Classifier, Label, ModelHandle
from nethawk.errors import ModelUnavailable, SchemaError
from nethawk.features import FeatureExtractor, N_FEATURES, get_schema
from nethawk.generator import SyntheticTrafficGenerator

from conftest import FixedProbabilityModel, IdentityScaler


def test_malicious_above_threshold(fixed_classifier, make_packet):
    result = fixed_classifier(0.81).predict(FeatureExtractor().extract(make_packet()))

    assert result.label is Label.MALICIOUS
    assert result.confidence == pytest.approx(0.81)
    assert result.malicious_probability == pytest.approx(0.81)
    assert result.model_version == 'fixed'


def test_threshold_is_inclusive(fixed_classifier, make_packet):
    result = fixed_classifier(0.7).predict(FeatureExtractor().extract(make_packet()))
    assert result.label is Label.MALICIOUS


def test_majority_vote_below_threshold_is_normal(fixed_classifier, make_packet):
    # 0.6 would be "malicious" under the forest's own 0.5 vote
    result = fixed_classifier(0.6).predict(FeatureExtractor().extract(make_packet()))

    assert result.label is Label.NORMAL
    assert result.confidence == pytest.approx(0.4)


def test_threshold_is_configurable(fixed_classifier, make_packet):
    result = fixed_classifier(0.6, threshold=0.5).predict(
        FeatureExtractor().extract(make_packet()))
    assert result.label is Label.MALICIOUS


def test_invalid_threshold():
    with pytest.raises(ValueError):
        Classifier(threshold=1.5)


def test_without_model_fails_closed(make_packet):
    classifier = Classifier()
    assert not classifier.available
    with pytest.raises(ModelUnavailable):
        classifier.predict(FeatureExtractor().extract(make_packet()))


def test_missing_artifact_gives_unavailable_classifier(tmp_path):
    classifier = Classifier.from_directory(tmp_path / 'nothing-here')
    assert not classifier.available
    assert classifier.version is None


def test_unloadable_model_gives_unavailable_classifier(trained_models_dir, tmp_path,
                                                      make_packet):
    models_dir = tmp_path / 'models'
    shutil.copytree(trained_models_dir, models_dir)
    # Pickle referencing a module that is not installed
    (models_dir / 'rf_test' / 'model.pkl').write_bytes(b'cnonexistent_mod\nThing\n.')

    classifier = Classifier.from_directory(models_dir)

    assert not classifier.available
    with pytest.raises(ModelUnavailable):
        classifier.predict(FeatureExtractor().extract(make_packet()))


def test_unknown_result():
    result = ClassificationResult.unknown()
    assert result.label is Label.UNKNOWN
    assert not result.is_malicious


def test_handle_rejects_mismatched_schema():
    schema = get_schema()
    schema['features'] = schema['features'][::-1]
    with pytest.raises(SchemaError):
        ModelHandle(FixedProbabilityModel(0.5), IdentityScaler(), 'bad', schema)


def test_handle_rejects_model_without_malicious_class():
    model = FixedProbabilityModel(0.5)
    model.classes_ = np.array([0, 2])
    with pytest.raises(SchemaError):
        ModelHandle(model, IdentityScaler(), 'bad', get_schema())


def test_trained_model_is_deterministic(trained_models_dir):
    classifier = Classifier.from_directory(trained_models_dir)
    assert classifier.version == 'rf_test'

    extractor = FeatureExtractor()
    for packet in SyntheticTrafficGenerator(malicious_rate=0.5, seed=3).packets(20):
        features = extractor.extract(packet)
        assert classifier.predict(features) == classifier.predict(features)


def test_trained_model_separates_synthetic_traffic(trained_models_dir):
    classifier = Classifier.from_directory(trained_models_dir)
    extractor = FeatureExtractor()
    generator = SyntheticTrafficGenerator(malicious_rate=0.5, seed=11)

    correct = 0
    total = 200
    for _ in range(total):
        packet, label = generator.next_packet()
        result = classifier.predict(extractor.extract(packet))
        correct += int(result.is_malicious == bool(label))
    assert correct / total > 0.9


def test_predict_batch_matches_single(trained_models_dir):
    classifier = Classifier.from_directory(trained_models_dir)
    packets = list(SyntheticTrafficGenerator(seed=5).packets(10))
    matrix = FeatureExtractor().extract_batch(packets)

    batch = classifier.predict_batch(matrix)
    single = [classifier.predict(FeatureExtractor().extract(p)) for p in packets]
    assert batch == single

    with pytest.raises(SchemaError):
        classifier.predict_batch(np.zeros((2, N_FEATURES + 1)))


def test_swap_replaces_handle_atomically(fixed_classifier, make_packet):
    classifier = fixed_classifier(0.2, version='v1')
    features = FeatureExtractor().extract(make_packet())
    new_handle = ModelHandle(FixedProbabilityModel(0.95), IdentityScaler(), 'v2', get_schema())

    previous = classifier.swap(new_handle)

    assert previous.version == 'v1'
    result = classifier.predict(features)
    assert result.model_version == 'v2'
    assert result.label is Label.MALICIOUS


def test_predictions_during_swaps_use_one_whole_version(fixed_classifier, make_packet):
    classifier = fixed_classifier(0.1, version='low')
    features = FeatureExtractor().extract(make_packet())
    handles = [
        ModelHandle(FixedProbabilityModel(0.1), IdentityScaler(), 'low', get_schema()),
        ModelHandle(FixedProbabilityModel(0.9), IdentityScaler(), 'high', get_schema()),
    ]
    stop = threading.Event()

    def swapper():
        i = 0
        while not stop.is_set():
            classifier.swap(handles[i % 2])
            i += 1

    thread = threading.Thread(target=swapper)
    thread.start()
    try:
        for _ in range(500):
            result = classifier.predict(features)
            expected = 0.1 if result.model_version == 'low' else 0.9
            assert result.malicious_probability == pytest.approx(expected)
    finally:
        stop.set()
        thread.join()


def test_failed_load_keeps_serving_version(trained_models_dir):
    classifier = Classifier.from_directory(trained_models_dir)
    assert not classifier.load(trained_models_dir, 'does_not_exist')
    assert classifier.version == 'rf_test'
