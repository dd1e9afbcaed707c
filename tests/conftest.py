from datetime import datetime, timedelta

import numpy as np
import pytest

from nethawk.blocking import BlockController, DurationPolicy
from nethawk.classifier import Classifier, ModelHandle
from nethawk.errors import FirewallApplyError
from nethawk.features import get_schema
from nethawk.packets import PacketRecord, Protocol, flags_from_names


class FixedProbabilityModel:
    """Estimator stand-in: the same malicious probability for every row."""
    classes_ = np.array([0, 1])

    def __init__(self, probability):
        self.probability = probability

    def predict_proba(self, X):
        p = np.full(len(np.asarray(X)), self.probability)
        return np.column_stack([1.0 - p, p])


class IdentityScaler:
    def transform(self, X):
        return np.asarray(X, dtype=np.float64)


class FakeFirewall:
    """Records rules in memory; fails the first N applies/revokes."""

    def __init__(self, fail_apply=0, fail_revoke=0):
        self.enabled = True
        self.rules = set()
        self.calls = []
        self.fail_apply = fail_apply
        self.fail_revoke = fail_revoke

    def apply(self, address, reason='attack_detected'):
        self.calls.append(('apply', address))
        if self.fail_apply:
            self.fail_apply -= 1
            raise FirewallApplyError(address, 'apply', cause=RuntimeError('iptables busy'))
        self.rules.add(address)

    def revoke(self, address):
        self.calls.append(('revoke', address))
        if self.fail_revoke:
            self.fail_revoke -= 1
            raise FirewallApplyError(address, 'revoke', cause=RuntimeError('iptables busy'))
        self.rules.discard(address)

    def describe(self):
        return 'fake'


class FakeClock:
    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def firewall():
    return FakeFirewall()


@pytest.fixture
def events():
    return []


@pytest.fixture
def controller(clock, firewall, events):
    return BlockController(
        whitelist=['127.0.0.1', '192.168.1.1'],
        firewall=firewall,
        duration_policy=DurationPolicy([(0.9, 15), (0.0, 10)]),
        event_sink=events.append,
        clock=clock,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def make_packet():
    def factory(**overrides):
        fields = dict(
            src_ip='203.0.113.7',
            dst_ip='10.0.0.5',
            protocol=Protocol.TCP,
            size=45,
            ttl=48,
            src_port=40000,
            dst_port=31337,
            flags=flags_from_names('SYN'),
            window_size=1024,
        )
        fields.update(overrides)
        return PacketRecord.create(**fields)
    return factory


@pytest.fixture
def fixed_classifier():
    def factory(probability, version='fixed', threshold=0.7):
        handle = ModelHandle(FixedProbabilityModel(probability), IdentityScaler(),
                             version, get_schema())
        return Classifier(handle, threshold=threshold)
    return factory


@pytest.fixture(scope='session')
def trained_models_dir(tmp_path_factory):
    """A models directory holding one small Random Forest trained on synthetic traffic."""
    from nethawk.training.random_forest import run_training

    models_dir = tmp_path_factory.mktemp('models')
    run_training(models_dir, n_samples=3000, n_estimators=15, n_jobs=1,
                 version_id='rf_test')
    return models_dir
