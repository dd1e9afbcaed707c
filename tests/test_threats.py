import pytest

from nethawk.classifier import ClassificationResult, Label
from nethawk.config import DetectionConfig
from nethawk.packets import Protocol
from nethawk.threats import UNKNOWN_ATTACK, Severity, ThreatAggregator


def malicious(confidence):
    return ClassificationResult(Label.MALICIOUS, confidence, confidence, 'test')


@pytest.mark.parametrize('confidence, severity', [
    (0.99, Severity.HIGH),
    (0.86, Severity.HIGH),
    (0.85, Severity.MEDIUM),
    (0.81, Severity.MEDIUM),
    (0.75, Severity.LOW),
    (0.70, Severity.LOW),
])
def test_severity_bands(confidence, severity):
    assert Severity.from_confidence(confidence) is severity


def test_suspicious_port_scenario(make_packet):
    packet = make_packet(src_ip='203.0.113.7', dst_port=31337, size=45, ttl=48)
    event = ThreatAggregator().evaluate(packet, malicious(0.81))

    assert event is not None
    assert event.severity is Severity.MEDIUM
    assert event.attack_type == 'Backdoor Communication'
    assert event.reasons == ('Suspicious port usage',)
    assert event.src_ip == '203.0.113.7'
    assert event.confidence == pytest.approx(0.81)
    assert event.packet_id == packet.id
    assert not event.blocked


def test_normal_result_produces_no_event(make_packet):
    result = ClassificationResult(Label.NORMAL, 0.9, 0.1)
    assert ThreatAggregator().evaluate(make_packet(), result) is None


def test_unknown_result_produces_no_event(make_packet):
    assert ThreatAggregator().evaluate(make_packet(), ClassificationResult.unknown()) is None


def test_confidence_below_threshold_produces_no_event(make_packet):
    aggregator = ThreatAggregator(threshold=0.8)
    assert aggregator.evaluate(make_packet(), malicious(0.75)) is None


def test_first_rule_in_priority_order_names_the_attack(make_packet):
    # Botnet host, backdoor port, tiny packet and low TTL all match
    packet = make_packet(src_ip='185.220.101.42', dst_port=4444, size=30, ttl=20)
    event = ThreatAggregator().evaluate(packet, malicious(0.95))

    assert event.attack_type == 'Botnet Communication'
    assert event.reasons[0] == 'Known malicious IP'
    assert 'Suspicious port usage' in event.reasons
    assert 'Anomalous packet size' in event.reasons
    assert 'Suspicious TTL value' in event.reasons
    # Severity follows the classifier only
    assert event.severity is Severity.HIGH


@pytest.mark.parametrize('src_ip, attack_type', [
    ('91.240.118.172', 'Network Reconnaissance'),
    ('23.129.64.218', 'Command & Control'),
    ('178.128.83.165', 'Known Malicious Host'),
])
def test_known_bad_address_categories(make_packet, src_ip, attack_type):
    packet = make_packet(src_ip=src_ip, dst_port=8080, size=500, ttl=64)
    assert ThreatAggregator().classify_attack(packet)[0] == attack_type


@pytest.mark.parametrize('overrides, attack_type', [
    ({'dst_port': 22}, 'Port Scan'),
    ({'size': 1500}, 'Buffer Overflow Attempt'),
    ({'size': 30}, 'Reconnaissance'),
    ({'ttl': 10}, 'IP Spoofing'),
    ({'protocol': Protocol.ICMP, 'src_port': None, 'dst_port': None, 'size': 600},
     'ICMP Flood'),
    ({'src_port': 50000, 'dst_port': 60000}, 'Suspicious Communication'),
])
def test_single_rules(make_packet, overrides, attack_type):
    fields = dict(src_ip='192.168.1.50', dst_port=8081, size=500, ttl=64)
    fields.update(overrides)
    assert ThreatAggregator().classify_attack(make_packet(**fields))[0] == attack_type


def test_external_access_to_privileged_port(make_packet):
    aggregator = ThreatAggregator()
    external = make_packet(src_ip='8.8.4.4', dst_port=636, size=500, ttl=64)
    internal = make_packet(src_ip='10.1.2.3', dst_port=636, size=500, ttl=64)

    assert aggregator.classify_attack(external)[0] == 'Unauthorized Access Attempt'
    assert aggregator.classify_attack(internal)[0] == UNKNOWN_ATTACK


@pytest.mark.parametrize('src_ip', ['203.0.113.7', '198.51.100.20', '192.0.2.1'])
def test_documentation_ranges_are_external(make_packet, src_ip):
    packet = make_packet(src_ip=src_ip, dst_port=22, size=500, ttl=64, protocol=Protocol.UDP)
    assert not ThreatAggregator().is_internal(src_ip)
    assert ThreatAggregator().classify_attack(packet)[0] == 'Unauthorized Access Attempt'


def test_no_rule_matches_gives_unknown_attack(make_packet):
    packet = make_packet(src_ip='192.168.1.50', dst_port=8081, size=500, ttl=64)
    event = ThreatAggregator().evaluate(packet, malicious(0.9))

    assert event.attack_type == UNKNOWN_ATTACK
    assert event.reasons == ()


def test_configured_internal_networks(make_packet):
    aggregator = ThreatAggregator(DetectionConfig(internal_networks=['100.64.0.0/10']))
    assert aggregator.is_internal('100.64.3.4')
    assert aggregator.is_internal('127.0.0.1')
    assert not aggregator.is_internal('8.8.8.8')
    assert not aggregator.is_internal('not-an-ip')


def test_with_blocked_returns_copy(make_packet):
    event = ThreatAggregator().evaluate(make_packet(), malicious(0.81))
    blocked = event.with_blocked(True)

    assert blocked.blocked and not event.blocked
    assert blocked.id == event.id
    assert blocked.to_dict()['severity'] == 'medium'
