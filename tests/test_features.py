import numpy as np
import pytest

from nethawk.errors import SchemaError
from nethawk.features import (FEATURE_NAMES, FEATURE_SCHEMA_VERSION, N_FEATURES, FeatureExtractor,
                              FeatureVector, get_schema, validate_schema)
from nethawk.generator import SyntheticTrafficGenerator
from nethawk.packets import PacketRecord, Protocol, flags_from_names


def test_tcp_packet_encoding(make_packet):
    packet = make_packet(flags=flags_from_names('SYN', 'ACK'), window_size=8192)
    vector = FeatureExtractor().extract(packet)

    assert len(vector) == N_FEATURES
    assert vector['protocol_class'] == 6
    assert vector['size'] == 45
    assert vector['ttl'] == 48
    assert vector['src_port'] == 40000
    assert vector['dst_port'] == 31337
    assert vector['flag_syn'] == 1 and vector['flag_ack'] == 1
    assert vector['flag_fin'] == 0 and vector['flag_rst'] == 0
    assert vector['window_size'] == 8192
    assert (vector['is_tcp'], vector['is_udp'], vector['is_icmp']) == (1, 0, 0)


def test_udp_packet_fills_tcp_fields_with_zero(make_packet):
    packet = make_packet(protocol=Protocol.UDP, src_port=5353, dst_port=53,
                         flags=flags_from_names('SYN'), window_size=999)
    vector = FeatureExtractor().extract(packet)

    assert vector['protocol_class'] == 17
    assert vector['dst_port'] == 53
    assert all(vector[name] == 0 for name in FEATURE_NAMES if name.startswith('flag_'))
    assert vector['window_size'] == 0
    assert vector['is_udp'] == 1


def test_icmp_packet_has_zero_ports(make_packet):
    packet = make_packet(protocol='icmp', src_port=None, dst_port=None, flags=0, size=84)
    vector = FeatureExtractor().extract(packet)

    assert vector['protocol_class'] == 1
    assert vector['src_port'] == 0 and vector['dst_port'] == 0
    assert vector['is_icmp'] == 1


@pytest.mark.parametrize('field', ['src_ip', 'dst_ip', 'protocol', 'size', 'ttl'])
def test_missing_required_field_raises(make_packet, field):
    packet = make_packet(**{field: None})
    with pytest.raises(SchemaError):
        FeatureExtractor().extract(packet)


def test_tcp_without_ports_raises(make_packet):
    with pytest.raises(SchemaError):
        FeatureExtractor().extract(make_packet(dst_port=None))


@pytest.mark.parametrize('overrides', [
    {'ttl': 256},
    {'ttl': -1},
    {'dst_port': 70000},
    {'size': 'large'},
    {'flags': 'SYN'},
    {'flags': 'S'},
    {'flags': 256},
])
def test_out_of_range_fields_raise(make_packet, overrides):
    with pytest.raises(SchemaError):
        FeatureExtractor().extract(make_packet(**overrides))


def test_schema_error_is_a_value_error(make_packet):
    with pytest.raises(ValueError):
        FeatureExtractor().extract(make_packet(src_ip=''))


def test_extract_is_deterministic(make_packet):
    packet = make_packet()
    extractor = FeatureExtractor()
    assert extractor.extract(packet) == extractor.extract(packet)


def test_every_well_formed_packet_yields_fixed_length():
    generator = SyntheticTrafficGenerator(malicious_rate=0.5, seed=7)
    extractor = FeatureExtractor()
    for packet in generator.packets(500):
        assert extractor.extract(packet).values.shape == (N_FEATURES,)


def test_feature_vector_is_read_only(make_packet):
    vector = FeatureExtractor().extract(make_packet())
    with pytest.raises(ValueError):
        vector.values[0] = 99


def test_feature_vector_rejects_wrong_shape():
    with pytest.raises(SchemaError):
        FeatureVector(np.zeros(N_FEATURES - 1))


def test_extract_batch(make_packet):
    packets = [make_packet(), make_packet(protocol=Protocol.UDP, dst_port=53)]
    matrix = FeatureExtractor().extract_batch(packets)
    assert matrix.shape == (2, N_FEATURES)
    assert FeatureExtractor().extract_batch([]).shape == (0, N_FEATURES)


def test_schema_validation():
    validate_schema(get_schema())

    with pytest.raises(SchemaError):
        validate_schema(None)
    with pytest.raises(SchemaError):
        validate_schema({'version': FEATURE_SCHEMA_VERSION + 1, 'features': FEATURE_NAMES})
    with pytest.raises(SchemaError):
        validate_schema({'version': FEATURE_SCHEMA_VERSION,
                         'features': list(reversed(FEATURE_NAMES))})


def test_packet_record_is_immutable(make_packet):
    packet = make_packet()
    with pytest.raises(AttributeError):
        packet.ttl = 10
    assert isinstance(packet, PacketRecord)
