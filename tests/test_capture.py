import pytest
from scapy.all import ARP, ICMP, IP, TCP, UDP, Ether, IPv6, Raw, wrpcap

from nethawk.capture import PacketProcessor, PcapSource
from nethawk.features import FeatureExtractor
from nethawk.packets import Protocol


def test_tcp_packet():
    frame = Ether() / IP(src='203.0.113.7', dst='10.0.0.5', ttl=48) / \
        TCP(sport=40000, dport=31337, flags='S', window=1024)

    record = PacketProcessor.process(frame)

    assert record.src_ip == '203.0.113.7'
    assert record.dst_ip == '10.0.0.5'
    assert record.protocol is Protocol.TCP
    assert record.ttl == 48
    assert record.size == 40
    assert (record.src_port, record.dst_port) == (40000, 31337)
    assert record.has_flag('SYN') and not record.has_flag('ACK')
    assert record.window_size == 1024

    FeatureExtractor().extract(record)


def test_udp_packet():
    record = PacketProcessor.process(IP(src='10.0.0.1', dst='8.8.8.8') /
                                     UDP(sport=5353, dport=53) / Raw(b'x' * 12))
    assert record.protocol is Protocol.UDP
    assert record.dst_port == 53
    assert record.size == 20 + 8 + 12
    assert record.flags == 0


def test_icmp_packet():
    record = PacketProcessor.process(IP(src='10.0.0.1', dst='10.0.0.2', ttl=64) / ICMP())
    assert record.protocol is Protocol.ICMP
    assert record.src_port is None and record.dst_port is None
    assert record.ttl == 64


def test_ipv6_packet():
    record = PacketProcessor.process(IPv6(src='2001:db8::1', dst='2001:db8::2', hlim=30) /
                                     TCP(sport=1234, dport=80))
    assert record.src_ip == '2001:db8::1'
    assert record.ttl == 30
    assert record.protocol is Protocol.TCP


@pytest.mark.parametrize('frame', [
    Ether() / ARP(),
    IP(src='10.0.0.1', dst='10.0.0.2', proto=47) / Raw(b'gre'),
])
def test_unsupported_frames_are_skipped(frame):
    assert PacketProcessor.process(frame) is None


def test_pcap_source(tmp_path):
    path = tmp_path / 'capture.pcap'
    wrpcap(str(path), [
        Ether() / IP(src='203.0.113.7', dst='10.0.0.5') / TCP(sport=40000, dport=31337),
        Ether() / ARP(),
        Ether() / IP(src='10.0.0.1', dst='8.8.8.8') / UDP(sport=5353, dport=53),
        Ether() / IP(src='10.0.0.1', dst='10.0.0.2') / ICMP(),
    ])

    source = PcapSource(str(path))
    records = list(source)

    assert [r.protocol for r in records] == [Protocol.TCP, Protocol.UDP, Protocol.ICMP]
    assert source.frames_read == 4
    assert source.frames_skipped == 1


def test_pcap_source_max_packets(tmp_path):
    path = tmp_path / 'capture.pcap'
    wrpcap(str(path), [Ether() / IP(src='10.0.0.1', dst='10.0.0.2') / ICMP()] * 5)

    assert len(list(PcapSource(str(path), max_packets=2))) == 2


def test_pcap_source_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        PcapSource(str(tmp_path / 'missing.pcap'))
