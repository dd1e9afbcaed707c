"""
================================================================================
NetHawk - Packet Capture
================================================================================

Scapy adapters that turn captured frames into PacketRecords.

    PacketProcessor   scapy packet -> PacketRecord (TCP, UDP, ICMP over IP)
    PcapSource        iterable over the records of a PCAP file
    LiveCapture       sniffs an interface and pushes records to a callback

Link-layer decoding is scapy's; this module only picks fields.

Usage:
    for record in PcapSource('capture.pcap'):
        engine.process(record)

    LiveCapture('eth0').run(engine.submit, duration=300)

================================================================================
"""

import os
import threading
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from scapy.all import ICMP, IP, TCP, UDP, IPv6, Packet, sniff
from scapy.utils import PcapReader

from .packets import PacketRecord, Protocol
from .utils import get_logger

logger = get_logger(__name__)


# =============================================================================
# PACKET PROCESSOR
# =============================================================================

class PacketProcessor:
    """Extracts PacketRecords from Scapy packets."""

    @classmethod
    def process(cls, packet: Packet) -> Optional[PacketRecord]:
        """
        Extract a PacketRecord from a Scapy packet.

        Args:
            packet: Scapy packet object

        Returns:
            PacketRecord for TCP, UDP or ICMP over IP, None otherwise
        """
        if packet.haslayer(IP):
            ip_layer = packet[IP]
            ttl = int(ip_layer.ttl)
            size = int(ip_layer.len) if ip_layer.len is not None else len(ip_layer)
        elif packet.haslayer(IPv6):
            ip_layer = packet[IPv6]
            ttl = int(ip_layer.hlim)
            size = len(ip_layer)
        else:
            return None

        src_port = dst_port = None
        flags = 0
        window_size = None

        if packet.haslayer(TCP):
            protocol = Protocol.TCP
            transport = packet[TCP]
            src_port = int(transport.sport)
            dst_port = int(transport.dport)
            flags = int(transport.flags)
            window_size = int(transport.window)
        elif packet.haslayer(UDP):
            protocol = Protocol.UDP
            transport = packet[UDP]
            src_port = int(transport.sport)
            dst_port = int(transport.dport)
        elif packet.haslayer(ICMP):
            protocol = Protocol.ICMP
        else:
            return None

        timestamp = datetime.fromtimestamp(float(packet.time)) if packet.time else None

        return PacketRecord.create(
            src_ip=ip_layer.src,
            dst_ip=ip_layer.dst,
            protocol=protocol,
            size=size,
            ttl=ttl,
            src_port=src_port,
            dst_port=dst_port,
            flags=flags,
            window_size=window_size,
            timestamp=timestamp,
        )


# =============================================================================
# PCAP REPLAY
# =============================================================================

class PcapSource:
    """
    Streams the records of a PCAP file.

    Uses PcapReader so large captures are never loaded into memory.
    Frames that are not TCP, UDP or ICMP over IP are skipped and counted.
    """

    def __init__(self, pcap_path: str, max_packets: Optional[int] = None,
                 progress_interval: int = 10000):
        if not os.path.exists(pcap_path):
            raise FileNotFoundError(f"PCAP not found: {pcap_path}")
        self.pcap_path = pcap_path
        self.max_packets = max_packets
        self.progress_interval = progress_interval
        self.frames_read = 0
        self.frames_skipped = 0

    def __iter__(self) -> Iterator[PacketRecord]:
        file_size_mb = os.path.getsize(self.pcap_path) / (1024 * 1024)
        logger.info(f"Reading PCAP: {self.pcap_path} ({file_size_mb:.1f} MB)")

        produced = 0
        with PcapReader(self.pcap_path) as reader:
            for frame in reader:
                if self.max_packets and produced >= self.max_packets:
                    break
                self.frames_read += 1

                record = PacketProcessor.process(frame)
                if record is None:
                    self.frames_skipped += 1
                    continue

                produced += 1
                if produced % self.progress_interval == 0:
                    logger.info(f"Read {produced:,} packets...")
                yield record

        logger.info(f"Finished reading {self.frames_read:,} frames "
                    f"({self.frames_skipped:,} skipped)")


# =============================================================================
# LIVE CAPTURE
# =============================================================================

class LiveCapture:
    """
    Live interface capture.

    Scapy evaluates the stop filter when a frame arrives, so a stop request
    on a silent interface takes effect at the next frame or at the timeout.
    """

    def __init__(self, interface: str = 'eth0', bpf_filter: str = 'ip',
                 promiscuous: bool = True):
        self.interface = interface
        self.bpf_filter = bpf_filter
        self.promiscuous = promiscuous
        self.frames_seen = 0
        self.frames_skipped = 0

    def run(self, on_packet: Callable[[PacketRecord], Any],
            duration: Optional[float] = None,
            stop_event: Optional[threading.Event] = None) -> None:
        """
        Capture until ``duration`` elapsed or ``stop_event`` is set.

        Args:
            on_packet: Receives every extracted PacketRecord; must not block
        """
        stop_event = stop_event or threading.Event()

        def handle(frame: Packet):
            self.frames_seen += 1
            record = PacketProcessor.process(frame)
            if record is None:
                self.frames_skipped += 1
                return
            on_packet(record)

        logger.info(f"Starting live capture on {self.interface}")
        logger.info(f"Filter: {self.bpf_filter}, Duration: {duration or 'indefinite'}")

        sniff(
            iface=self.interface,
            filter=self.bpf_filter,
            prn=handle,
            store=False,
            timeout=duration,
            promisc=self.promiscuous,
            stop_filter=lambda _: stop_event.is_set(),
        )
        logger.info(f"Capture ended: {self.frames_seen:,} frames "
                    f"({self.frames_skipped:,} skipped)")
