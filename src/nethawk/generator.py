"""
================================================================================
NetHawk - Synthetic Traffic Generator
================================================================================

Labelled synthetic packets for demo runs and for training data.

Benign traffic mixes internal hosts and well known external services on
common ports with standard OS TTLs. Malicious traffic comes from known bad
hosts, uses backdoor ports or scanned service ports, has unusual sizes,
modified TTLs and scan-style TCP flag combinations.

Usage:
    gen = SyntheticTrafficGenerator(seed=42)
    packet, label = gen.next_packet()
    df = gen.generate_dataset(20000)

================================================================================
"""

import threading
import time
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from .config import DetectionConfig
from .features import FEATURE_NAMES, FeatureExtractor
from .packets import PacketRecord, Protocol, flags_from_names
from .utils import RANDOM_STATE, get_logger

logger = get_logger(__name__)


# ==============================================================================
# TRAFFIC PROFILES
# ==============================================================================

COMMON_PORTS = [80, 443, 22, 21, 25, 53, 110, 143, 993, 995, 3389, 5432, 3306,
                8080, 8443, 587, 465]

INTERNAL_IPS = [
    '192.168.1.100', '192.168.1.101', '192.168.1.102', '192.168.1.103', '192.168.1.104',
    '10.0.0.50', '10.0.0.51', '10.0.0.52', '172.16.0.100', '172.16.0.101',
]

LEGITIMATE_EXTERNAL_IPS = [
    '8.8.8.8', '1.1.1.1', '208.67.222.222', '74.125.224.72', '151.101.193.140',
    '13.107.42.14', '52.96.0.1', '40.96.0.1',
]

NORMAL_TTLS = [64, 128, 255]
INTERNAL_TTLS = [64, 128]
SUSPICIOUS_TTLS = [32, 48, 96, 112]

NORMAL_TCP_FLAGS = [
    flags_from_names('ACK'),
    flags_from_names('PSH', 'ACK'),
    flags_from_names('SYN'),
    flags_from_names('SYN', 'ACK'),
    flags_from_names('FIN', 'ACK'),
]
SCAN_TCP_FLAGS = [
    flags_from_names('SYN'),
    flags_from_names('FIN'),
    flags_from_names('RST'),
    flags_from_names('FIN', 'PSH', 'URG'),
    0,
]

NORMAL_WINDOWS = [29200, 64240, 65535, 8192]
SCAN_WINDOWS = [0, 512, 1024, 4096]

LABEL_COLUMN = 'label'


def traffic_multiplier(hour: int) -> float:
    """Relative traffic volume by hour: busier in office hours, quiet at night."""
    if 9 <= hour <= 17:
        return 1.5
    if hour >= 22 or hour <= 6:
        return 0.3
    return 1.0


# ==============================================================================
# GENERATOR
# ==============================================================================

class SyntheticTrafficGenerator:
    """
    Produces (PacketRecord, label) pairs, label 1 for malicious.

    Args:
        malicious_rate: Base fraction of malicious packets
        scanning_rate: Fraction of packets using scanned service ports
        detection: Source of the known bad hosts and backdoor ports
        time_of_day: Scale the malicious rate by the hour of day (more
            attacks in low traffic hours)
        seed: Seed of the numpy random generator
    """

    def __init__(self, malicious_rate: float = 0.12, scanning_rate: float = 0.05,
                 detection: Optional[DetectionConfig] = None,
                 time_of_day: bool = False, seed: Optional[int] = RANDOM_STATE):
        if not 0.0 <= malicious_rate <= 1.0:
            raise ValueError(f"malicious_rate must be in [0, 1], got {malicious_rate}")
        self.malicious_rate = malicious_rate
        self.scanning_rate = scanning_rate
        self.time_of_day = time_of_day
        self.detection = detection or DetectionConfig()
        self.rng = np.random.default_rng(seed)

        self._bad_hosts = list(self.detection.known_malicious_ips)
        self._malicious_ports = list(self.detection.suspicious_ports)
        self._scanned_ports = list(self.detection.scanned_ports)
        self._benign_hosts = INTERNAL_IPS + LEGITIMATE_EXTERNAL_IPS

    def _pick(self, pool: List):
        return pool[int(self.rng.integers(len(pool)))]

    def current_malicious_rate(self, now: Optional[datetime] = None) -> float:
        if not self.time_of_day:
            return self.malicious_rate
        hour = (now or datetime.now()).hour
        return min(1.0, self.malicious_rate * (2 - traffic_multiplier(hour)))

    # ------------------------------------------------------------------
    # Field generators
    # ------------------------------------------------------------------

    def _size(self, protocol: Protocol, malicious: bool) -> int:
        if malicious:
            roll = self.rng.random()
            if roll < 0.3:
                return int(self.rng.integers(20, 120))
            if roll < 0.5:
                return int(self.rng.integers(1400, 1900))
        if protocol is Protocol.TCP:
            return int(self.rng.integers(100, 1300))
        if protocol is Protocol.UDP:
            return int(self.rng.integers(64, 864))
        return int(self.rng.integers(28, 228))

    def _ttl(self, src_ip: str, malicious: bool) -> int:
        if malicious:
            return self._pick(SUSPICIOUS_TTLS)
        if src_ip in INTERNAL_IPS:
            return self._pick(INTERNAL_TTLS)
        return self._pick(NORMAL_TTLS)

    def _ports(self, malicious: bool, scanning: bool) -> Tuple[int, int]:
        ephemeral = int(self.rng.integers(32768, 61000))
        if scanning:
            return ephemeral, self._pick(self._scanned_ports)
        if malicious:
            if self.rng.random() < 0.5:
                return self._pick(self._malicious_ports), self._pick(self._malicious_ports)
            return ephemeral, self._pick(self._malicious_ports)
        return ephemeral, self._pick(COMMON_PORTS)

    # ------------------------------------------------------------------
    # Packets
    # ------------------------------------------------------------------

    def next_packet(self) -> Tuple[PacketRecord, int]:
        """One labelled packet."""
        malicious = bool(self.rng.random() < self.current_malicious_rate())
        scanning = malicious and bool(self.rng.random() < self.scanning_rate / max(self.malicious_rate, 1e-9))
        protocol = self._pick([Protocol.TCP, Protocol.TCP, Protocol.UDP, Protocol.ICMP])
        if scanning:
            protocol = Protocol.TCP

        src_ip = self._pick(self._bad_hosts if malicious else self._benign_hosts)
        dst_ip = self._pick(INTERNAL_IPS)

        src_port = dst_port = None
        if protocol is not Protocol.ICMP:
            src_port, dst_port = self._ports(malicious, scanning)

        flags = 0
        window = None
        if protocol is Protocol.TCP:
            flags = self._pick(SCAN_TCP_FLAGS if malicious else NORMAL_TCP_FLAGS)
            window = self._pick(SCAN_WINDOWS if malicious else NORMAL_WINDOWS)

        packet = PacketRecord.create(
            src_ip=src_ip,
            dst_ip=dst_ip,
            protocol=protocol,
            size=self._size(protocol, malicious),
            ttl=self._ttl(src_ip, malicious),
            src_port=src_port,
            dst_port=dst_port,
            flags=flags,
            window_size=window,
        )
        return packet, int(malicious)

    def packets(self, count: int) -> Iterator[PacketRecord]:
        """``count`` packets without labels."""
        for _ in range(count):
            yield self.next_packet()[0]

    def stream(self, packets_per_second: float = 50.0,
               duration: Optional[float] = None,
               max_packets: Optional[int] = None,
               stop_event: Optional[threading.Event] = None) -> Iterator[PacketRecord]:
        """
        Paced packet stream, as a live capture would deliver it.

        Ends when ``duration`` seconds elapsed, ``max_packets`` were
        produced or ``stop_event`` is set.
        """
        interval = 1.0 / packets_per_second if packets_per_second > 0 else 0.0
        start = time.monotonic()
        produced = 0
        while True:
            if stop_event is not None and stop_event.is_set():
                break
            if max_packets is not None and produced >= max_packets:
                break
            if duration is not None and time.monotonic() - start >= duration:
                break
            yield self.next_packet()[0]
            produced += 1
            if interval:
                # Pace against the start time so slow consumers do not drift
                delay = start + produced * interval - time.monotonic()
                if delay > 0:
                    if stop_event is not None:
                        stop_event.wait(delay)
                    else:
                        time.sleep(delay)

    # ------------------------------------------------------------------
    # Datasets
    # ------------------------------------------------------------------

    def generate_dataset(self, n_samples: int, show_progress: bool = False) -> pd.DataFrame:
        """
        Labelled feature table for training.

        Returns:
            DataFrame with FEATURE_NAMES columns, in schema order, and a
            'label' column
        """
        extractor = FeatureExtractor()
        rows = np.empty((n_samples, len(FEATURE_NAMES)), dtype=np.float64)
        labels = np.empty(n_samples, dtype=np.int64)

        for i in tqdm(range(n_samples), desc="Generating", disable=not show_progress):
            packet, label = self.next_packet()
            rows[i] = extractor.extract(packet).values
            labels[i] = label

        df = pd.DataFrame(rows, columns=FEATURE_NAMES)
        df[LABEL_COLUMN] = labels
        logger.info(f"Generated {n_samples:,} samples "
                    f"({int(labels.sum()):,} malicious, {labels.mean():.1%})")
        return df
