"""
================================================================================
NetHawk - Threat Aggregator
================================================================================

Turns malicious classifications into ThreatEvents.

Severity and attack type come from different sources:
- severity is banded from the classifier confidence only
  (> 0.85 high, > 0.75 medium, otherwise low), so it stays monotonic in
  model certainty whatever the rules say;
- the attack type is named by the first heuristic rule that matches the
  raw packet, in a fixed priority order. Every matching rule is kept as a
  reason on the event.

================================================================================
"""

import ipaddress
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from .classifier import ClassificationResult, DEFAULT_THRESHOLD, Label
from .config import DetectionConfig
from .packets import PacketRecord, Protocol

UNKNOWN_ATTACK = 'Unknown Attack'

HIGH_SEVERITY_CONFIDENCE = 0.85
MEDIUM_SEVERITY_CONFIDENCE = 0.75

# RFC 1918 and IPv6 unique local ranges
PRIVATE_NETWORKS = tuple(ipaddress.ip_network(n) for n in (
    '10.0.0.0/8', '172.16.0.0/12', '192.168.0.0/16', 'fc00::/7',
))


class Severity(str, Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'

    @classmethod
    def from_confidence(cls, confidence: float) -> 'Severity':
        if confidence > HIGH_SEVERITY_CONFIDENCE:
            return cls.HIGH
        if confidence > MEDIUM_SEVERITY_CONFIDENCE:
            return cls.MEDIUM
        return cls.LOW


@dataclass(frozen=True)
class ThreatEvent:
    """A detected threat. Immutable; ``with_blocked`` returns a copy."""
    src_ip: str
    dst_ip: str
    attack_type: str
    severity: Severity
    confidence: float
    blocked: bool = False
    reasons: Tuple[str, ...] = ()
    packet_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def with_blocked(self, blocked: bool) -> 'ThreatEvent':
        return replace(self, blocked=blocked)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'src_ip': self.src_ip,
            'dst_ip': self.dst_ip,
            'attack_type': self.attack_type,
            'severity': self.severity.value,
            'blocked': self.blocked,
            'confidence': round(self.confidence, 4),
            'reasons': list(self.reasons),
            'packet_id': self.packet_id,
        }


# ==============================================================================
# HEURISTIC RULES
# ==============================================================================

@dataclass(frozen=True)
class Rule:
    """A named predicate over a packet that proposes an attack type."""
    reason: str
    attack_type: Callable[[PacketRecord], Optional[str]]


class ThreatAggregator:
    """
    Evaluates classified packets against the detection rules.

    Args:
        config: Rule sets and limits
        threshold: Minimum confidence for a malicious result to become a
            ThreatEvent (normally the classifier threshold)
    """

    def __init__(self, config: Optional[DetectionConfig] = None,
                 threshold: float = DEFAULT_THRESHOLD):
        self.config = config or DetectionConfig()
        self.threshold = threshold

        cfg = self.config
        self._known_bad: FrozenSet[str] = frozenset(cfg.known_malicious_ips)
        self._botnet = frozenset(cfg.botnet_ips)
        self._scanners = frozenset(cfg.scanner_ips)
        self._c2 = frozenset(cfg.c2_ips)
        self._suspicious_ports = frozenset(cfg.suspicious_ports)
        self._scanned_ports = frozenset(cfg.scanned_ports)
        self._internal_networks = tuple(ipaddress.ip_network(n, strict=False)
                                        for n in cfg.internal_networks)

        # Fixed priority order: the first rule that matches names the attack
        self.rules: List[Rule] = [
            Rule('Known malicious IP', self._known_bad_address),
            Rule('Suspicious port usage', self._suspicious_port),
            Rule('Port scanning behavior', self._port_scan),
            Rule('Anomalous packet size', self._anomalous_size),
            Rule('Suspicious TTL value', self._suspicious_ttl),
            Rule('Large ICMP packet', self._large_icmp),
            Rule('High port communication', self._high_ports),
            Rule('External access to privileged port', self._privileged_port),
        ]

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _known_bad_address(self, packet: PacketRecord) -> Optional[str]:
        src = packet.src_ip
        if src in self._botnet:
            return 'Botnet Communication'
        if src in self._scanners:
            return 'Network Reconnaissance'
        if src in self._c2:
            return 'Command & Control'
        if src in self._known_bad:
            return 'Known Malicious Host'
        return None

    def _suspicious_port(self, packet: PacketRecord) -> Optional[str]:
        if packet.src_port in self._suspicious_ports or packet.dst_port in self._suspicious_ports:
            return 'Backdoor Communication'
        return None

    def _port_scan(self, packet: PacketRecord) -> Optional[str]:
        if packet.protocol is Protocol.TCP and packet.dst_port in self._scanned_ports:
            return 'Port Scan'
        return None

    def _anomalous_size(self, packet: PacketRecord) -> Optional[str]:
        if packet.size > self.config.large_packet_size:
            return 'Buffer Overflow Attempt'
        if packet.size < self.config.small_packet_size:
            return 'Reconnaissance'
        return None

    def _suspicious_ttl(self, packet: PacketRecord) -> Optional[str]:
        if packet.ttl < self.config.min_ttl:
            return 'IP Spoofing'
        return None

    def _large_icmp(self, packet: PacketRecord) -> Optional[str]:
        if packet.protocol is Protocol.ICMP and packet.size > self.config.large_icmp_size:
            return 'ICMP Flood'
        return None

    def _high_ports(self, packet: PacketRecord) -> Optional[str]:
        high = self.config.high_port
        if (packet.src_port or 0) > high and (packet.dst_port or 0) > high:
            return 'Suspicious Communication'
        return None

    def _privileged_port(self, packet: PacketRecord) -> Optional[str]:
        if packet.dst_port is None or packet.dst_port >= self.config.privileged_port:
            return None
        if self.is_internal(packet.src_ip):
            return None
        return 'Unauthorized Access Attempt'

    def is_internal(self, address: str) -> bool:
        """RFC 1918, loopback, link-local or in a configured internal network."""
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            return False
        if ip.is_loopback or ip.is_link_local:
            return True
        return any(ip in network for network in PRIVATE_NETWORKS + self._internal_networks)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def classify_attack(self, packet: PacketRecord) -> Tuple[str, Tuple[str, ...]]:
        """
        Run every rule over a packet.

        Returns:
            Tuple (attack type of the first matching rule, reasons of all
            matching rules)
        """
        attack_type = None
        reasons = []
        for rule in self.rules:
            proposed = rule.attack_type(packet)
            if proposed is None:
                continue
            reasons.append(rule.reason)
            if attack_type is None:
                attack_type = proposed
        return attack_type or UNKNOWN_ATTACK, tuple(reasons)

    def evaluate(self, packet: PacketRecord,
                 result: ClassificationResult) -> Optional[ThreatEvent]:
        """
        Build a ThreatEvent for a malicious classification.

        Returns:
            None when the packet is not malicious or the confidence is
            below the detection threshold
        """
        if result.label is not Label.MALICIOUS or result.confidence < self.threshold:
            return None

        attack_type, reasons = self.classify_attack(packet)
        return ThreatEvent(
            src_ip=packet.src_ip,
            dst_ip=packet.dst_ip,
            attack_type=attack_type,
            severity=Severity.from_confidence(result.confidence),
            confidence=result.confidence,
            reasons=reasons,
            packet_id=packet.id,
        )
