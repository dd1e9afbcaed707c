"""
================================================================================
NetHawk - Packet Records
================================================================================

Structured packet representation shared by the capture adapters, the
synthetic generator and the detection pipeline.

A PacketRecord is immutable once created. Capture collaborators build it
with ``PacketRecord.create`` which stamps both a monotonic and a wall clock
timestamp.

================================================================================
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


# ==============================================================================
# PROTOCOLS AND FLAGS
# ==============================================================================

class Protocol(str, Enum):
    """Transport protocols handled by the pipeline."""
    TCP = 'TCP'
    UDP = 'UDP'
    ICMP = 'ICMP'

    @property
    def number(self) -> int:
        """IANA protocol number."""
        return IP_PROTOCOL_NUMBERS[self]

    @classmethod
    def parse(cls, value: Any) -> 'Protocol':
        """Accept an enum member, a name ('tcp') or an IP protocol number (6)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            for proto, number in IP_PROTOCOL_NUMBERS.items():
                if number == value:
                    return proto
            raise ValueError(f"Unsupported IP protocol number: {value}")
        return cls(str(value).upper())


IP_PROTOCOL_NUMBERS = {
    Protocol.TCP: 6,
    Protocol.UDP: 17,
    Protocol.ICMP: 1,
}

# TCP flag bit positions
TCP_FLAGS = {
    'FIN': 0x01,
    'SYN': 0x02,
    'RST': 0x04,
    'PSH': 0x08,
    'ACK': 0x10,
    'URG': 0x20,
    'ECE': 0x40,
    'CWR': 0x80,
}


def flags_from_names(*names: str) -> int:
    """Build a flag bitmask from names, e.g. ``flags_from_names('SYN', 'ACK')``."""
    value = 0
    for name in names:
        value |= TCP_FLAGS[name.upper()]
    return value


def flag_names(flags: int) -> str:
    """Render a bitmask as 'SYN,ACK'."""
    return ','.join(name for name, bit in TCP_FLAGS.items() if flags & bit)


# ==============================================================================
# PACKET RECORD
# ==============================================================================

@dataclass(frozen=True)
class PacketRecord:
    """
    One observed packet.

    Attributes:
        src_ip: Source address
        dst_ip: Destination address
        protocol: Transport protocol
        size: Packet size in bytes
        ttl: IP time-to-live
        src_port: Source port (None for ICMP)
        dst_port: Destination port (None for ICMP)
        flags: TCP control bits as a bitmask (0 when not TCP)
        window_size: TCP window size, if known
        monotonic: Capture time from ``time.monotonic``
        timestamp: Wall clock capture time
        id: Unique identifier
    """
    src_ip: Optional[str]
    dst_ip: Optional[str]
    protocol: Optional[Protocol]
    size: Optional[int]
    ttl: Optional[int]
    src_port: Optional[int] = None
    dst_port: Optional[int] = None
    flags: int = 0
    window_size: Optional[int] = None
    monotonic: float = field(default_factory=time.monotonic)
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def create(cls, src_ip: str, dst_ip: str, protocol: Any, size: int, ttl: int,
               src_port: Optional[int] = None, dst_port: Optional[int] = None,
               flags: int = 0, window_size: Optional[int] = None,
               timestamp: Optional[datetime] = None) -> 'PacketRecord':
        """Build a record, normalising the protocol and stamping capture times."""
        return cls(
            src_ip=src_ip,
            dst_ip=dst_ip,
            protocol=Protocol.parse(protocol) if protocol is not None else None,
            size=size,
            ttl=ttl,
            src_port=src_port,
            dst_port=dst_port,
            flags=flags,
            window_size=window_size,
            timestamp=timestamp or datetime.now(),
        )

    def has_flag(self, name: str) -> bool:
        return bool(self.flags & TCP_FLAGS[name.upper()])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'src_ip': self.src_ip,
            'dst_ip': self.dst_ip,
            'src_port': self.src_port,
            'dst_port': self.dst_port,
            'protocol': self.protocol.value if isinstance(self.protocol, Protocol) else self.protocol,
            'size': self.size,
            'ttl': self.ttl,
            'flags': flag_names(self.flags or 0),
            'window_size': self.window_size,
        }
