"""
================================================================================
NetHawk - Feature Definitions & Extraction
================================================================================

Centralised definition of the per-packet feature vector.
This module guarantees consistency between training and inference.

IMPORTANT:
----------
The classifier is only valid for the exact feature order it was trained
with. The order is named by FEATURE_NAMES and versioned by
FEATURE_SCHEMA_VERSION; both are persisted next to every model and
checked when the model is loaded. Any change to the order or meaning of a
feature MUST bump the version.

Fields that a protocol does not carry (TCP flags on UDP, ports on ICMP)
are encoded as 0 so the vector always has the same length.

================================================================================
"""

from typing import Any, Dict, Iterable, Optional

import numpy as np

from .errors import SchemaError
from .packets import PacketRecord, Protocol, TCP_FLAGS


# ==============================================================================
# FEATURE NAMES - exact encoding order
# ==============================================================================

FEATURE_SCHEMA_VERSION = 1

FEATURE_NAMES = [
    # Protocol class (IANA number)
    'protocol_class',

    # Size and IP header
    'size',
    'ttl',

    # Transport endpoints
    'src_port',
    'dst_port',

    # TCP control bits
    'flag_fin',
    'flag_syn',
    'flag_rst',
    'flag_psh',
    'flag_ack',
    'flag_urg',

    # TCP window
    'window_size',

    # One-hot protocol indicators
    'is_tcp',
    'is_udp',
    'is_icmp',
]

N_FEATURES = len(FEATURE_NAMES)

_FLAG_FEATURES = ['FIN', 'SYN', 'RST', 'PSH', 'ACK', 'URG']

MAX_PORT = 65535
MAX_TTL = 255
MAX_PACKET_SIZE = 65535
MAX_TCP_FLAGS = 0xFF


# ==============================================================================
# FEATURE VECTOR
# ==============================================================================

class FeatureVector:
    """
    Fixed-order numeric encoding of one packet.

    Wraps a read-only float64 array of length N_FEATURES together with the
    schema version it was produced under.
    """

    __slots__ = ('values', 'schema_version')

    def __init__(self, values: np.ndarray, schema_version: int = FEATURE_SCHEMA_VERSION):
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (N_FEATURES,):
            raise SchemaError(
                f"Feature vector has shape {values.shape}, expected ({N_FEATURES},)"
            )
        values.setflags(write=False)
        self.values = values
        self.schema_version = schema_version

    def __len__(self) -> int:
        return len(self.values)

    def __getitem__(self, name: str) -> float:
        return float(self.values[FEATURE_NAMES.index(name)])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureVector):
            return NotImplemented
        return (self.schema_version == other.schema_version
                and np.array_equal(self.values, other.values))

    def __repr__(self) -> str:
        return f"FeatureVector(v{self.schema_version}, {self.to_dict()})"

    def as_row(self) -> np.ndarray:
        """Return the vector as a (1, N_FEATURES) matrix for sklearn."""
        return self.values.reshape(1, -1)

    def to_dict(self) -> Dict[str, float]:
        return {name: float(v) for name, v in zip(FEATURE_NAMES, self.values)}


# ==============================================================================
# SCHEMA
# ==============================================================================

def get_schema() -> Dict[str, Any]:
    """Schema descriptor persisted with every model artifact."""
    return {'version': FEATURE_SCHEMA_VERSION, 'features': list(FEATURE_NAMES)}


def validate_schema(schema: Optional[Dict[str, Any]]) -> None:
    """
    Check a persisted schema against the one this code produces.

    Raises:
        SchemaError: if the version or the feature order differs
    """
    if not schema:
        raise SchemaError("Model artifact carries no feature schema")

    version = schema.get('version')
    if version != FEATURE_SCHEMA_VERSION:
        raise SchemaError(
            f"Feature schema version mismatch: model v{version}, "
            f"extractor v{FEATURE_SCHEMA_VERSION}"
        )

    features = list(schema.get('features', []))
    if features != FEATURE_NAMES:
        missing = set(FEATURE_NAMES) - set(features)
        raise SchemaError(
            f"Feature order mismatch (missing: {sorted(missing) or 'none'})"
        )


# ==============================================================================
# FEATURE EXTRACTOR
# ==============================================================================

class FeatureExtractor:
    """
    Converts a PacketRecord into a FeatureVector.

    Stateless and deterministic; a single instance can be shared by every
    ingestion worker.
    """

    REQUIRED_FIELDS = ('src_ip', 'dst_ip', 'protocol', 'size', 'ttl')

    def extract(self, packet: PacketRecord) -> FeatureVector:
        """
        Encode a packet.

        Raises:
            SchemaError: if a required field is missing or out of range
        """
        self._check_required(packet)

        protocol = packet.protocol
        if protocol is Protocol.TCP:
            src_port, dst_port = self._ports(packet)
            flags = self._bounded(packet.flags or 0, 'flags', MAX_TCP_FLAGS)
            window = self._bounded(packet.window_size or 0, 'window_size', MAX_PORT)
        elif protocol is Protocol.UDP:
            src_port, dst_port = self._ports(packet)
            flags = 0
            window = 0
        elif protocol is Protocol.ICMP:
            src_port, dst_port = 0, 0
            flags = 0
            window = 0
        else:
            raise SchemaError(f"Unsupported protocol: {protocol!r}")

        values = [
            float(protocol.number),
            float(self._bounded(packet.size, 'size', MAX_PACKET_SIZE)),
            float(self._bounded(packet.ttl, 'ttl', MAX_TTL)),
            float(src_port),
            float(dst_port),
        ]
        values.extend(1.0 if flags & TCP_FLAGS[name] else 0.0 for name in _FLAG_FEATURES)
        values.append(float(window))
        values.extend([
            1.0 if protocol is Protocol.TCP else 0.0,
            1.0 if protocol is Protocol.UDP else 0.0,
            1.0 if protocol is Protocol.ICMP else 0.0,
        ])

        return FeatureVector(np.array(values, dtype=np.float64))

    def extract_batch(self, packets: Iterable[PacketRecord]) -> np.ndarray:
        """Encode many packets into an (n, N_FEATURES) matrix."""
        rows = [self.extract(packet).values for packet in packets]
        if not rows:
            return np.empty((0, N_FEATURES), dtype=np.float64)
        return np.vstack(rows)

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    def _check_required(self, packet: PacketRecord) -> None:
        for name in self.REQUIRED_FIELDS:
            value = getattr(packet, name, None)
            if value is None or value == '':
                raise SchemaError(f"Packet record missing required field '{name}'")
        if not isinstance(packet.protocol, Protocol):
            raise SchemaError(f"Unsupported protocol: {packet.protocol!r}")

    def _ports(self, packet: PacketRecord):
        if packet.src_port is None or packet.dst_port is None:
            raise SchemaError(
                f"{packet.protocol.value} packet from {packet.src_ip} has no port"
            )
        return (self._bounded(packet.src_port, 'src_port', MAX_PORT),
                self._bounded(packet.dst_port, 'dst_port', MAX_PORT))

    @staticmethod
    def _bounded(value: Any, name: str, upper: int) -> int:
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise SchemaError(f"Field '{name}' is not numeric: {value!r}")
        if number < 0 or number > upper:
            raise SchemaError(f"Field '{name}' out of range [0, {upper}]: {number}")
        return number
