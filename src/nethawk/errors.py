"""
NetHawk error taxonomy.

SchemaError          malformed packet record, packet is dropped
ModelUnavailable     no usable classifier artifact, packets stored as unknown
FirewallApplyError   firewall rule could not be applied or revoked
PersistenceError     audit write failed, never fatal to ingestion
"""

from typing import Optional


class NetHawkError(Exception):
    """Base class for all NetHawk errors."""


class SchemaError(NetHawkError, ValueError):
    """Packet record or feature schema does not match the expected shape."""


class ModelUnavailable(NetHawkError):
    """The classifier has no loaded model and refuses to predict."""


class FirewallApplyError(NetHawkError):
    """The firewall collaborator failed to apply or revoke a deny rule."""

    def __init__(self, address: str, action: str, attempts: int = 1,
                 cause: Optional[BaseException] = None):
        self.address = address
        self.action = action
        self.attempts = attempts
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(
            f"Firewall {action} failed for {address} after {attempts} attempt(s){detail}"
        )


class PersistenceError(NetHawkError):
    """Writing an audit record failed."""
