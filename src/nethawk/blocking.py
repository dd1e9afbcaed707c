"""
================================================================================
NetHawk - Block Controller
================================================================================

Single owner of "who is currently blocked".

Per address the controller runs a two-state machine:

    Unblocked --(qualifying threat / manual block)--> Blocked
    Blocked   --(expiry sweep / manual unblock)-----> Unblocked

Invariants:
- at most one active BlockEntry per address;
- a whitelisted address never has an active BlockEntry, whatever the
  confidence of the threat;
- an entry exists only after the firewall confirmed the deny rule, and is
  removed only after the firewall confirmed the rule is gone. A failed
  revoke keeps the entry and is retried by the next sweep.

Concurrency:
    One lock guards the entry table. It is held only while the table is
    read or mutated, never across a firewall call or a classification.
    Addresses whose rule is being applied or revoked are tracked in
    separate sets so concurrent callers never issue duplicate commands.

================================================================================
"""

import ipaddress
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .config import BlockingConfig
from .errors import FirewallApplyError
from .history import (BLOCK_EXTENDED, BLOCK_SUPPRESSED, FIREWALL_ERROR, IP_BLOCKED,
                      IP_UNBLOCKED, EventSeverity, EventSink, SystemEvent)
from .threats import ThreatEvent
from .utils import get_logger

logger = get_logger(__name__)

DEFAULT_BLOCK_THRESHOLD = 0.7

# Confidence above which an automatic block is reported as an error event
CRITICAL_BLOCK_CONFIDENCE = 0.9

REPEAT_IGNORE = 'ignore'
REPEAT_EXTEND = 'extend'


# ==============================================================================
# DATA CLASSES
# ==============================================================================

@dataclass(frozen=True)
class BlockEntry:
    """One active block. Replaced, never mutated, by the controller."""
    address: str
    blocked_at: datetime
    reason: str
    auto_unblock: bool = True
    unblock_at: Optional[datetime] = None
    confidence: float = 1.0
    revoke_failures: int = 0

    def is_expired(self, now: datetime) -> bool:
        return self.auto_unblock and self.unblock_at is not None and now >= self.unblock_at

    def remaining(self, now: datetime) -> Optional[timedelta]:
        if self.unblock_at is None:
            return None
        return max(self.unblock_at - now, timedelta(0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'address': self.address,
            'blocked_at': self.blocked_at.isoformat(),
            'reason': self.reason,
            'auto_unblock': self.auto_unblock,
            'unblock_at': self.unblock_at.isoformat() if self.unblock_at else None,
            'confidence': round(self.confidence, 4),
            'revoke_failures': self.revoke_failures,
        }


class BlockOutcome(str, Enum):
    BLOCKED = 'blocked'
    EXTENDED = 'extended'
    ALREADY_BLOCKED = 'already_blocked'
    WHITELISTED = 'whitelisted'
    BELOW_THRESHOLD = 'below_threshold'
    FIREWALL_FAILED = 'firewall_failed'


@dataclass(frozen=True)
class BlockDecision:
    outcome: BlockOutcome
    address: str
    entry: Optional[BlockEntry] = None

    @property
    def blocked(self) -> bool:
        """True when the address is blocked after this decision."""
        return self.outcome in (BlockOutcome.BLOCKED, BlockOutcome.EXTENDED,
                                BlockOutcome.ALREADY_BLOCKED)


# ==============================================================================
# DURATION POLICY
# ==============================================================================

class DurationPolicy:
    """
    Block duration escalating with confidence.

    Tiers are (minimum confidence, minutes) pairs checked from the highest
    minimum down; a confidence strictly above a tier's minimum gets its
    duration. The lowest tier is the fallback.
    """

    def __init__(self, tiers: Sequence[Tuple[float, float]] = ((0.9, 15.0), (0.0, 10.0))):
        if not tiers:
            raise ValueError("At least one duration tier is required")
        self.tiers = sorted(((float(c), float(m)) for c, m in tiers), reverse=True)
        for _, minutes in self.tiers:
            if minutes <= 0:
                raise ValueError(f"Block duration must be positive, got {minutes}")

    def minutes_for(self, confidence: float) -> float:
        for min_confidence, minutes in self.tiers:
            if confidence > min_confidence:
                return minutes
        return self.tiers[-1][1]

    def duration_for(self, confidence: float) -> timedelta:
        return timedelta(minutes=self.minutes_for(confidence))


# ==============================================================================
# BLOCK CONTROLLER
# ==============================================================================

class BlockController:
    """
    Decides, applies and expires blocks.

    Args:
        whitelist: Addresses or networks that can never be blocked
        firewall: Collaborator with ``apply(address, reason)`` and
            ``revoke(address)`` raising FirewallApplyError
        block_threshold: Confidence a threat must exceed to be blocked
        duration_policy: Confidence to duration mapping
        repeat_offense_policy: 'ignore' or 'extend'
        max_attempts: Firewall attempts before a failure is surfaced
        backoff: Seconds before the first retry, doubled on each retry
        event_sink: Receives a SystemEvent for every state change
        clock: Returns the current wall clock time
        sleep: Used between firewall retries
    """

    def __init__(self,
                 whitelist: Iterable[str] = (),
                 firewall=None,
                 block_threshold: float = DEFAULT_BLOCK_THRESHOLD,
                 duration_policy: Optional[DurationPolicy] = None,
                 repeat_offense_policy: str = REPEAT_IGNORE,
                 max_attempts: int = 3,
                 backoff: float = 0.5,
                 event_sink: Optional[EventSink] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 sleep: Callable[[float], None] = time.sleep):
        if repeat_offense_policy not in (REPEAT_IGNORE, REPEAT_EXTEND):
            raise ValueError(f"Unknown repeat offense policy: {repeat_offense_policy!r}")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.firewall = firewall
        self.block_threshold = block_threshold
        self.duration_policy = duration_policy or DurationPolicy()
        self.repeat_offense_policy = repeat_offense_policy
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.event_sink = event_sink
        self.clock = clock
        self.sleep = sleep

        self._whitelist_addresses, self._whitelist_networks = self._parse_whitelist(whitelist)

        self._entries: Dict[str, BlockEntry] = {}
        self._applying: Set[str] = set()
        self._revoking: Set[str] = set()
        self._suppressed_until: Dict[str, datetime] = {}
        self._lock = threading.Lock()

        self.total_blocks = 0
        self.total_unblocks = 0
        self.suppressed_blocks = 0
        self.firewall_failures = 0

    @classmethod
    def from_config(cls, config: BlockingConfig, firewall=None,
                    event_sink: Optional[EventSink] = None, **kwargs) -> 'BlockController':
        return cls(
            whitelist=config.whitelist,
            firewall=firewall,
            block_threshold=config.block_threshold,
            duration_policy=DurationPolicy(config.duration_tiers),
            repeat_offense_policy=config.repeat_offense_policy,
            max_attempts=config.firewall_max_attempts,
            backoff=config.firewall_backoff,
            event_sink=event_sink,
            **kwargs
        )

    # ------------------------------------------------------------------
    # Whitelist
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_whitelist(whitelist: Iterable[str]):
        addresses = set()
        networks = []
        for item in whitelist:
            item = str(item).strip()
            try:
                if '/' in item:
                    networks.append(ipaddress.ip_network(item, strict=False))
                else:
                    addresses.add(str(ipaddress.ip_address(item)))
            except ValueError:
                logger.warning(f"Ignoring invalid whitelist entry: {item!r}")
        return frozenset(addresses), tuple(networks)

    @staticmethod
    def _normalize(address: str) -> str:
        try:
            return str(ipaddress.ip_address(address))
        except ValueError:
            return address

    def is_whitelisted(self, address: str) -> bool:
        address = self._normalize(address)
        if address in self._whitelist_addresses:
            return True
        if not self._whitelist_networks:
            return False
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            return False
        return any(ip in network for network in self._whitelist_networks)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_blocked(self, address: str) -> bool:
        address = self._normalize(address)
        with self._lock:
            return address in self._entries

    def get(self, address: str) -> Optional[BlockEntry]:
        address = self._normalize(address)
        with self._lock:
            return self._entries.get(address)

    def active_blocks(self) -> List[BlockEntry]:
        """Active entries ordered by block time, oldest first."""
        with self._lock:
            entries = list(self._entries.values())
        return sorted(entries, key=lambda e: (e.blocked_at, e.address))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Events and firewall
    # ------------------------------------------------------------------

    def _emit(self, event_type: str, message: str,
              severity: EventSeverity = EventSeverity.INFO,
              address: Optional[str] = None) -> None:
        log = {EventSeverity.INFO: logger.info,
               EventSeverity.WARNING: logger.warning,
               EventSeverity.ERROR: logger.error}[severity]
        log(message)
        if self.event_sink is not None:
            self.event_sink(SystemEvent(event_type, message, severity, address))

    def _note_suppressed(self, address: str, confidence: float) -> bool:
        """
        Count a vetoed detection.

        Returns True when it should be reported: the first veto for an
        address, then at most one per block duration it would have earned.
        """
        now = self.clock()
        with self._lock:
            self.suppressed_blocks += 1
            until = self._suppressed_until.get(address)
            if until is not None and now < until:
                return False
            self._suppressed_until[address] = now + self.duration_policy.duration_for(confidence)
            return True

    def _call_firewall(self, action: str, address: str, *args) -> None:
        """Run a firewall action with exponential backoff between attempts."""
        if self.firewall is None:
            return
        method = getattr(self.firewall, action)
        delay = self.backoff
        for attempt in range(1, self.max_attempts + 1):
            try:
                method(address, *args)
                return
            except FirewallApplyError as e:
                if attempt == self.max_attempts:
                    raise FirewallApplyError(address, action, attempts=attempt, cause=e.cause or e)
                logger.warning(f"Firewall {action} for {address} failed "
                               f"(attempt {attempt}/{self.max_attempts}), retrying in {delay:.2f}s")
                self.sleep(delay)
                delay *= 2

    # ------------------------------------------------------------------
    # Block transitions
    # ------------------------------------------------------------------

    def consider(self, event: ThreatEvent) -> BlockDecision:
        """
        Decide whether a threat blocks its source.

        Whitelist membership is checked first and vetoes any confidence.
        """
        address = self._normalize(event.src_ip)

        if self.is_whitelisted(address):
            if self._note_suppressed(address, event.confidence):
                self._emit(BLOCK_SUPPRESSED,
                           f"Suppressed block of whitelisted {address} "
                           f"({event.attack_type}, confidence {event.confidence:.1%})",
                           EventSeverity.WARNING, address)
            return BlockDecision(BlockOutcome.WHITELISTED, address)

        if event.confidence <= self.block_threshold:
            return BlockDecision(BlockOutcome.BELOW_THRESHOLD, address, self.get(address))

        reason = f"{event.attack_type} detected ({event.confidence:.1%} confidence)"
        return self._block(address, reason, event.confidence,
                           self.duration_policy.duration_for(event.confidence))

    def block(self, address: str, reason: str = 'manual',
              duration: Optional[timedelta] = None,
              confidence: float = 1.0) -> BlockDecision:
        """
        Manually block an address.

        Args:
            duration: Block length; None blocks until a manual unblock
        """
        address = self._normalize(address)
        if self.is_whitelisted(address):
            self.suppressed_blocks += 1
            self._emit(BLOCK_SUPPRESSED,
                       f"Suppressed manual block of whitelisted {address}",
                       EventSeverity.WARNING, address)
            return BlockDecision(BlockOutcome.WHITELISTED, address)
        return self._block(address, reason, confidence, duration)

    def _block(self, address: str, reason: str, confidence: float,
               duration: Optional[timedelta]) -> BlockDecision:
        now = self.clock()

        with self._lock:
            existing = self._entries.get(address)
            if existing is not None:
                extended = self._maybe_extend(existing, now, duration)
                if extended is None:
                    return BlockDecision(BlockOutcome.ALREADY_BLOCKED, address, existing)
                self._entries[address] = extended
            elif address in self._applying:
                return BlockDecision(BlockOutcome.ALREADY_BLOCKED, address)
            else:
                self._applying.add(address)

        if existing is not None:
            self._emit(BLOCK_EXTENDED,
                       f"Extended block of {address} until {extended.unblock_at:%H:%M:%S}",
                       EventSeverity.INFO, address)
            return BlockDecision(BlockOutcome.EXTENDED, address, extended)

        try:
            self._call_firewall('apply', address, reason)
        except FirewallApplyError as e:
            with self._lock:
                self._applying.discard(address)
            self.firewall_failures += 1
            self._emit(FIREWALL_ERROR, f"Could not block {address}: {e}",
                       EventSeverity.ERROR, address)
            return BlockDecision(BlockOutcome.FIREWALL_FAILED, address)

        blocked_at = self.clock()
        entry = BlockEntry(
            address=address,
            blocked_at=blocked_at,
            reason=reason,
            auto_unblock=duration is not None,
            unblock_at=blocked_at + duration if duration is not None else None,
            confidence=confidence,
        )
        with self._lock:
            self._applying.discard(address)
            self._entries[address] = entry
        self.total_blocks += 1

        if entry.auto_unblock:
            message = (f"Blocked {address}: {reason}, "
                       f"until {entry.unblock_at:%H:%M:%S}")
        else:
            message = f"Blocked {address}: {reason}, until manually unblocked"
        severity = (EventSeverity.ERROR if confidence > CRITICAL_BLOCK_CONFIDENCE
                    else EventSeverity.WARNING)
        self._emit(IP_BLOCKED, message, severity, address)
        return BlockDecision(BlockOutcome.BLOCKED, address, entry)

    def _maybe_extend(self, existing: BlockEntry, now: datetime,
                      duration: Optional[timedelta]) -> Optional[BlockEntry]:
        """Extended copy of ``existing`` under the 'extend' policy, else None."""
        if self.repeat_offense_policy != REPEAT_EXTEND:
            return None
        if existing.address in self._revoking:
            return None
        if not existing.auto_unblock or duration is None:
            return None
        new_unblock_at = now + duration
        if new_unblock_at <= existing.unblock_at:
            return None
        return replace(existing, unblock_at=new_unblock_at)

    # ------------------------------------------------------------------
    # Unblock transitions
    # ------------------------------------------------------------------

    def _revoke(self, entry: BlockEntry, cause: str) -> bool:
        """Revoke the rule of an entry already marked as revoking."""
        address = entry.address
        try:
            self._call_firewall('revoke', address)
        except FirewallApplyError as e:
            with self._lock:
                self._revoking.discard(address)
                current = self._entries.get(address)
                if current is not None:
                    self._entries[address] = replace(
                        current, revoke_failures=current.revoke_failures + 1)
            self.firewall_failures += 1
            self._emit(FIREWALL_ERROR,
                       f"Could not unblock {address} ({cause}): {e}; will retry",
                       EventSeverity.ERROR, address)
            return False

        with self._lock:
            self._revoking.discard(address)
            self._entries.pop(address, None)
        self.total_unblocks += 1
        self._emit(IP_UNBLOCKED, f"Unblocked {address} ({cause})",
                   EventSeverity.INFO, address)
        return True

    def unblock(self, address: str) -> bool:
        """
        Manually unblock an address, regardless of remaining duration.

        Returns:
            True if the address is no longer blocked
        """
        address = self._normalize(address)
        with self._lock:
            entry = self._entries.get(address)
            if entry is None:
                return address not in self._applying
            if address in self._revoking:
                return False
            self._revoking.add(address)
        return self._revoke(entry, 'manual')

    def sweep(self, now: Optional[datetime] = None) -> List[BlockEntry]:
        """
        Expire every entry whose unblock time has been reached.

        Returns:
            Entries removed by this sweep
        """
        now = now or self.clock()
        with self._lock:
            expired = [entry for entry in self._entries.values()
                       if entry.is_expired(now) and entry.address not in self._revoking]
            for entry in expired:
                self._revoking.add(entry.address)

        removed = []
        for entry in expired:
            if self._revoke(entry, 'expired'):
                removed.append(entry)

        if expired:
            logger.debug(f"Sweep: {len(removed)}/{len(expired)} expired blocks removed")
        return removed

    def unblock_all(self) -> int:
        """Revoke every active block, e.g. on shutdown. Returns the count removed."""
        count = 0
        for entry in self.active_blocks():
            if self.unblock(entry.address):
                count += 1
        return count


# ==============================================================================
# EXPIRY SWEEPER
# ==============================================================================

class ExpirySweeper:
    """
    Background thread running ``controller.sweep()`` on a fixed cadence.

    The stop signal is honored at the next wake-up.
    """

    def __init__(self, controller: BlockController, interval: float = 30.0):
        if interval <= 0:
            raise ValueError(f"Sweep interval must be positive, got {interval}")
        self.controller = controller
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='nethawk-sweeper', daemon=True)
        self._thread.start()
        logger.debug(f"Expiry sweeper started (every {self.interval:g}s)")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.controller.sweep()
            except Exception:
                logger.exception("Expiry sweep failed")
            self.sweeps += 1

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
