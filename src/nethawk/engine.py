"""
================================================================================
NetHawk - Ingestion Loop
================================================================================

Drives packets through the detection pipeline:

    PacketRecord -> FeatureExtractor -> Classifier -> ThreatAggregator
                 -> BlockController

and publishes the results:
- every packet with its classification to the packet history;
- every ThreatEvent, annotated with its blocked flag, to the threat history;
- every controller state change to the system event log;
- all of the above to the audit logger.

Histories evict their oldest record when full, so a slow reader never
stalls ingestion. Capture sources push into a bounded queue; a full queue
drops the packet and counts it instead of blocking the capture.

Usage:
    engine = IngestionLoop.from_config(config, classifier)
    engine.start(workers=2)
    LiveCapture('eth0').run(engine.submit)
    engine.stop()

    # Or, for finite sources
    stats = engine.run(PcapSource('capture.pcap'))

================================================================================
"""

import queue
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .blocking import BlockController, BlockDecision, BlockEntry, BlockOutcome, ExpirySweeper
from .classifier import ClassificationResult, Classifier, Label
from .config import Config, HistoryConfig
from .errors import ModelUnavailable, SchemaError
from .features import FeatureExtractor
from .history import (MODEL_LOADED, MODEL_UNAVAILABLE, MONITORING_STARTED, MONITORING_STOPPED,
                      BoundedHistory, EventSeverity, SystemEvent)
from .packets import PacketRecord
from .persistence import AuditLogger
from .threats import ThreatAggregator, ThreatEvent
from .utils import get_logger

logger = get_logger(__name__)

# Seconds an idle worker waits on the queue before re-checking the stop signal
WORKER_POLL_INTERVAL = 0.2


# =============================================================================
# DATA CLASSES
# =============================================================================

class PacketStatus(str, Enum):
    NORMAL = 'normal'
    THREAT = 'threat'
    MALICIOUS_BELOW_THRESHOLD = 'malicious_below_threshold'
    UNKNOWN = 'unknown'
    REJECTED = 'rejected'


@dataclass(frozen=True)
class ClassifiedPacket:
    """A packet with its classification, as kept in the packet history."""
    packet: PacketRecord
    result: ClassificationResult

    def to_dict(self) -> Dict[str, Any]:
        entry = self.packet.to_dict()
        entry['prediction'] = self.result.label.value
        entry['confidence'] = round(self.result.confidence, 4)
        return entry


@dataclass(frozen=True)
class PacketOutcome:
    """What one pipeline pass did with a packet."""
    status: PacketStatus
    packet: PacketRecord
    result: Optional[ClassificationResult] = None
    threat: Optional[ThreatEvent] = None
    decision: Optional[BlockDecision] = None
    error: Optional[str] = None


@dataclass
class SessionStats:
    """Statistics for a monitoring session."""
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    packets_received: int = 0
    packets_processed: int = 0
    packets_dropped: int = 0
    packets_rejected: int = 0
    normal: int = 0
    malicious: int = 0
    unknown: int = 0
    threats: int = 0
    blocks: int = 0
    unique_src_ips: set = field(default_factory=set)
    attack_types: Counter = field(default_factory=Counter)

    def to_dict(self) -> Dict[str, Any]:
        duration = (self.end_time or datetime.now()) - self.start_time
        seconds = duration.total_seconds()
        return {
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': seconds,
            'packets_received': self.packets_received,
            'packets_processed': self.packets_processed,
            'packets_dropped': self.packets_dropped,
            'packets_rejected': self.packets_rejected,
            'packets_per_second': self.packets_processed / seconds if seconds > 0 else 0.0,
            'normal': self.normal,
            'malicious': self.malicious,
            'unknown': self.unknown,
            'threats': self.threats,
            'blocks': self.blocks,
            'unique_src_ips': len(self.unique_src_ips),
            'attack_types': dict(self.attack_types),
        }


# =============================================================================
# INGESTION LOOP
# =============================================================================

class IngestionLoop:
    """
    Detection pipeline with bounded histories.

    ``process`` is safe to call from several worker threads: the extractor
    is stateless, the classifier reads an immutable model handle and the
    block controller serialises its own state.

    If the controller has no event sink, the loop installs its own so that
    block state changes land in the system event log.
    """

    def __init__(self,
                 classifier: Classifier,
                 controller: BlockController,
                 aggregator: Optional[ThreatAggregator] = None,
                 extractor: Optional[FeatureExtractor] = None,
                 audit: Optional[AuditLogger] = None,
                 history: Optional[HistoryConfig] = None,
                 queue_size: int = 10000,
                 sweep_interval: float = 30.0):
        history = history or HistoryConfig()

        self.classifier = classifier
        self.controller = controller
        self.aggregator = aggregator or ThreatAggregator(threshold=classifier.threshold)
        self.extractor = extractor or FeatureExtractor()
        self.audit = audit

        self.packets: BoundedHistory[ClassifiedPacket] = BoundedHistory(history.packets)
        self.threats: BoundedHistory[ThreatEvent] = BoundedHistory(history.threats)
        self.events: BoundedHistory[SystemEvent] = BoundedHistory(history.system_events)

        if controller.event_sink is None:
            controller.event_sink = self.record_event

        self.sweeper = ExpirySweeper(controller, interval=sweep_interval)

        self._queue: 'queue.Queue[PacketRecord]' = queue.Queue(maxsize=queue_size)
        self._stop_event = threading.Event()
        self._workers: List[threading.Thread] = []

        self._stats = SessionStats()
        self._stats_lock = threading.Lock()

        self._model_down = False
        self._model_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config, classifier: Classifier,
                    firewall=None, audit: Optional[AuditLogger] = None,
                    **controller_kwargs) -> 'IngestionLoop':
        """Build the loop and its collaborators from a Config."""
        controller = BlockController.from_config(config.blocking, firewall=firewall,
                                                 **controller_kwargs)
        aggregator = ThreatAggregator(config.detection, threshold=classifier.threshold)
        return cls(
            classifier=classifier,
            controller=controller,
            aggregator=aggregator,
            audit=audit,
            history=config.history,
            queue_size=config.capture.queue_size,
            sweep_interval=config.blocking.sweep_interval,
        )

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def record_event(self, event: SystemEvent) -> None:
        """System event sink: bounded log plus audit trail."""
        self.events.append(event)
        if self.audit is not None:
            self.audit.log_event(event)

    def _emit(self, event_type: str, message: str,
              severity: EventSeverity = EventSeverity.INFO) -> None:
        self.record_event(SystemEvent(event_type, message, severity))

    def _model_failed(self, error: ModelUnavailable) -> None:
        with self._model_lock:
            first = not self._model_down
            self._model_down = True
        if first:
            logger.error(f"Classifier unavailable, packets are stored as unknown: {error}")
            self._emit(MODEL_UNAVAILABLE, f"Classifier unavailable: {error}", EventSeverity.ERROR)

    def _model_ok(self) -> None:
        if not self._model_down:
            return
        with self._model_lock:
            recovered = self._model_down
            self._model_down = False
        if recovered:
            self._emit(MODEL_LOADED,
                       f"Classifier available again (version {self.classifier.version})")

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def process(self, packet: PacketRecord) -> PacketOutcome:
        """Run one packet through the whole pipeline."""
        try:
            features = self.extractor.extract(packet)
        except SchemaError as e:
            logger.warning(f"Dropped malformed packet {getattr(packet, 'id', '?')}: {e}")
            with self._stats_lock:
                self._stats.packets_rejected += 1
            return PacketOutcome(PacketStatus.REJECTED, packet, error=str(e))

        try:
            result = self.classifier.predict(features)
            self._model_ok()
        except ModelUnavailable as e:
            self._model_failed(e)
            result = ClassificationResult.unknown()

        threat = self.aggregator.evaluate(packet, result)
        decision = None
        if threat is not None:
            decision = self.controller.consider(threat)
            threat = threat.with_blocked(decision.blocked)

        self.packets.append(ClassifiedPacket(packet, result))
        if threat is not None:
            self.threats.append(threat)

        if self.audit is not None:
            self.audit.log_packet(packet, result)
            if threat is not None:
                self.audit.log_threat(threat)
            if decision is not None and decision.outcome in (BlockOutcome.BLOCKED,
                                                             BlockOutcome.EXTENDED):
                self.audit.log_block(decision.entry, action=decision.outcome.value)

        if result.label is Label.UNKNOWN:
            status = PacketStatus.UNKNOWN
        elif threat is not None:
            status = PacketStatus.THREAT
        elif result.label is Label.MALICIOUS:
            status = PacketStatus.MALICIOUS_BELOW_THRESHOLD
        else:
            status = PacketStatus.NORMAL

        with self._stats_lock:
            stats = self._stats
            stats.packets_processed += 1
            stats.unique_src_ips.add(packet.src_ip)
            if result.label is Label.UNKNOWN:
                stats.unknown += 1
            elif result.label is Label.MALICIOUS:
                stats.malicious += 1
            else:
                stats.normal += 1
            if threat is not None:
                stats.threats += 1
                stats.attack_types[threat.attack_type] += 1
            if decision is not None and decision.outcome is BlockOutcome.BLOCKED:
                stats.blocks += 1

        return PacketOutcome(status, packet, result, threat, decision)

    # ------------------------------------------------------------------
    # Queue and workers
    # ------------------------------------------------------------------

    def submit(self, packet: PacketRecord, block: bool = False,
               timeout: Optional[float] = None) -> bool:
        """
        Queue a packet for the workers.

        Returns:
            False if the queue was full and the packet was dropped
        """
        with self._stats_lock:
            self._stats.packets_received += 1
        try:
            self._queue.put(packet, block=block, timeout=timeout)
        except queue.Full:
            with self._stats_lock:
                self._stats.packets_dropped += 1
            return False
        return True

    @property
    def running(self) -> bool:
        return any(worker.is_alive() for worker in self._workers)

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    def _worker(self) -> None:
        while not self._stop_event.is_set():
            try:
                packet = self._queue.get(timeout=WORKER_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self.process(packet)
            except Exception:
                logger.exception("Unexpected error while processing packet")
            finally:
                self._queue.task_done()

    def start(self, workers: int = 1, sweeper: bool = True) -> None:
        """Start ingestion workers and the expiry sweeper."""
        if self.running:
            return
        if workers < 1:
            raise ValueError(f"At least one worker is required, got {workers}")

        self._stop_event.clear()
        with self._stats_lock:
            self._stats = SessionStats()

        self._workers = [
            threading.Thread(target=self._worker, name=f'nethawk-worker-{i}', daemon=True)
            for i in range(workers)
        ]
        for worker in self._workers:
            worker.start()
        if sweeper:
            self.sweeper.start()

        self._emit(MONITORING_STARTED,
                   f"Monitoring started ({workers} worker(s), "
                   f"model {self.classifier.version or 'unavailable'})")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """
        Stop workers between packets and stop the sweeper.

        Packets still queued are not processed.
        """
        if not self._workers and not self.sweeper.running:
            return
        self._stop_event.set()
        for worker in self._workers:
            worker.join(timeout)
        self._workers = []
        self.sweeper.stop(timeout)

        with self._stats_lock:
            self._stats.end_time = datetime.now()
        pending = self._queue.qsize()
        self._emit(MONITORING_STOPPED,
                   f"Monitoring stopped ({self._stats.packets_processed:,} packets processed, "
                   f"{pending:,} left unprocessed)")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued packet was processed or the loop stopped."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks and not self._stop_event.is_set():
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(
                    WORKER_POLL_INTERVAL if remaining is None else min(remaining, WORKER_POLL_INTERVAL))
        return not self._queue.unfinished_tasks

    def run(self, source: Iterable[PacketRecord], duration: Optional[float] = None,
            max_packets: Optional[int] = None, workers: int = 1) -> Dict[str, Any]:
        """
        Feed a capture source through the pipeline.

        Ends when the source is exhausted, ``duration`` seconds elapsed,
        ``max_packets`` were read or ``stop()`` was called. With
        ``workers=0`` packets are processed in the calling thread.

        Returns:
            Session statistics
        """
        started_here = workers > 0 and not self.running
        if started_here:
            self.start(workers)
        elif workers == 0:
            self._stop_event.clear()
            with self._stats_lock:
                self._stats = SessionStats()
            self._emit(MONITORING_STARTED, "Monitoring started (inline)")

        begin = time.monotonic()
        read = 0
        try:
            for packet in source:
                if self._stop_event.is_set():
                    break
                if duration is not None and time.monotonic() - begin >= duration:
                    break
                if max_packets is not None and read >= max_packets:
                    break
                read += 1

                if workers == 0:
                    with self._stats_lock:
                        self._stats.packets_received += 1
                    self.process(packet)
                    continue

                # Finite sources wait for room instead of dropping
                while not self.submit_waiting(packet):
                    if self._stop_event.is_set():
                        break
            if workers > 0:
                self.wait_idle()
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping...")
        finally:
            if started_here:
                self.stop()
            elif workers == 0:
                with self._stats_lock:
                    self._stats.end_time = datetime.now()
                self._emit(MONITORING_STOPPED,
                           f"Monitoring stopped ({self._stats.packets_processed:,} packets processed)")

        return self.stats()

    def submit_waiting(self, packet: PacketRecord) -> bool:
        """Blocking submit that gives up after one poll interval."""
        try:
            self._queue.put(packet, timeout=WORKER_POLL_INTERVAL)
        except queue.Full:
            return False
        with self._stats_lock:
            self._stats.packets_received += 1
        return True

    # ------------------------------------------------------------------
    # Model management
    # ------------------------------------------------------------------

    def reload_model(self, models_dir, version: str = 'latest') -> bool:
        """Swap in another model version without pausing ingestion."""
        if not self.classifier.load(models_dir, version):
            return False
        with self._model_lock:
            self._model_down = False
        self._emit(MODEL_LOADED, f"Serving model version {self.classifier.version}")
        return True

    # ------------------------------------------------------------------
    # Reporting queries
    # ------------------------------------------------------------------

    def recent_packets(self, n: Optional[int] = None) -> List[ClassifiedPacket]:
        return self.packets.recent(n)

    def recent_threats(self, n: Optional[int] = None) -> List[ThreatEvent]:
        return self.threats.recent(n)

    def system_events(self, n: Optional[int] = None) -> List[SystemEvent]:
        return self.events.recent(n)

    def active_blocks(self) -> List[BlockEntry]:
        return self.controller.active_blocks()

    def stats(self) -> Dict[str, Any]:
        """Aggregate counts for reporting."""
        with self._stats_lock:
            result = self._stats.to_dict()
        result.update({
            'queue_depth': self.queue_depth,
            'active_blocks': len(self.controller),
            'total_blocks': self.controller.total_blocks,
            'total_unblocks': self.controller.total_unblocks,
            'suppressed_blocks': self.controller.suppressed_blocks,
            'firewall_failures': self.controller.firewall_failures,
            'model_version': self.classifier.version,
            'packets_retained': len(self.packets),
            'threats_retained': len(self.threats),
        })
        if self.audit is not None:
            result['audit_write_errors'] = self.audit.write_errors
        return result

    def print_summary(self) -> None:
        """Log session summary."""
        stats = self.stats()

        logger.info("=" * 60)
        logger.info("SESSION SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Duration: {stats['duration_seconds']:.1f} seconds")
        logger.info(f"Packets processed: {stats['packets_processed']:,}")
        logger.info(f"Packets dropped (queue full): {stats['packets_dropped']:,}")
        logger.info(f"Packets rejected (malformed): {stats['packets_rejected']:,}")
        logger.info(f"Normal / malicious / unknown: "
                    f"{stats['normal']:,} / {stats['malicious']:,} / {stats['unknown']:,}")
        logger.info(f"Threats: {stats['threats']:,}")
        logger.info(f"Blocks: {stats['total_blocks']:,} (active {stats['active_blocks']})")
        logger.info(f"Unique source IPs: {stats['unique_src_ips']:,}")

        if stats['attack_types']:
            logger.info("Threats by attack type:")
            for attack_type, count in Counter(stats['attack_types']).most_common():
                logger.info(f"  {attack_type}: {count}")

        logger.info("=" * 60)
