"""
================================================================================
NetHawk - Audit Logger
================================================================================

Append-only JSONL audit trail of a monitoring session:

    logs/packets_<session>.jsonl   every classified packet
    logs/threats_<session>.jsonl   every ThreatEvent
    logs/blocks_<session>.jsonl    every new or extended block
    logs/events_<session>.jsonl    every SystemEvent

Writes never raise into the detection path. A failed write is logged,
counted, and the file is reopened on the next record.

================================================================================
"""

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, IO, Optional

from .errors import PersistenceError
from .utils import get_logger

logger = get_logger(__name__)


class AuditLogger:
    """Session-scoped JSONL writer, safe to call from several threads."""

    def __init__(self, log_dir: str = 'logs', session_id: Optional[str] = None,
                 persist_packets: bool = True):
        self.log_dir = Path(log_dir)
        self.session_id = session_id or datetime.now().strftime('%Y%m%d_%H%M%S')
        self.persist_packets = persist_packets

        self._files: Dict[str, IO[str]] = {}
        self._lock = threading.Lock()
        self.records_written = 0
        self.write_errors = 0
        self.closed = False

    def path_for(self, stream: str) -> Path:
        return self.log_dir / f'{stream}_{self.session_id}.jsonl'

    def _file(self, stream: str) -> IO[str]:
        handle = self._files.get(stream)
        if handle is None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            handle = open(self.path_for(stream), 'a', encoding='utf-8')
            self._files[stream] = handle
        return handle

    def _append(self, stream: str, line: str) -> None:
        try:
            handle = self._file(stream)
            handle.write(line)
            handle.flush()
        except (OSError, ValueError) as e:
            stale = self._files.pop(stream, None)
            if stale is not None:
                try:
                    stale.close()
                except OSError as close_error:
                    logger.debug(f"Closing stale audit file failed: {close_error}")
            raise PersistenceError(f"Audit write to '{stream}' failed: {e}") from e

    def _write(self, stream: str, entry: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        line = json.dumps(entry, default=str) + '\n'
        with self._lock:
            try:
                self._append(stream, line)
            except PersistenceError as e:
                self.write_errors += 1
                logger.error(str(e))
                return False
            self.records_written += 1
        return True

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def log_packet(self, packet, result) -> bool:
        if not self.persist_packets:
            return False
        entry = packet.to_dict()
        entry['classification'] = result.to_dict()
        return self._write('packets', entry)

    def log_threat(self, threat) -> bool:
        return self._write('threats', threat.to_dict())

    def log_block(self, entry, action: str = 'block') -> bool:
        record = entry.to_dict()
        record['action'] = action
        record['logged_at'] = datetime.now().isoformat()
        return self._write('blocks', record)

    def log_event(self, event) -> bool:
        return self._write('events', event.to_dict())

    def close(self):
        with self._lock:
            for handle in self._files.values():
                try:
                    handle.close()
                except OSError as e:
                    logger.warning(f"Could not close audit file: {e}")
            self._files.clear()
            self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def read_jsonl(path) -> list:
    """Read back an audit file, skipping a truncated trailing line."""
    records = []
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed line in {path}")
    return records
