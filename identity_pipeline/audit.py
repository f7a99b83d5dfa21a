"""
Append-only audit trail of verification attempts.

One record per session, written once and never updated. Records are
queryable by session id and by time range for compliance review.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from .errors import DuplicateAuditRecord
from .models import AuditRecord

logger = logging.getLogger(__name__)


class AuditLog(ABC):

    def __init__(self):
        self._lock = threading.Lock()
        self._records: List[AuditRecord] = []
        self._by_session: Dict[str, AuditRecord] = {}

    def record(self, entry: AuditRecord) -> AuditRecord:
        with self._lock:
            if entry.session_id in self._by_session:
                raise DuplicateAuditRecord(f"Audit record already written for {entry.session_id}")
            self._persist(entry)
            self._records.append(entry)
            self._by_session[entry.session_id] = entry
        logger.info(f"Audit record written session={entry.session_id} verified={entry.verified}")
        return entry

    def get(self, session_id: str) -> Optional[AuditRecord]:
        with self._lock:
            return self._by_session.get(session_id)

    def query(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[AuditRecord]:
        """Records with start <= timestamp <= end, oldest first"""
        with self._lock:
            records = list(self._records)
        return sorted(
            (r for r in records
             if (start is None or r.timestamp >= start) and (end is None or r.timestamp <= end)),
            key=lambda r: r.timestamp,
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @abstractmethod
    def _persist(self, entry: AuditRecord) -> None:
        """Durably store entry before it becomes visible"""


class InMemoryAuditLog(AuditLog):

    def _persist(self, entry: AuditRecord) -> None:
        pass


class JsonlAuditLog(AuditLog):
    """One JSON document per line; every write is flushed and fsynced."""

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = AuditRecord.model_validate_json(line)
                self._records.append(entry)
                self._by_session[entry.session_id] = entry
        logger.info(f"Loaded {len(self._records)} audit records from {self.path}")

    def _persist(self, entry: AuditRecord) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json(by_alias=True) + "\n")
            f.flush()
            os.fsync(f.fileno())


def build_audit_log(path: Optional[str]) -> AuditLog:
    return JsonlAuditLog(path) if path else InMemoryAuditLog()
