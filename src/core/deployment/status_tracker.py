"""
In-memory rollback status tracker.

Holds the progress of background rollbacks so callers can poll them by id.
Capacity is bounded: the oldest entry is evicted when ``max_entries`` is
reached. Completed and failed entries expire after ``expiry_seconds``; expiry
is applied lazily on access.
"""

import copy
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

from constants import RollbackConfig

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in-progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

_FINISHED = (STATUS_COMPLETED, STATUS_FAILED)


class RollbackStatusTracker:
    """Bounded, thread-safe map of rollback id to status entry."""

    def __init__(
        self,
        max_entries: int = RollbackConfig.MAX_TRACKED_ROLLBACKS,
        expiry_seconds: float = RollbackConfig.STATUS_EXPIRY_SECONDS,
        phases: tuple = RollbackConfig.PHASES,
        clock: Callable[[], float] = time.time,
    ):
        self.max_entries = max_entries
        self.expiry_seconds = expiry_seconds
        self.phases = tuple(phases)
        self._clock = clock
        self._entries: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def _expire(self) -> None:
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if entry["status"] in _FINISHED and entry.get("endTime") is not None
            and now - entry["endTime"] > self.expiry_seconds
        ]
        for key in expired:
            del self._entries[key]

    def create(self, rollback_id: str, deployment_id: str) -> Dict[str, Any]:
        with self._lock:
            self._expire()
            while len(self._entries) >= self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted rollback status {evicted}")
            entry = {
                "rollbackId": rollback_id,
                "deploymentId": deployment_id,
                "status": STATUS_PENDING,
                "progress": {
                    "currentPhase": None,
                    "currentPhaseIndex": 0,
                    "totalPhases": len(self.phases),
                    "percentage": 0,
                    "message": "",
                },
                "result": None,
                "error": None,
                "startTime": self._clock(),
                "endTime": None,
            }
            self._entries[rollback_id] = entry
            return copy.deepcopy(entry)

    def get(self, rollback_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._expire()
            entry = self._entries.get(rollback_id)
            return copy.deepcopy(entry) if entry else None

    def update_phase(self, rollback_id: str, phase: str, message: str = "") -> None:
        with self._lock:
            entry = self._entries.get(rollback_id)
            if entry is None:
                return
            index = self.phases.index(phase) + 1 if phase in self.phases else entry["progress"]["currentPhaseIndex"]
            entry["status"] = STATUS_IN_PROGRESS
            entry["progress"].update({
                "currentPhase": phase,
                "currentPhaseIndex": index,
                "percentage": int(index * 100 / max(len(self.phases), 1)),
                "message": message,
            })

    def set_result(self, rollback_id: str, result: Dict[str, Any]) -> None:
        with self._lock:
            entry = self._entries.get(rollback_id)
            if entry is None:
                return
            entry["status"] = STATUS_COMPLETED
            entry["result"] = result
            entry["progress"]["percentage"] = 100
            entry["endTime"] = self._clock()

    def set_error(self, rollback_id: str, error: str) -> None:
        with self._lock:
            entry = self._entries.get(rollback_id)
            if entry is None:
                return
            entry["status"] = STATUS_FAILED
            entry["error"] = error
            entry["endTime"] = self._clock()

    def get_all(self) -> List[Dict[str, Any]]:
        with self._lock:
            self._expire()
            return [copy.deepcopy(entry) for entry in self._entries.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
