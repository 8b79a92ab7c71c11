"""
Deployment history store.

Records are stored as JSON files under one directory:

- ``{deployment_id}.json``: the full ``DeploymentRecord``
- ``index_{environment_suffix}.json``: per-environment summaries, newest last

Writes go to a temporary file in the same directory and are moved into place
with ``os.replace`` so a crash never leaves a half-written record.

Usage:
    from core.deployment.history import DeploymentHistoryStore

    store = DeploymentHistoryStore("data/deployments")
    store.record_deployment(record)
    for item in store.get_history("contoso", limit=5):
        print(item["deploymentId"], item["status"])
"""

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from constants import HistoryConfig
from formats.mermaid.erd_parser import ERDParser

from .models import DeploymentRecord, DeploymentStatus, utc_now

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r'^[A-Za-z0-9_\-]+$')


class DeploymentNotFoundError(LookupError):
    """Raised when a deployment id has no stored record."""

    def __init__(self, deployment_id: str):
        self.deployment_id = deployment_id
        super().__init__(f"Deployment {deployment_id} not found")


def _check_id(value: str, kind: str = "deployment id") -> str:
    if not value or not _SAFE_ID.match(value):
        raise ValueError(f"Invalid {kind}: {value!r}")
    return value


class DeploymentHistoryStore:
    """JSON file store for deployment records."""

    def __init__(
        self,
        directory: Union[str, Path] = HistoryConfig.DEFAULT_DIRECTORY,
        max_records: int = HistoryConfig.MAX_RECORDS_PER_ENVIRONMENT,
    ):
        self.directory = Path(directory)
        self.max_records = max_records
        self._lock = threading.RLock()
        self._parser = ERDParser()

    @classmethod
    def from_dict(cls, config_dict: Optional[Dict[str, Any]]) -> 'DeploymentHistoryStore':
        section = (config_dict or {}).get('history', config_dict or {})
        return cls(
            directory=section.get('directory', HistoryConfig.DEFAULT_DIRECTORY),
            max_records=int(section.get('max_records', HistoryConfig.MAX_RECORDS_PER_ENVIRONMENT)),
        )

    # =========================================================================
    # File helpers
    # =========================================================================

    def _record_path(self, deployment_id: str) -> Path:
        return self.directory / f"{_check_id(deployment_id)}.json"

    def _index_path(self, environment_suffix: str) -> Path:
        return self.directory / f"index_{_check_id(environment_suffix or 'default', 'environment')}.json"

    def _write_json(self, path: Path, data: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.directory), prefix=".tmp_", suffix=".json")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    @staticmethod
    def _read_json(path: Path) -> Optional[Any]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt history file {path}: {e}")
            return None

    def _load_index(self, environment_suffix: str) -> List[Dict[str, Any]]:
        data = self._read_json(self._index_path(environment_suffix))
        return list((data or {}).get('deployments', []))

    def _save_index(self, environment_suffix: str, entries: List[Dict[str, Any]]) -> None:
        self._write_json(self._index_path(environment_suffix), {"deployments": entries})

    @staticmethod
    def _index_entry(record: DeploymentRecord) -> Dict[str, Any]:
        return {
            "deploymentId": record.deployment_id,
            "timestamp": record.timestamp,
            "status": record.status.value,
            "solutionName": record.solution_info.solution_name,
            "summary": record.summary,
        }

    def _upsert_index(self, record: DeploymentRecord) -> None:
        entries = self._load_index(record.environment_suffix)
        entry = self._index_entry(record)
        for i, existing in enumerate(entries):
            if existing.get('deploymentId') == record.deployment_id:
                entries[i] = entry
                break
        else:
            entries.append(entry)
        self._save_index(record.environment_suffix, entries)

    # =========================================================================
    # Operations
    # =========================================================================

    def record_deployment(self, record: DeploymentRecord) -> str:
        """Persist a new record, update its environment index and trim old records."""
        with self._lock:
            self._write_json(self._record_path(record.deployment_id), record.to_dict())
            self._upsert_index(record)
            self.cleanup_old_deployments(record.environment_suffix)
        logger.info(f"Recorded deployment {record.deployment_id} ({record.status.value})")
        return record.deployment_id

    def get_deployment(self, deployment_id: str) -> Optional[DeploymentRecord]:
        data = self._read_json(self._record_path(deployment_id))
        if data is None:
            return None
        return DeploymentRecord.from_dict(data)

    def update_deployment(
        self,
        deployment_id: str,
        status: Optional[DeploymentStatus] = None,
        summary: Optional[Dict[str, Any]] = None,
        rollback_info: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> DeploymentRecord:
        """
        Update a stored record in place.

        ``summary`` is merged into the existing summary; ``rollback_info``
        replaces it.

        Raises:
            DeploymentNotFoundError: If the record does not exist.
        """
        with self._lock:
            record = self.get_deployment(deployment_id)
            if record is None:
                raise DeploymentNotFoundError(deployment_id)
            if status is not None:
                record.status = DeploymentStatus(status)
                if record.status in (DeploymentStatus.SUCCESS, DeploymentStatus.FAILED):
                    record.completed_at = utc_now()
            if summary:
                record.summary = {**record.summary, **summary}
            if rollback_info is not None:
                record.rollback_info = rollback_info
            if error:
                record.error = error
            self._write_json(self._record_path(deployment_id), record.to_dict())
            self._upsert_index(record)
        logger.info(f"Updated deployment {deployment_id} status: {record.status.value}")
        return record

    def get_history(
        self,
        environment_suffix: str = "default",
        limit: int = HistoryConfig.DEFAULT_HISTORY_LIMIT,
    ) -> List[Dict[str, Any]]:
        """Return index summaries for an environment, newest first."""
        entries = self._load_index(environment_suffix)
        entries.sort(key=lambda e: e.get('timestamp', ''), reverse=True)
        return entries[:max(0, limit)]

    def environments(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem[len("index_"):] for p in self.directory.glob("index_*.json"))

    def cleanup_old_deployments(self, environment_suffix: str, keep: Optional[int] = None) -> int:
        """Delete the oldest records beyond ``keep`` (default ``max_records``). Returns the count removed."""
        keep = self.max_records if keep is None else keep
        with self._lock:
            entries = self._load_index(environment_suffix)
            if len(entries) <= keep:
                return 0
            entries.sort(key=lambda e: e.get('timestamp', ''))
            removed, kept = entries[:len(entries) - keep], entries[len(entries) - keep:]
            for entry in removed:
                try:
                    self._record_path(entry['deploymentId']).unlink()
                except FileNotFoundError:
                    pass
            self._save_index(environment_suffix, kept)
        logger.info(f"Removed {len(removed)} old deployment record(s) for {environment_suffix}")
        return len(removed)

    # =========================================================================
    # Comparison
    # =========================================================================

    def _entity_map(self, content: str) -> Dict[str, Dict[str, str]]:
        parsed = self._parser.parse(content or "")
        return {
            entity.name: {attr.name: attr.original_type or attr.type.value for attr in entity.attributes}
            for entity in parsed.entities.values()
        }

    def compare(self, from_id: str, to_id: str) -> Dict[str, Any]:
        """
        Compare the ERDs of two deployments.

        Raises:
            DeploymentNotFoundError: If either record does not exist.
        """
        source = self.get_deployment(from_id)
        if source is None:
            raise DeploymentNotFoundError(from_id)
        target = self.get_deployment(to_id)
        if target is None:
            raise DeploymentNotFoundError(to_id)

        before = self._entity_map(source.erd_content)
        after = self._entity_map(target.erd_content)

        modified = []
        for name in sorted(set(before) & set(after)):
            old, new = before[name], after[name]
            added = sorted(set(new) - set(old))
            removed = sorted(set(old) - set(new))
            changed = sorted(a for a in set(old) & set(new) if old[a] != new[a])
            if added or removed or changed:
                modified.append({
                    "name": name,
                    "attributesAdded": added,
                    "attributesRemoved": removed,
                    "attributesChanged": [{"name": a, "from": old[a], "to": new[a]} for a in changed],
                })

        return {
            "fromDeployment": {"id": source.deployment_id, "timestamp": source.timestamp, "status": source.status.value},
            "toDeployment": {"id": target.deployment_id, "timestamp": target.timestamp, "status": target.status.value},
            "changes": {
                "entitiesAdded": sorted(set(after) - set(before)),
                "entitiesRemoved": sorted(set(before) - set(after)),
                "entitiesModified": modified,
            },
        }
