"""
Rollback engine.

Removes what a recorded deployment created, in reverse dependency order:
relationships, tables, global choices, solution, publisher. Rollbacks may
be partial; later rollbacks of the same deployment skip components that an
earlier rollback already removed.

Usage:
    from core.deployment.rollback import RollbackEngine

    engine = RollbackEngine(history, client_provider=lambda record: client)
    capability = engine.can_rollback(deployment_id)
    if capability.can_rollback:
        handle = engine.rollback_deployment(deployment_id)
        print(engine.tracker.get(handle["rollbackId"]))
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..dataverse_client import COMPONENT_TYPE_ENTITY, COMPONENT_TYPE_OPTION_SET, DataverseAPIError, DataverseClient
from .history import DeploymentHistoryStore
from .models import DeploymentRecord, DeploymentStatus, RollbackData, generate_rollback_id, utc_now
from .orchestrator import ProgressCallback, notify
from .status_tracker import RollbackStatusTracker

logger = logging.getLogger(__name__)

ROLLBACKABLE_STATUSES = (DeploymentStatus.SUCCESS, DeploymentStatus.MODIFIED)


class RollbackError(Exception):
    """Raised when a rollback cannot be started."""

    def __init__(self, message: str, details: Optional[List[str]] = None):
        self.message = message
        self.details = details or []
        super().__init__(message)


# =============================================================================
# Options
# =============================================================================

_OPTION_KEYS = {
    "relationships": "relationships",
    "custom_entities": "customEntities",
    "cdm_entities": "cdmEntities",
    "custom_global_choices": "customGlobalChoices",
    "added_global_choices": "addedGlobalChoices",
    "solution": "solution",
    "publisher": "publisher",
}


@dataclass
class RollbackOptions:
    """Component selection for one rollback. Everything is selected by default."""
    relationships: bool = True
    custom_entities: bool = True
    cdm_entities: bool = True
    custom_global_choices: bool = True
    added_global_choices: bool = True
    solution: bool = True
    publisher: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'RollbackOptions':
        data = data or {}
        values = {}
        for attr, key in _OPTION_KEYS.items():
            raw = data.get(key, data.get(attr))
            if raw is not None:
                values[attr] = bool(raw)
        return cls(**values)

    @classmethod
    def only(cls, components: List[str]) -> 'RollbackOptions':
        """Select only the named components (camelCase or snake_case)."""
        lookup = {**{k: k for k in _OPTION_KEYS}, **{v: k for k, v in _OPTION_KEYS.items()}}
        unknown = [c for c in components if c not in lookup]
        if unknown:
            raise ValueError(f"Unknown rollback components: {', '.join(unknown)}")
        selected = {lookup[c] for c in components}
        return cls(**{attr: attr in selected for attr in _OPTION_KEYS})

    def to_dict(self) -> Dict[str, bool]:
        return {key: getattr(self, attr) for attr, key in _OPTION_KEYS.items()}

    def any_selected(self) -> bool:
        return any(self.to_dict().values())


@dataclass
class RollbackCapability:
    can_rollback: bool
    reason: Optional[str] = None
    deployment_info: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"canRollback": self.can_rollback}
        if self.reason:
            result["reason"] = self.reason
        if self.deployment_info:
            result["deploymentInfo"] = self.deployment_info
        return result


def already_rolled_back(record: DeploymentRecord) -> Set[str]:
    """Component keys (snake_case) removed by earlier rollbacks."""
    done: Set[str] = set()
    for rollback in record.rollbacks:
        options = rollback.get("options") or rollback.get("rollbackOptions") or {}
        for attr, key in _OPTION_KEYS.items():
            if options.get(key):
                done.add(attr)
    return done


def remaining_components(record: DeploymentRecord) -> Dict[str, Any]:
    """What a rollback of ``record`` can still remove."""
    data = record.rollback_data or RollbackData()
    done = already_rolled_back(record)
    info = record.solution_info
    return {
        "relationships": [] if "relationships" in done else list(data.relationships),
        "custom_entities": [] if "custom_entities" in done else list(data.custom_entities),
        "cdm_entities": [] if ("cdm_entities" in done or "solution" in done) else list(data.cdm_entities),
        "custom_global_choices": [] if "custom_global_choices" in done else list(data.global_choices_created),
        "added_global_choices": [] if ("added_global_choices" in done or "solution" in done)
        else list(data.global_choices_added),
        "solution": None if ("solution" in done or not info.solution_created or not info.solution_id) else {
            "solutionId": info.solution_id, "uniqueName": info.solution_name,
        },
        "publisher": None if ("publisher" in done or not info.publisher_created) else {
            "publisherId": info.publisher_id, "prefix": info.publisher_prefix, "displayName": info.publisher_name,
        },
    }


def validate_options(options: RollbackOptions, remaining: Dict[str, Any]) -> Tuple[List[str], List[str]]:
    """Check dependency rules between the selected components."""
    errors: List[str] = []
    warnings: List[str] = []

    if options.custom_entities and not options.relationships and remaining["relationships"]:
        errors.append(
            f"Cannot delete custom tables without deleting relationships first. "
            f"Found {len(remaining['relationships'])} relationship(s) that must be deleted."
        )

    if options.solution:
        kept = []
        if not options.custom_entities and remaining["custom_entities"]:
            kept.append("custom entities")
        if not options.cdm_entities and remaining["cdm_entities"]:
            kept.append("CDM entities")
        if kept:
            errors.append(
                f"Cannot delete solution while it contains {' and '.join(kept)}. All entities must be removed first."
            )

    if options.publisher and not options.solution and remaining["solution"]:
        errors.append(
            f"Cannot delete publisher without deleting solution first. "
            f"Solution \"{remaining['solution']['uniqueName']}\" must be deleted."
        )

    if options.custom_global_choices and remaining["custom_global_choices"] and (
        not options.custom_entities or not options.cdm_entities
    ):
        warnings.append(
            "Deleting custom global choices while entities still exist may break references. "
            "Consider removing all entities first."
        )

    if not options.any_selected():
        errors.append("At least one component must be selected for rollback")

    return errors, warnings


# =============================================================================
# Engine
# =============================================================================

class RollbackEngine:
    """
    Start, execute and track deployment rollbacks.

    Args:
        history: Store holding deployment records.
        client_provider: Returns a Dataverse client for a record's environment.
        tracker: Status tracker; a new one is created when omitted.
    """

    def __init__(
        self,
        history: DeploymentHistoryStore,
        client_provider: Callable[[DeploymentRecord], DataverseClient],
        tracker: Optional[RollbackStatusTracker] = None,
    ):
        self.history = history
        self.client_provider = client_provider
        self.tracker = tracker if tracker is not None else RollbackStatusTracker()
        self._tasks: Set[asyncio.Task] = set()
        self._threads: Dict[str, threading.Thread] = {}

    def can_rollback(self, deployment_id: str) -> RollbackCapability:
        record = self.history.get_deployment(deployment_id)
        if record is None:
            return RollbackCapability(False, "Deployment not found")
        if record.status == DeploymentStatus.ROLLED_BACK:
            return RollbackCapability(False, "Deployment has already been completely rolled back")
        if record.status not in ROLLBACKABLE_STATUSES:
            return RollbackCapability(
                False, "Only successful or partially rolled back deployments can be rolled back"
            )
        if record.rollback_data is None:
            return RollbackCapability(False, "Deployment does not contain rollback data")
        if not record.rollback_eligible:
            return RollbackCapability(False, "Deployment is not eligible for rollback")

        remaining = remaining_components(record)
        return RollbackCapability(True, deployment_info={
            "solutionName": record.solution_info.solution_name,
            "entitiesCount": len(remaining["custom_entities"]),
            "relationshipsCount": len(remaining["relationships"]),
            "globalChoicesCount": len(remaining["custom_global_choices"]),
            "relationships": remaining["relationships"],
            "entities": {"custom": remaining["custom_entities"], "cdm": remaining["cdm_entities"]},
            "globalChoices": {
                "custom": remaining["custom_global_choices"],
                "added": remaining["added_global_choices"],
            },
            "solution": remaining["solution"],
            "publisher": remaining["publisher"],
        })

    def rollback_deployment(
        self,
        deployment_id: str,
        progress: Optional[ProgressCallback] = None,
        options: Optional[RollbackOptions] = None,
    ) -> Dict[str, str]:
        """
        Validate and start a rollback in the background.

        Returns:
            ``{"rollbackId": ..., "status": "pending"}``

        Raises:
            RollbackError: If the deployment cannot be rolled back or the
                selected components violate dependency rules.
        """
        capability = self.can_rollback(deployment_id)
        if not capability.can_rollback:
            raise RollbackError(capability.reason or "Rollback not allowed")

        options = options if options is not None else RollbackOptions()
        record = self.history.get_deployment(deployment_id)
        errors, _ = validate_options(options, remaining_components(record))
        if errors:
            raise RollbackError("Invalid rollback configuration", errors)

        rollback_id = generate_rollback_id()
        self.tracker.create(rollback_id, deployment_id)
        coro = self._run_background(deployment_id, rollback_id, options, progress)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            thread = threading.Thread(
                target=asyncio.run, args=(coro,), name=f"rollback-{rollback_id}", daemon=True,
            )
            self._threads[rollback_id] = thread
            thread.start()

        logger.info(f"Started rollback {rollback_id} for deployment {deployment_id}")
        return {"rollbackId": rollback_id, "status": "pending"}

    def wait(self, rollback_id: str, timeout: Optional[float] = None) -> None:
        """Join the worker thread of a rollback started from sync code."""
        thread = self._threads.get(rollback_id)
        if thread is not None:
            thread.join(timeout)

    async def _run_background(self, *args: Any) -> None:
        try:
            await self.execute_rollback(*args)
        except Exception as e:
            logger.exception(f"Rollback failed: {e}")

    async def execute_rollback(
        self,
        deployment_id: str,
        rollback_id: Optional[str] = None,
        options: Optional[RollbackOptions] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """
        Run every rollback phase and update the deployment record.

        Per-item failures are collected in the summary; later phases still
        run. Unexpected errors mark the tracker entry failed and propagate.
        """
        rollback_id = rollback_id or generate_rollback_id()
        options = options if options is not None else RollbackOptions()
        if self.tracker.get(rollback_id) is None:
            self.tracker.create(rollback_id, deployment_id)

        summary: Dict[str, Any] = {
            "rollbackId": rollback_id,
            "deploymentId": deployment_id,
            "relationshipsDeleted": 0,
            "entitiesDeleted": 0,
            "cdmEntitiesRemoved": 0,
            "globalChoicesDeleted": 0,
            "globalChoicesRemoved": 0,
            "solutionDeleted": False,
            "publisherDeleted": False,
            "errors": [],
            "warnings": [],
        }
        failed_kinds: Set[str] = set()

        def phase(name: str, message: str) -> None:
            self.tracker.update_phase(rollback_id, name, message)
            notify(progress, name, message, {"rollbackId": rollback_id})

        try:
            phase("preparation", "Loading deployment record")
            record = self.history.get_deployment(deployment_id)
            if record is None:
                raise RollbackError(f"Deployment {deployment_id} not found")
            remaining = remaining_components(record)
            errors, warnings = validate_options(options, remaining)
            if errors:
                raise RollbackError("Invalid rollback configuration", errors)
            summary["warnings"].extend(warnings)
            client = self.client_provider(record)
            solution_name = record.solution_info.solution_name or ""
            deletes_solution = options.solution and bool(remaining["solution"])

            async def attempt(kind: str, label: str, func: Callable[..., Any], *args: Any) -> bool:
                try:
                    await asyncio.to_thread(func, *args)
                    return True
                except DataverseAPIError as e:
                    if e.status_code == 404:
                        summary["warnings"].append(f"{label} was already removed")
                        return True
                    logger.error(f"Rollback of {label} failed: {e}")
                    summary["errors"].append(f"Failed to remove {label}: {e.message}")
                    failed_kinds.add(kind)
                    return False

            phase("relationships", f"Deleting {len(remaining['relationships'])} relationships")
            if options.relationships:
                for rel in reversed(remaining["relationships"]):
                    name = rel.get("schemaName")
                    if await attempt("relationships", f"relationship '{name}'", client.delete_relationship, name):
                        summary["relationshipsDeleted"] += 1

            phase("entities", "Deleting tables")
            if options.custom_entities:
                for entity in reversed(remaining["custom_entities"]):
                    name = entity.get("logicalName")
                    if await attempt("custom_entities", f"table '{name}'", client.delete_entity, name):
                        summary["entitiesDeleted"] += 1
            if options.cdm_entities and not deletes_solution:
                for entity in remaining["cdm_entities"]:
                    name = entity.get("logicalName")
                    if entity.get("metadataId") and await attempt(
                        "cdm_entities", f"CDM table '{name}' from solution",
                        client.remove_solution_component, entity["metadataId"], solution_name, COMPONENT_TYPE_ENTITY,
                    ):
                        summary["cdmEntitiesRemoved"] += 1

            phase("global-choices", "Removing global choices")
            if options.custom_global_choices:
                for choice in reversed(remaining["custom_global_choices"]):
                    name = choice.get("name")
                    if await attempt("custom_global_choices", f"global choice '{name}'", client.delete_global_choice, name):
                        summary["globalChoicesDeleted"] += 1
            if options.added_global_choices and not deletes_solution:
                for choice in remaining["added_global_choices"]:
                    name = choice.get("name")
                    if choice.get("metadataId") and await attempt(
                        "added_global_choices", f"global choice '{name}' from solution",
                        client.remove_solution_component, choice["metadataId"], solution_name, COMPONENT_TYPE_OPTION_SET,
                    ):
                        summary["globalChoicesRemoved"] += 1

            phase("solution", "Deleting solution")
            if options.solution:
                if remaining["solution"]:
                    summary["solutionDeleted"] = await attempt(
                        "solution", f"solution '{solution_name}'",
                        client.delete_solution, remaining["solution"]["solutionId"],
                    )
                elif not record.solution_info.solution_created and record.solution_info.solution_id:
                    summary["warnings"].append("Solution existed before the deployment; not deleted")

            phase("publisher", "Deleting publisher")
            if options.publisher:
                if remaining["publisher"] and not summary["solutionDeleted"] and remaining["solution"]:
                    summary["warnings"].append("Publisher kept because its solution could not be deleted")
                    failed_kinds.add("publisher")
                elif remaining["publisher"]:
                    publisher = remaining["publisher"]
                    summary["publisherDeleted"] = await attempt(
                        "publisher", f"publisher '{publisher.get('prefix')}'",
                        client.delete_publisher, publisher.get("publisherId") or publisher.get("prefix"),
                    )
                elif not record.solution_info.publisher_created and record.solution_info.publisher_id:
                    summary["warnings"].append("Publisher existed before the deployment; not deleted")

            phase("finalization", "Updating deployment record")
            complete = self._is_complete(options, remaining) and not summary["errors"]
            status = DeploymentStatus.ROLLED_BACK if complete else DeploymentStatus.MODIFIED
            # A kind with failures stays eligible for the next rollback
            applied = {
                key: getattr(options, attr) and attr not in failed_kinds
                for attr, key in _OPTION_KEYS.items()
            }
            entry = {
                "rollbackId": rollback_id,
                "rollbackTimestamp": utc_now(),
                "results": {k: v for k, v in summary.items() if k not in ("rollbackId", "deploymentId")},
                "options": applied,
            }
            rollback_info = dict(record.rollback_info)
            rollback_info["rollbacks"] = list(record.rollbacks) + [entry]
            rollback_info["lastRollback"] = entry
            self.history.update_deployment(deployment_id, status=status, rollback_info=rollback_info)

            summary["status"] = status.value
            summary["complete"] = complete
            self.tracker.set_result(rollback_id, summary)
            logger.info(
                f"Rollback {rollback_id} finished: status={status.value}, "
                f"relationships={summary['relationshipsDeleted']}, tables={summary['entitiesDeleted']}, "
                f"errors={len(summary['errors'])}"
            )
            return summary

        except Exception as e:
            self.tracker.set_error(rollback_id, str(e))
            raise

    @staticmethod
    def _is_complete(options: RollbackOptions, remaining: Dict[str, Any]) -> bool:
        """True when every component still present was selected."""
        for attr in _OPTION_KEYS:
            present = remaining[attr]
            # Solution deletion takes its members with it
            if attr in ("cdm_entities", "added_global_choices") and options.solution and remaining["solution"]:
                continue
            if present and not getattr(options, attr):
                return False
        return True


__all__ = [
    "RollbackCapability",
    "RollbackEngine",
    "RollbackError",
    "RollbackOptions",
    "validate_options",
    "remaining_components",
    "ROLLBACKABLE_STATUSES",
]
