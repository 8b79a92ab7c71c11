"""
Deployment orchestrator.

Executes a ``DataverseSchema`` against an environment in a fixed order:

1. Ensure publisher and solution
2. Create or add global choices
3. Create tables in concurrent batches
4. Create columns with one ``$batch`` call per table
5. Add tables to the solution
6. Create relationships in concurrent groups once tables are ready

The synchronous ``DataverseClient`` is driven through ``asyncio.to_thread``.
Per-item failures are collected in the result; only configuration errors
propagate.

Usage:
    from core.deployment.orchestrator import DeploymentOrchestrator

    orchestrator = DeploymentOrchestrator(client)
    result = asyncio.run(orchestrator.deploy(schema, options))
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from shared.models.dataverse_types import (
    DataverseEntityDefinition,
    DataverseGlobalChoice,
    DataverseRelationshipDefinition,
    DataverseSchema,
)

from ..cancellation import CancellationRegistry, CancellationToken, OperationCancelledException
from ..dataverse_client import (
    COMPONENT_TYPE_ENTITY,
    COMPONENT_TYPE_OPTION_SET,
    ConfigurationError,
    DataverseAPIError,
    DataverseClient,
)
from .models import (
    DeploymentOptions,
    DeploymentRecord,
    DeploymentResult,
    DeploymentSettings,
    SolutionInfo,
    generate_deployment_id,
    utc_now,
)
from .retry import SleepFunc, is_batch_retryable, is_retryable_after_client, retry_with_backoff

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str, Dict[str, Any]], None]


# =============================================================================
# State machine
# =============================================================================

class DeploymentState(str, Enum):
    PENDING = "pending"
    PUBLISHER_ENSURED = "publisher-ensured"
    SOLUTION_ENSURED = "solution-ensured"
    ENTITIES_CREATING = "entities-creating"
    ATTRIBUTES_CREATING = "attributes-creating"
    SOLUTION_LINKING = "solution-linking"
    RELATIONSHIPS_CREATING = "relationships-creating"
    COMPLETED = "completed"
    FAILED = "failed"


_ORDER = [
    DeploymentState.PENDING,
    DeploymentState.PUBLISHER_ENSURED,
    DeploymentState.SOLUTION_ENSURED,
    DeploymentState.ENTITIES_CREATING,
    DeploymentState.ATTRIBUTES_CREATING,
    DeploymentState.SOLUTION_LINKING,
    DeploymentState.RELATIONSHIPS_CREATING,
    DeploymentState.COMPLETED,
]

TERMINAL_STATES = frozenset({DeploymentState.COMPLETED, DeploymentState.FAILED})


class InvalidStateTransition(Exception):
    """Raised when a deployment state change skips or reverses a step."""

    def __init__(self, current: DeploymentState, target: DeploymentState):
        self.current = current
        self.target = target
        super().__init__(f"Invalid deployment state transition: {current.value} -> {target.value}")


class DeploymentStateMachine:
    """Linear deployment state with progress notification on each transition."""

    def __init__(self, progress: Optional[ProgressCallback] = None):
        self.state = DeploymentState.PENDING
        self._progress = progress
        self.history: List[DeploymentState] = [self.state]

    def can_transition(self, target: DeploymentState) -> bool:
        if self.state in TERMINAL_STATES:
            return False
        if target == DeploymentState.FAILED:
            return True
        return _ORDER.index(target) == _ORDER.index(self.state) + 1

    def transition(self, target: DeploymentState, message: str = "", details: Optional[Dict[str, Any]] = None) -> None:
        if not self.can_transition(target):
            raise InvalidStateTransition(self.state, target)
        self.state = target
        self.history.append(target)
        notify(self._progress, target.value, message or target.value, details or {})


def notify(progress: Optional[ProgressCallback], step: str, message: str, details: Dict[str, Any]) -> None:
    if progress is None:
        return
    try:
        progress(step, message, details)
    except Exception as e:
        logger.warning(f"Progress callback failed for step {step}: {e}")


def chunked(items: Sequence[Any], size: int) -> List[List[Any]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


# =============================================================================
# Orchestrator
# =============================================================================

class DeploymentOrchestrator:
    """
    Deploy a schema document to one Dataverse environment.

    Args:
        client: Dataverse client for the target environment.
        settings: Batch, retry and polling tuning.
        history: Optional store; receives a record when a deployment ends.
        cancellation: Registry used to cancel running deployments by id.
        sleep: Async sleep, replaceable in tests.
    """

    def __init__(
        self,
        client: DataverseClient,
        settings: Optional[DeploymentSettings] = None,
        history: Optional[Any] = None,
        cancellation: Optional[CancellationRegistry] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        if client is None:
            raise ConfigurationError("A Dataverse client is required")
        self.client = client
        self.settings = settings if settings is not None else DeploymentSettings()
        self.history = history
        self.cancellation = cancellation if cancellation is not None else CancellationRegistry()
        self._sleep: SleepFunc = sleep or asyncio.sleep

    def cancel(self, deployment_id: str) -> bool:
        return self.cancellation.cancel(deployment_id)

    async def deploy(
        self,
        schema: DataverseSchema,
        options: DeploymentOptions,
        progress: Optional[ProgressCallback] = None,
        deployment_id: Optional[str] = None,
        erd_content: str = "",
    ) -> DeploymentResult:
        """
        Run a deployment to completion.

        Returns:
            DeploymentResult; ``success`` is True when at least one table was
            created or the schema has no custom tables.
        """
        deployment_id = deployment_id or generate_deployment_id()
        token = self.cancellation.register(deployment_id)
        machine = DeploymentStateMachine(progress)
        result = DeploymentResult(deployment_id=deployment_id)
        timings: Dict[str, float] = {}
        started = time.monotonic()

        logger.info(
            f"Deployment {deployment_id}: {len(schema.custom_entities)} custom tables, "
            f"{len(schema.cdm_entities)} CDM tables, {len(schema.relationships)} relationships"
        )

        try:
            token.throw_if_cancelled("publisher")
            publisher = await self._call(
                self.client.ensure_publisher, options.publisher_prefix, options.publisher_name,
                options.publisher_unique_name,
            )
            result.solution_info = SolutionInfo(
                publisher_id=publisher.get('publisherid'),
                publisher_name=options.publisher_name,
                publisher_prefix=options.publisher_prefix,
                publisher_created=bool(publisher.get('_created')),
            )
            machine.transition(DeploymentState.PUBLISHER_ENSURED, f"Publisher ready: {options.publisher_name}")

            token.throw_if_cancelled("solution")
            solution = await self._call(
                self.client.ensure_solution, options.solution_name,
                options.solution_display_name or options.solution_name,
                result.solution_info.publisher_id, options.description,
            )
            result.solution_info.solution_id = solution.get('solutionid')
            result.solution_info.solution_name = options.solution_name
            result.solution_info.solution_created = bool(solution.get('_created'))
            machine.transition(DeploymentState.SOLUTION_ENSURED, f"Solution ready: {options.solution_name}")

            token.throw_if_cancelled("global choices")
            phase_start = time.monotonic()
            await self._deploy_global_choices(schema.global_choices, options.solution_name, result, progress)
            timings["globalChoices"] = time.monotonic() - phase_start

            machine.transition(
                DeploymentState.ENTITIES_CREATING,
                f"Creating {len(schema.custom_entities)} tables",
                {"total": len(schema.custom_entities)},
            )
            phase_start = time.monotonic()
            created = await self._create_entities(schema.custom_entities, options.solution_name, result, token, progress)
            timings["entities"] = time.monotonic() - phase_start

            machine.transition(DeploymentState.ATTRIBUTES_CREATING, "Creating columns")
            phase_start = time.monotonic()
            await self.wait_for_entities_ready([e.logical_name for e in created])
            await self._create_attributes(created, result, token, progress)
            timings["attributes"] = time.monotonic() - phase_start

            machine.transition(DeploymentState.SOLUTION_LINKING, "Adding tables to solution")
            token.throw_if_cancelled("solution linking")
            await self._link_to_solution(created, schema.cdm_entities, options.solution_name, result)

            machine.transition(
                DeploymentState.RELATIONSHIPS_CREATING,
                f"Creating {len(schema.relationships)} relationships",
                {"total": len(schema.relationships)},
            )
            phase_start = time.monotonic()
            if options.include_relationships and schema.relationships:
                await self._create_relationships(schema.relationships, result, token, progress)
            timings["relationships"] = time.monotonic() - phase_start

            result.success = result.entities_created + result.entities_skipped > 0 or not schema.custom_entities
            if not result.success:
                result.errors.append("No tables were created")
                machine.transition(DeploymentState.FAILED, "Deployment failed", {"errors": result.errors})
            else:
                machine.transition(
                    DeploymentState.COMPLETED,
                    "Deployment completed" if not result.errors else "Deployment completed with errors",
                    result.to_dict(),
                )

        except OperationCancelledException:
            logger.warning(f"Deployment {deployment_id} cancelled")
            result.success = False
            result.cancelled = True
            result.errors.append("Deployment cancelled")
            machine.transition(DeploymentState.FAILED, "Deployment cancelled", {"cancelled": True})

        except DataverseAPIError as e:
            logger.error(f"Deployment {deployment_id} failed: {e}")
            result.success = False
            result.errors.append(e.message)
            machine.transition(DeploymentState.FAILED, f"Deployment failed: {e.message}", {"errors": result.errors})

        finally:
            self.cancellation.unregister(deployment_id)

        timings["total"] = time.monotonic() - started
        result.performance = {
            "durationSeconds": round(timings["total"], 3),
            "phases": {k: round(v, 3) for k, v in timings.items() if k != "total"},
            "entityBatchSize": self.settings.entity_batch_size,
            "relationshipBatchSize": self.settings.relationship_batch_size,
        }

        if self.history is not None:
            self._record(result, erd_content, timings["total"])

        logger.info(
            f"Deployment {deployment_id} finished: status={result.status.value}, "
            f"tables={result.entities_created}, relationships={result.relationships_created}, "
            f"errors={len(result.errors)}"
        )
        return result

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(func, *args)

    async def _with_retry(self, func: Callable[..., Any], *args: Any, name: str, attempts: Optional[int] = None) -> Any:
        return await retry_with_backoff(
            lambda: self._call(func, *args),
            max_attempts=attempts or self.settings.max_retries,
            base_delay=self.settings.base_delay,
            max_delay=self.settings.max_delay,
            jitter=self.settings.jitter,
            retry_on=is_retryable_after_client,
            sleep=self._sleep,
            operation_name=name,
        )

    def _record(self, result: DeploymentResult, erd_content: str, duration: float) -> None:
        config = getattr(self.client, 'config', None)
        rollback_data = result.rollback_data()
        record = DeploymentRecord(
            deployment_id=result.deployment_id,
            status=result.status,
            environment_suffix=getattr(config, 'environment_suffix', 'default'),
            environment_url=getattr(config, 'server_url', None),
            erd_content=erd_content,
            solution_info=result.solution_info,
            rollback_data=rollback_data,
            summary={
                "entitiesCreated": result.entities_created,
                "relationshipsCreated": result.relationships_created,
                "relationshipsFailed": result.relationships_failed,
                "customEntityNames": [e.get("logicalName") for e in result.created["entities"]],
                "cdmEntityNames": [e.get("logicalName") for e in result.cdm_entities],
                "errors": list(result.errors),
                "warnings": list(result.warnings),
            },
            rollback_eligible=not rollback_data.is_empty or result.solution_info.solution_created,
            duration=round(duration, 3),
            completed_at=utc_now(),
            error=result.errors[0] if result.errors and not result.success else None,
        )
        try:
            self.history.record_deployment(record)
        except OSError as e:
            logger.error(f"Failed to record deployment {result.deployment_id}: {e}")
            result.warnings.append(f"Deployment history not saved: {e}")

    # =========================================================================
    # Global choices
    # =========================================================================

    async def _deploy_global_choices(
        self,
        choices: Sequence[DataverseGlobalChoice],
        solution_name: str,
        result: DeploymentResult,
        progress: Optional[ProgressCallback],
    ) -> None:
        if not choices:
            return
        notify(progress, "global-choices", f"Processing {len(choices)} global choices", {"total": len(choices)})
        for choice in choices:
            try:
                existing = await self._call(self.client.find_global_choice, choice.name)
                if choice.is_existing or existing:
                    if existing is None:
                        result.errors.append(f"Global choice '{choice.name}' not found")
                        continue
                    if not choice.is_existing:
                        result.warnings.append(
                            f"Global choice '{choice.name}' already exists; adding it to the solution"
                        )
                    await self._with_retry(
                        self.client.add_solution_component, existing['MetadataId'], solution_name,
                        COMPONENT_TYPE_OPTION_SET, name=f"add global choice {choice.name}",
                    )
                    result.global_choices_added.append({"name": choice.name, "metadataId": existing['MetadataId']})
                    continue

                await self._with_retry(
                    self.client.create_global_choice, choice.to_metadata(), solution_name,
                    name=f"create global choice {choice.name}",
                )
                result.created["global_choices"].append({"name": choice.name, "displayName": choice.display_name})
            except DataverseAPIError as e:
                logger.error(f"Global choice {choice.name} failed: {e}")
                result.errors.append(f"Failed to deploy global choice '{choice.name}': {e.message}")

    # =========================================================================
    # Tables
    # =========================================================================

    async def _create_entities(
        self,
        entities: Sequence[DataverseEntityDefinition],
        solution_name: str,
        result: DeploymentResult,
        token: CancellationToken,
        progress: Optional[ProgressCallback],
    ) -> List[DataverseEntityDefinition]:
        created: List[DataverseEntityDefinition] = []
        batches = chunked(entities, self.settings.entity_batch_size)
        for index, batch in enumerate(batches, start=1):
            token.throw_if_cancelled(f"table batch {index}")
            notify(progress, "entities-creating", f"Table batch {index}/{len(batches)}",
                   {"batch": index, "batches": len(batches), "entities": [e.logical_name for e in batch]})
            outcomes = await asyncio.gather(
                *(self._create_entity(entity, solution_name) for entity in batch),
                return_exceptions=True,
            )
            for entity, outcome in zip(batch, outcomes):
                if isinstance(outcome, OperationCancelledException):
                    raise outcome
                if isinstance(outcome, BaseException):
                    message = outcome.message if isinstance(outcome, DataverseAPIError) else str(outcome)
                    logger.error(f"Table {entity.logical_name} failed: {message}")
                    result.errors.append(f"Failed to create table '{entity.logical_name}': {message}")
                    continue
                if outcome is None:
                    result.warnings.append(f"Table '{entity.logical_name}' already exists; skipped")
                    result.entities_skipped += 1
                    continue
                entity_metadata_id = outcome
                created.append(entity)
                result.entities_created += 1
                result.created["entities"].append({
                    "logicalName": entity.logical_name,
                    "schemaName": entity.schema_name,
                    "displayName": entity.display_name,
                    "metadataId": entity_metadata_id,
                })
        return created

    async def _create_entity(self, entity: DataverseEntityDefinition, solution_name: str) -> Optional[str]:
        """Create one table. Returns its MetadataId, or None when it already exists."""
        if await self._call(self.client.entity_exists, entity.logical_name):
            return None
        response = await self._with_retry(
            self.client.create_entity, entity.to_metadata(), solution_name,
            name=f"create table {entity.logical_name}",
        )
        await self._sleep(self.settings.entity_settle_delay)
        return response.get('_entityId') or response.get('MetadataId') or ""

    async def wait_for_entities_ready(self, logical_names: Sequence[str]) -> Dict[str, bool]:
        """
        Poll each table concurrently until metadata reads succeed.

        A table that is not ready within ``ready_timeout`` is logged and the
        deployment proceeds.
        """
        if not logical_names:
            return {}
        states = await asyncio.gather(*(self._poll_ready(name) for name in logical_names))
        return dict(zip(logical_names, states))

    async def _poll_ready(self, logical_name: str) -> bool:
        max_polls = max(1, int(self.settings.ready_timeout / max(self.settings.poll_interval, 0.001)))
        for _ in range(max_polls):
            try:
                entity = await self._call(self.client.get_entity, logical_name)
                if entity and entity.get('MetadataId'):
                    return True
            except DataverseAPIError as e:
                logger.debug(f"Readiness check for {logical_name} failed: {e}")
            await self._sleep(self.settings.poll_interval)
        logger.warning(f"Table {logical_name} not ready after {self.settings.ready_timeout}s; continuing")
        return False

    # =========================================================================
    # Columns
    # =========================================================================

    async def _create_attributes(
        self,
        entities: Sequence[DataverseEntityDefinition],
        result: DeploymentResult,
        token: CancellationToken,
        progress: Optional[ProgressCallback],
    ) -> None:
        for entity in entities:
            if not entity.attributes:
                continue
            token.throw_if_cancelled(f"columns for {entity.logical_name}")
            metadata = [attr.to_metadata() for attr in entity.attributes]
            notify(progress, "attributes-creating", f"Creating {len(metadata)} columns on {entity.logical_name}",
                   {"entity": entity.logical_name, "count": len(metadata)})
            batch = self.client.build_attribute_batch(entity.logical_name, metadata)
            try:
                await retry_with_backoff(
                    lambda: self._call(self.client.execute_batch, batch),
                    max_attempts=self.settings.attribute_batch_retries,
                    base_delay=self.settings.base_delay,
                    max_delay=self.settings.max_delay,
                    jitter=self.settings.jitter,
                    retry_on=is_batch_retryable,
                    sleep=self._sleep,
                    operation_name=f"column batch for {entity.logical_name}",
                )
                await self._sleep(self.settings.attribute_settle_delay)
                continue
            except DataverseAPIError as e:
                logger.warning(f"Column batch for {entity.logical_name} failed, creating one at a time: {e}")
                result.warnings.append(
                    f"Batch column creation failed for '{entity.logical_name}'; fell back to individual creation"
                )

            for attr, attr_metadata in zip(entity.attributes, metadata):
                try:
                    await self._with_retry(
                        self.client.create_attribute, entity.logical_name, attr_metadata,
                        name=f"create column {attr.logical_name}",
                    )
                except DataverseAPIError as e:
                    result.errors.append(
                        f"Failed to create column '{attr.logical_name}' on '{entity.logical_name}': {e.message}"
                    )

    # =========================================================================
    # Solution membership
    # =========================================================================

    async def _link_to_solution(
        self,
        created: Sequence[DataverseEntityDefinition],
        cdm_entities: Sequence[DataverseEntityDefinition],
        solution_name: str,
        result: DeploymentResult,
    ) -> None:
        created_ids = {e["logicalName"]: e.get("metadataId") for e in result.created["entities"]}
        for entity in list(created) + list(cdm_entities):
            metadata_id = created_ids.get(entity.logical_name)
            try:
                if not metadata_id:
                    found = await self._call(self.client.get_entity, entity.logical_name)
                    if not found:
                        result.warnings.append(f"Table '{entity.logical_name}' not found; not added to solution")
                        continue
                    metadata_id = found.get('MetadataId')
                await self._with_retry(
                    self.client.add_solution_component, metadata_id, solution_name, COMPONENT_TYPE_ENTITY,
                    name=f"add {entity.logical_name} to solution",
                    attempts=self.settings.solution_link_retries,
                )
                if entity.is_cdm:
                    result.cdm_entities.append({
                        "logicalName": entity.logical_name,
                        "displayName": entity.display_name,
                        "metadataId": metadata_id,
                    })
            except DataverseAPIError as e:
                logger.warning(f"Adding {entity.logical_name} to solution failed: {e}")
                result.warnings.append(f"Table '{entity.logical_name}' was not added to the solution: {e.message}")

    # =========================================================================
    # Relationships
    # =========================================================================

    async def _create_relationships(
        self,
        relationships: Sequence[DataverseRelationshipDefinition],
        result: DeploymentResult,
        token: CancellationToken,
        progress: Optional[ProgressCallback],
    ) -> None:
        notify(progress, "relationships-creating", "Waiting for tables to settle before relationships", {})
        await self._sleep(self.settings.relationship_wait)
        involved = sorted({r.referenced_entity for r in relationships} | {r.referencing_entity for r in relationships})
        await self.wait_for_entities_ready(involved)

        groups = chunked(relationships, self.settings.relationship_batch_size)
        for index, group in enumerate(groups, start=1):
            token.throw_if_cancelled(f"relationship group {index}")
            notify(progress, "relationships-creating", f"Relationship group {index}/{len(groups)}",
                   {"group": index, "groups": len(groups)})
            outcomes = await asyncio.gather(
                *(self._create_relationship(rel) for rel in group),
                return_exceptions=True,
            )
            for rel, outcome in zip(group, outcomes):
                if isinstance(outcome, BaseException):
                    message = outcome.message if isinstance(outcome, DataverseAPIError) else str(outcome)
                    result.relationships_failed += 1
                    result.errors.append(f"Failed to create relationship '{rel.schema_name}': {message}")
                    continue
                result.relationships_created += 1
                if outcome:
                    result.created["relationships"].append({
                        "schemaName": rel.schema_name,
                        "fromEntity": rel.referenced_entity,
                        "toEntity": rel.referencing_entity,
                    })
                else:
                    result.warnings.append(f"Relationship '{rel.schema_name}' already exists")

    async def _create_relationship(self, rel: DataverseRelationshipDefinition) -> bool:
        """Create one relationship. Returns False when it already existed."""
        if await self._call(self.client.relationship_exists, rel.schema_name):
            return False
        await self._with_retry(
            self.client.create_relationship, rel.to_metadata(),
            name=f"create relationship {rel.schema_name}",
        )
        return True
