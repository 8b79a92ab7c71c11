"""
Rollback engine and status tracker tests.

Deployments are executed against the in-memory Dataverse double and then
rolled back with the same double, so the records under test are exactly
what the orchestrator writes.

Run with: pytest tests/core/test_rollback.py -v
"""

import asyncio

import pytest

from constants import RollbackConfig
from core.dataverse_client import COMPONENT_TYPE_ENTITY, ConfigurationError
from core.deployment import (
    DeploymentOptions,
    DeploymentOrchestrator,
    DeploymentStatus,
    RollbackEngine,
    RollbackError,
    RollbackOptions,
    RollbackStatusTracker,
)
from core.deployment.rollback import remaining_components, validate_options
from formats.mermaid import ERDToDataverseConverter

from fixtures import CDM_ERD, SIMPLE_ERD, FakeDataverseClient, api_error


OPTIONS = DeploymentOptions(solution_name="ProjectSolution", publisher_prefix="cr123")


def deploy(client, settings, no_sleep, history, content=SIMPLE_ERD, entity_choice=None):
    schema = ERDToDataverseConverter().convert_content(content, "cr123", entity_choice=entity_choice)
    orchestrator = DeploymentOrchestrator(client, settings=settings, history=history, sleep=no_sleep)
    return asyncio.run(orchestrator.deploy(schema, OPTIONS, erd_content=content)).deployment_id


@pytest.fixture
def deployed(fake_client, fast_settings, no_sleep, history_store):
    """A successful SIMPLE_ERD deployment; returns (client, deployment id)."""
    return fake_client, deploy(fake_client, fast_settings, no_sleep, history_store)


@pytest.fixture
def engine(history_store, fake_client):
    return RollbackEngine(history_store, lambda record: fake_client)


def rollback(engine, deployment_id, options=None, progress=None):
    return asyncio.run(engine.execute_rollback(deployment_id, options=options, progress=progress))


# =============================================================================
# Capability Tests
# =============================================================================

@pytest.mark.unit
class TestCanRollback:
    """Tests for can_rollback."""

    def test_not_found(self, engine):
        capability = engine.can_rollback("deploy_1_missing")
        assert not capability.can_rollback
        assert capability.reason == "Deployment not found"

    def test_successful_deployment(self, engine, deployed):
        """Successful deployments report what a rollback would remove."""
        _, deployment_id = deployed
        capability = engine.can_rollback(deployment_id)

        assert capability.can_rollback
        info = capability.deployment_info
        assert info["entitiesCount"] == 2
        assert info["relationshipsCount"] == 1
        assert info["solution"] == {"solutionId": "sol-0001", "uniqueName": "ProjectSolution"}
        assert info["publisher"]["publisherId"] == "pub-0001"
        assert capability.to_dict()["canRollback"] is True

    def test_failed_deployment(self, fast_settings, no_sleep, history_store):
        """Failed deployments cannot be rolled back."""
        client = FakeDataverseClient(failures={"ensure_publisher": api_error()})
        deployment_id = deploy(client, fast_settings, no_sleep, history_store)
        capability = RollbackEngine(history_store, lambda r: client).can_rollback(deployment_id)

        assert not capability.can_rollback
        assert capability.reason == "Only successful or partially rolled back deployments can be rolled back"

    def test_after_complete_rollback(self, engine, deployed):
        _, deployment_id = deployed
        rollback(engine, deployment_id)
        assert engine.can_rollback(deployment_id).reason == "Deployment has already been completely rolled back"


# =============================================================================
# Execution Tests
# =============================================================================

@pytest.mark.integration
class TestExecuteRollback:
    """Tests for execute_rollback."""

    def test_full_rollback_order(self, engine, deployed):
        """Components are removed in reverse dependency order."""
        client, deployment_id = deployed
        client.calls.clear()
        summary = rollback(engine, deployment_id)

        assert [c[0] for c in client.calls] == [
            "delete_relationship", "delete_entity", "delete_entity", "delete_solution", "delete_publisher",
        ]
        assert client.called("delete_entity") == [("cr123_milestone",), ("cr123_project",)]
        assert client.called("delete_solution") == [("sol-0001",)]
        assert client.called("delete_publisher") == [("pub-0001",)]
        assert summary["relationshipsDeleted"] == 1
        assert summary["entitiesDeleted"] == 2
        assert summary["solutionDeleted"] and summary["publisherDeleted"]
        assert summary["status"] == "rolled-back"
        assert summary["complete"] is True

    def test_record_updated(self, engine, deployed, history_store):
        """The deployment record keeps a rollback entry."""
        _, deployment_id = deployed
        summary = rollback(engine, deployment_id)
        record = history_store.get_deployment(deployment_id)

        assert record.status == DeploymentStatus.ROLLED_BACK
        assert record.rollbacks[0]["rollbackId"] == summary["rollbackId"]
        assert record.rollback_info["lastRollback"]["options"]["customEntities"] is True

    def test_partial_then_remaining(self, engine, deployed, history_store):
        """A second rollback skips what the first one removed."""
        client, deployment_id = deployed
        first = rollback(engine, deployment_id, RollbackOptions.only(["relationships"]))

        assert first["status"] == "modified"
        assert history_store.get_deployment(deployment_id).status == DeploymentStatus.MODIFIED
        assert engine.can_rollback(deployment_id).deployment_info["relationshipsCount"] == 0

        second = rollback(engine, deployment_id)
        assert second["status"] == "rolled-back"
        assert second["relationshipsDeleted"] == 0
        assert len(client.called("delete_relationship")) == 1

    def test_already_removed_is_success(self, fast_settings, no_sleep, history_store):
        """404 on delete counts as removed."""
        client = FakeDataverseClient()
        deployment_id = deploy(client, fast_settings, no_sleep, history_store)
        client.failures["delete_entity"] = api_error(404, "Not found", "0x80060888")

        summary = rollback(RollbackEngine(history_store, lambda r: client), deployment_id)
        assert summary["entitiesDeleted"] == 2
        assert "table 'cr123_milestone' was already removed" in summary["warnings"]
        assert summary["errors"] == []

    def test_failed_delete_stays_eligible(self, fast_settings, no_sleep, history_store):
        """A failed kind is not marked as rolled back."""
        client = FakeDataverseClient()
        deployment_id = deploy(client, fast_settings, no_sleep, history_store)
        client.failures["delete_entity"] = api_error(400, "Locked")
        engine = RollbackEngine(history_store, lambda r: client)

        summary = rollback(engine, deployment_id)
        assert summary["status"] == "modified"
        assert "Failed to remove table 'cr123_milestone': Locked" in summary["errors"]

        record = history_store.get_deployment(deployment_id)
        assert record.rollbacks[-1]["options"]["customEntities"] is False
        assert record.rollbacks[-1]["options"]["relationships"] is True
        assert engine.can_rollback(deployment_id).deployment_info["entitiesCount"] == 2

    def test_preexisting_solution_and_publisher_kept(self, fast_settings, no_sleep, history_store):
        """Only what the deployment created is deleted."""
        client = FakeDataverseClient(publisher_exists=True, solution_exists=True)
        deployment_id = deploy(client, fast_settings, no_sleep, history_store)
        summary = rollback(RollbackEngine(history_store, lambda r: client), deployment_id)

        assert client.called("delete_solution") == []
        assert client.called("delete_publisher") == []
        assert "Solution existed before the deployment; not deleted" in summary["warnings"]
        assert "Publisher existed before the deployment; not deleted" in summary["warnings"]
        assert summary["status"] == "rolled-back"

    def test_publisher_kept_when_solution_fails(self, deployed, history_store):
        """The publisher is kept while its solution still exists."""
        client, deployment_id = deployed
        client.failures["delete_solution"] = api_error(400, "Solution has dependencies")
        summary = rollback(RollbackEngine(history_store, lambda r: client), deployment_id)

        assert client.called("delete_publisher") == []
        assert "Publisher kept because its solution could not be deleted" in summary["warnings"]
        assert summary["status"] == "modified"

    def test_cdm_tables_removed_from_solution(self, fast_settings, no_sleep, history_store):
        """CDM tables leave the solution when the solution itself stays."""
        client = FakeDataverseClient(existing_entities=["account"], solution_exists=True, publisher_exists=True)
        deployment_id = deploy(client, fast_settings, no_sleep, history_store, content=CDM_ERD, entity_choice="cdm")
        summary = rollback(RollbackEngine(history_store, lambda r: client), deployment_id)

        account_id = client.entities.get("account", {}).get("MetadataId")
        assert summary["cdmEntitiesRemoved"] == 1
        assert client.called("remove_solution_component") == [(account_id, "ProjectSolution", COMPONENT_TYPE_ENTITY)]
        assert client.called("delete_entity") == [("cr123_project",)]

    def test_progress_phases(self, engine, deployed):
        """Progress reports every phase in order."""
        _, deployment_id = deployed
        steps = []
        rollback(engine, deployment_id, progress=lambda step, message, details: steps.append(step))
        assert tuple(steps) == RollbackConfig.PHASES

    def test_tracker_completed(self, engine, deployed):
        """The tracker holds the summary when the rollback ends."""
        _, deployment_id = deployed
        summary = rollback(engine, deployment_id)
        entry = engine.tracker.get(summary["rollbackId"])

        assert entry["status"] == "completed"
        assert entry["progress"]["percentage"] == 100
        assert entry["result"]["entitiesDeleted"] == 2

    def test_injected_tracker_receives_status(self, history_store, deployed):
        """An empty tracker passed in is the one that records the rollback."""
        client, deployment_id = deployed
        tracker = RollbackStatusTracker()
        engine = RollbackEngine(history_store, lambda record: client, tracker=tracker)

        assert engine.tracker is tracker
        summary = rollback(engine, deployment_id)
        assert tracker.get(summary["rollbackId"])["status"] == "completed"

    def test_client_provider_failure(self, history_store, deployed):
        """Setup errors mark the tracker entry failed and propagate."""
        _, deployment_id = deployed

        def no_client(record):
            raise ConfigurationError("server_url is required in configuration")

        engine = RollbackEngine(history_store, no_client)
        with pytest.raises(ConfigurationError):
            asyncio.run(engine.execute_rollback(deployment_id, rollback_id="rollback_1_failed"))
        entry = engine.tracker.get("rollback_1_failed")
        assert entry["status"] == "failed"
        assert entry["error"] == "server_url is required in configuration"


# =============================================================================
# Background Start Tests
# =============================================================================

@pytest.mark.integration
class TestRollbackDeployment:
    """Tests for starting rollbacks in the background."""

    def test_from_sync_code(self, engine, deployed):
        """Without a running loop the rollback runs on a worker thread."""
        _, deployment_id = deployed
        handle = engine.rollback_deployment(deployment_id)

        assert handle["status"] == "pending"
        engine.wait(handle["rollbackId"], timeout=10)
        entry = engine.tracker.get(handle["rollbackId"])
        assert entry["status"] == "completed"
        assert entry["result"]["status"] == "rolled-back"

    def test_from_running_loop(self, engine, deployed):
        """Inside a loop the rollback runs as a task."""
        _, deployment_id = deployed

        async def start_and_wait():
            handle = engine.rollback_deployment(deployment_id)
            for _ in range(500):
                entry = engine.tracker.get(handle["rollbackId"])
                if entry["status"] in ("completed", "failed"):
                    return entry
                await asyncio.sleep(0.01)
            return engine.tracker.get(handle["rollbackId"])

        assert asyncio.run(start_and_wait())["status"] == "completed"

    def test_not_allowed(self, engine):
        with pytest.raises(RollbackError, match="Deployment not found"):
            engine.rollback_deployment("deploy_1_missing")

    def test_invalid_options(self, engine, deployed):
        """Dependency violations are rejected before starting."""
        _, deployment_id = deployed
        options = RollbackOptions(relationships=False)
        with pytest.raises(RollbackError) as exc_info:
            engine.rollback_deployment(deployment_id, options=options)

        assert exc_info.value.message == "Invalid rollback configuration"
        assert exc_info.value.details == [
            "Cannot delete custom tables without deleting relationships first. "
            "Found 1 relationship(s) that must be deleted."
        ]
        assert len(engine.tracker) == 0


# =============================================================================
# Option Tests
# =============================================================================

@pytest.mark.unit
class TestRollbackOptions:
    """Tests for RollbackOptions and dependency validation."""

    def test_only(self):
        """only() selects the named components in either spelling."""
        options = RollbackOptions.only(["relationships", "custom_entities", "customGlobalChoices"])
        assert options.relationships and options.custom_entities and options.custom_global_choices
        assert not options.solution and not options.publisher

    def test_only_unknown(self):
        with pytest.raises(ValueError, match="Unknown rollback components: tables"):
            RollbackOptions.only(["tables"])

    def test_from_dict(self):
        """Keys missing from the payload stay selected."""
        options = RollbackOptions.from_dict({"publisher": False, "custom_entities": False})
        assert options.to_dict() == {
            "relationships": True, "customEntities": False, "cdmEntities": True,
            "customGlobalChoices": True, "addedGlobalChoices": True, "solution": True, "publisher": False,
        }

    def test_nothing_selected(self, deployed, history_store):
        _, deployment_id = deployed
        remaining = remaining_components(history_store.get_deployment(deployment_id))
        errors, _ = validate_options(RollbackOptions.only([]), remaining)
        assert errors == ["At least one component must be selected for rollback"]

    def test_solution_with_remaining_tables(self, deployed, history_store):
        _, deployment_id = deployed
        remaining = remaining_components(history_store.get_deployment(deployment_id))
        errors, _ = validate_options(RollbackOptions.only(["relationships", "solution"]), remaining)
        assert errors == [
            "Cannot delete solution while it contains custom entities. All entities must be removed first."
        ]

    def test_publisher_without_solution(self, deployed, history_store):
        _, deployment_id = deployed
        remaining = remaining_components(history_store.get_deployment(deployment_id))
        errors, _ = validate_options(RollbackOptions(solution=False), remaining)
        assert errors == [
            'Cannot delete publisher without deleting solution first. Solution "ProjectSolution" must be deleted.'
        ]

    def test_choice_warning(self):
        """Deleting choices while keeping tables only warns."""
        remaining = {
            "relationships": [], "custom_entities": [{"logicalName": "cr123_a"}], "cdm_entities": [],
            "custom_global_choices": [{"name": "cr123_tier"}], "added_global_choices": [],
            "solution": None, "publisher": None,
        }
        errors, warnings = validate_options(RollbackOptions.only(["customGlobalChoices"]), remaining)
        assert errors == []
        assert len(warnings) == 1


# =============================================================================
# Status Tracker Tests
# =============================================================================

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.unit
class TestStatusTracker:
    """Tests for RollbackStatusTracker."""

    def test_lifecycle(self):
        """Entries move from pending through in-progress to completed."""
        tracker = RollbackStatusTracker()
        entry = tracker.create("r1", "d1")
        assert entry["status"] == "pending"
        assert entry["progress"]["totalPhases"] == 7

        tracker.update_phase("r1", "entities", "Deleting tables")
        progress = tracker.get("r1")["progress"]
        assert tracker.get("r1")["status"] == "in-progress"
        assert progress["currentPhaseIndex"] == 3
        assert progress["percentage"] == 42

        tracker.set_result("r1", {"ok": True})
        assert tracker.get("r1")["status"] == "completed"

    def test_error(self):
        tracker = RollbackStatusTracker()
        tracker.create("r1", "d1")
        tracker.set_error("r1", "boom")
        assert tracker.get("r1")["status"] == "failed"
        assert tracker.get("r1")["error"] == "boom"

    def test_unknown_ids_ignored(self):
        tracker = RollbackStatusTracker()
        tracker.update_phase("nope", "entities")
        tracker.set_result("nope", {})
        tracker.set_error("nope", "x")
        assert tracker.get("nope") is None

    def test_eviction(self):
        """The oldest entry is evicted at capacity."""
        tracker = RollbackStatusTracker(max_entries=2)
        for rollback_id in ("r1", "r2", "r3"):
            tracker.create(rollback_id, "d")
        assert len(tracker) == 2
        assert tracker.get("r1") is None
        assert [e["rollbackId"] for e in tracker.get_all()] == ["r2", "r3"]

    def test_expiry(self):
        """Finished entries expire; running ones never do."""
        clock = FakeClock()
        tracker = RollbackStatusTracker(expiry_seconds=60, clock=clock)
        tracker.create("done", "d")
        tracker.create("running", "d")
        tracker.set_result("done", {})

        clock.now += 61
        assert tracker.get("done") is None
        assert tracker.get("running") is not None

    def test_get_returns_copy(self):
        tracker = RollbackStatusTracker()
        tracker.create("r1", "d1")
        tracker.get("r1")["status"] = "tampered"
        assert tracker.get("r1")["status"] == "pending"
