"""
Environment commands: deploy, rollback, history and compare.

Usage:
    deploy <path> --solution S --publisher P --prefix cr123 [--config c.json] [--dry-run] [--force]
    rollback <deployment_id> [--components relationships customEntities ...] [--force]
    history [--environment contoso] [--limit 20]
    compare <from_id> <to_id>
    extract [--solution S] [--output model.mmd] [--config c.json]
"""

import argparse
import asyncio
import logging
from typing import Any, Dict, Optional

from tqdm import tqdm

from constants import ExitCode
from core.cancellation import restore_default_handler, setup_cancellation_handler
from core.dataverse_client import ConfigurationError, DataverseAPIError
from core.deployment import (
    DeploymentNotFoundError,
    DeploymentService,
    DeploymentState,
    RollbackEngine,
    RollbackError,
    RollbackOptions,
    generate_deployment_id,
)
from core.deployment.rollback import remaining_components, validate_options
from core.platform.auth import AuthenticationError
from core.solution_extractor import SolutionExtractor, SolutionNotFoundError
from formats.mermaid import ERDToDataverseConverter, SchemaGenerationError

from ..helpers import confirm_action, format_count_summary, print_footer, print_header, write_output
from .base import BaseCommand, exit_code_for, print_findings, read_erd


logger = logging.getLogger(__name__)

DEPLOY_STEPS = [
    s.value for s in DeploymentState if s not in (DeploymentState.PENDING, DeploymentState.FAILED)
]
ROLLBACK_STEPS = ["preparation", "relationships", "entities", "global-choices", "solution", "publisher", "finalization"]


class StepProgressBar:
    """Advance a tqdm bar as named steps are reported by a progress callback."""

    def __init__(self, steps: list, desc: str):
        self._steps = list(steps)
        self._position = 0
        self._bar = tqdm(total=len(self._steps), desc=desc, unit="step")

    def __call__(self, step: str, message: str, details: Dict[str, Any]) -> None:
        if step in self._steps:
            target = self._steps.index(step) + 1
            if target > self._position:
                self._bar.update(target - self._position)
                self._position = target
        self._bar.set_postfix_str(message[:60])

    def close(self) -> None:
        self._bar.close()


def _config_failure(exc: BaseException) -> int:
    print(f"✗ Configuration error: {exc}")
    return ExitCode.CONFIG_ERROR


class DeployCommand(BaseCommand):
    """Validate, convert and deploy an ERD to Dataverse."""

    def execute(self, args: argparse.Namespace) -> int:
        self.setup_logging_from_config()
        try:
            content = read_erd(args.path)
        except (ValueError, TypeError, OSError) as exc:
            print(f"✗ {exc}")
            return exit_code_for(exc)

        options: Dict[str, Any] = {
            "solutionName": args.solution,
            "publisherName": args.publisher,
            "publisherPrefix": args.prefix,
            "description": getattr(args, "description", None) or "",
            "includeRelationships": not getattr(args, "skip_relationships", False),
        }
        if getattr(args, "entity_choice", None):
            options["entityChoice"] = args.entity_choice

        outcome = self.get_validation_service().parse_and_validate(content, options)
        if not outcome.report.is_valid:
            print_findings([w.to_dict() for w in outcome.report.errors])
            print("✗ Fix validation errors before deploying.")
            return ExitCode.VALIDATION_ERROR

        if getattr(args, "dry_run", False):
            return self._print_plan(outcome, args.prefix)

        if not getattr(args, "force", False):
            if not confirm_action(f"Deploy {len(outcome.parsed.entities)} table(s) to solution '{args.solution}'?"):
                print("Deployment cancelled.")
                return ExitCode.CANCELLED

        try:
            client = self.get_client()
        except (ConfigurationError, ValueError, FileNotFoundError) as exc:
            return _config_failure(exc)

        service = DeploymentService(
            client,
            settings=self.get_settings(),
            history=self.get_history(),
            validation_service=self.get_validation_service(),
        )
        deployment_id = generate_deployment_id()
        options["deploymentId"] = deployment_id
        token = service.cancellation.register(deployment_id)
        setup_cancellation_handler(token)
        bar = StepProgressBar(DEPLOY_STEPS, desc="Deploying")
        try:
            result = asyncio.run(service.deploy_erd(content, options, progress=bar))
        except AuthenticationError as exc:
            print(f"\n✗ Authentication failed: {exc}")
            return ExitCode.API_ERROR
        finally:
            bar.close()
            restore_default_handler()

        return self._report(result)

    def _print_plan(self, outcome: Any, prefix: str) -> int:
        try:
            schema = ERDToDataverseConverter().convert(outcome.parsed, prefix, outcome.detection.matches)
        except SchemaGenerationError as exc:
            print(f"✗ {exc}")
            return ExitCode.VALIDATION_ERROR
        print_header("Deployment plan (dry run)")
        for entity in schema.entities:
            kind = "CDM" if entity.is_cdm else "custom"
            print(f"  [{kind}] {entity.logical_name} ({len(entity.attributes)} column(s))")
        for rel in schema.relationships:
            print(f"  {rel.schema_name}: {rel.referenced_entity} 1:N {rel.referencing_entity}")
        for choice in schema.global_choices:
            print(f"  choice {choice.name}")
        print_footer()
        return ExitCode.SUCCESS

    @staticmethod
    def _report(result: Dict[str, Any]) -> int:
        print_header(f"Deployment {result.get('deploymentId')}")
        print(f"  Tables created:        {result.get('entitiesCreated', 0)}")
        print(f"  Relationships created: {result.get('relationshipsCreated', 0)}")
        print(f"  Relationships failed:  {result.get('relationshipsFailed', 0)}")
        for warning in result.get("warnings", []):
            print(f"  ⚠ {warning}")
        for error in result.get("errors", []):
            print(f"  ✗ {error}")
        print_footer()

        if result.get("cancelled"):
            print("Deployment cancelled.")
            return ExitCode.CANCELLED
        if not result.get("success"):
            if result.get("validation"):
                return ExitCode.VALIDATION_ERROR
            print("✗ Deployment failed.")
            return ExitCode.API_ERROR
        print("✓ Deployment completed" + (" with errors." if result.get("errors") else "."))
        return ExitCode.SUCCESS


class RollbackCommand(BaseCommand):
    """Roll back a recorded deployment, optionally limited to some components."""

    def execute(self, args: argparse.Namespace) -> int:
        self.setup_logging_from_config()
        history = self.get_history()
        engine = RollbackEngine(history, lambda record: self.get_client())
        try:
            capability = engine.can_rollback(args.deployment_id)
        except ValueError as exc:
            print(f"✗ {exc}")
            return ExitCode.ERROR
        if not capability.can_rollback:
            print(f"✗ Cannot roll back {args.deployment_id}: {capability.reason}")
            return ExitCode.ERROR

        try:
            options = RollbackOptions.only(args.components) if getattr(args, "components", None) else RollbackOptions()
        except ValueError as exc:
            print(f"✗ {exc}")
            return ExitCode.ERROR

        errors, warnings = validate_options(options, remaining_components(history.get_deployment(args.deployment_id)))
        for warning in warnings:
            print(f"  ⚠ {warning}")
        if errors:
            for error in errors:
                print(f"  ✗ {error}")
            return ExitCode.VALIDATION_ERROR

        info = capability.deployment_info
        print_header(f"Rollback {args.deployment_id}")
        print(format_count_summary({
            "relationships": info.get("relationshipsCount", 0),
            "tables": info.get("entitiesCount", 0),
            "global choices": info.get("globalChoicesCount", 0),
        }))
        print_footer()
        if not getattr(args, "force", False) and not confirm_action("Delete these components from Dataverse?"):
            print("Rollback cancelled.")
            return ExitCode.CANCELLED

        bar = StepProgressBar(ROLLBACK_STEPS, desc="Rolling back")
        try:
            summary = asyncio.run(engine.execute_rollback(args.deployment_id, options=options, progress=bar))
        except (ConfigurationError, FileNotFoundError, ValueError) as exc:
            return _config_failure(exc)
        except RollbackError as exc:
            print(f"\n✗ {exc}")
            for detail in exc.details:
                print(f"  ✗ {detail}")
            return ExitCode.ERROR
        except (DataverseAPIError, AuthenticationError) as exc:
            print(f"\n✗ Rollback failed: {exc}")
            return ExitCode.API_ERROR
        finally:
            bar.close()

        for warning in summary["warnings"]:
            print(f"  ⚠ {warning}")
        for error in summary["errors"]:
            print(f"  ✗ {error}")
        print(
            f"Status: {summary['status']}. Deleted {summary['relationshipsDeleted']} relationship(s), "
            f"{summary['entitiesDeleted']} table(s), {summary['globalChoicesDeleted']} choice(s)."
        )
        return ExitCode.SUCCESS if not summary["errors"] else ExitCode.API_ERROR


class HistoryCommand(BaseCommand):
    """List recorded deployments, newest first."""

    def execute(self, args: argparse.Namespace) -> int:
        self.setup_logging_from_config()
        history = self.get_history()
        environment: Optional[str] = getattr(args, "environment", None)
        suffixes = [environment] if environment else history.environments()

        entries = []
        for suffix in suffixes:
            entries.extend(history.get_history(suffix, args.limit))
        entries.sort(key=lambda e: e.get("timestamp", ""), reverse=True)
        entries = entries[:max(0, args.limit)]

        if not entries:
            print("No deployments recorded.")
            return ExitCode.SUCCESS

        print_header(f"Deployments ({len(entries)})")
        for entry in entries:
            print(
                f"  {entry.get('deploymentId')}  {entry.get('timestamp', '')[:19]}  "
                f"{entry.get('status', ''):<12} {entry.get('solutionName') or ''}"
            )
        print_footer()
        return ExitCode.SUCCESS


class CompareCommand(BaseCommand):
    """Show how the ERD changed between two deployments."""

    def execute(self, args: argparse.Namespace) -> int:
        self.setup_logging_from_config()
        try:
            comparison = self.get_history().compare(args.from_id, args.to_id)
        except DeploymentNotFoundError as exc:
            print(f"✗ {exc}")
            return ExitCode.FILE_NOT_FOUND
        except ValueError as exc:
            print(f"✗ {exc}")
            return ExitCode.ERROR

        changes = comparison["changes"]
        print_header(f"{args.from_id} → {args.to_id}")
        for name in changes["entitiesAdded"]:
            print(f"  + {name}")
        for name in changes["entitiesRemoved"]:
            print(f"  - {name}")
        for modified in changes["entitiesModified"]:
            print(f"  ~ {modified['name']}")
            for attr in modified["attributesAdded"]:
                print(f"      + {attr}")
            for attr in modified["attributesRemoved"]:
                print(f"      - {attr}")
            for attr in modified["attributesChanged"]:
                print(f"      ~ {attr['name']}: {attr['from']} → {attr['to']}")
        if not any(changes[key] for key in ("entitiesAdded", "entitiesRemoved", "entitiesModified")):
            print("  No changes")
        print_footer()
        return ExitCode.SUCCESS


class ExtractCommand(BaseCommand):
    """Reverse-engineer a Dataverse solution into a Mermaid ERD."""

    def execute(self, args: argparse.Namespace) -> int:
        self.setup_logging_from_config()
        try:
            client = self.get_client()
        except (ConfigurationError, ValueError, FileNotFoundError) as exc:
            return _config_failure(exc)

        solution_name = getattr(args, "solution", None)
        print(f"✓ Extracting {solution_name or 'all custom tables'} from {client.config.server_url}...")
        try:
            result = SolutionExtractor(client).extract_solution(solution_name)
        except SolutionNotFoundError as exc:
            print(f"✗ {exc}")
            return ExitCode.FILE_NOT_FOUND
        except (DataverseAPIError, AuthenticationError) as exc:
            print(f"✗ Extraction failed: {exc}")
            return ExitCode.API_ERROR

        metadata = result.metadata
        if getattr(args, "output", None):
            try:
                target = write_output(args.output, result.erd_content)
            except (ValueError, OSError) as exc:
                print(f"✗ Could not write ERD: {exc}")
                return exit_code_for(exc)
            print(f"✓ Exported to: {target}")
        else:
            print(result.erd_content)

        print(f"  Tables: {metadata['entities']} ({metadata['cdmEntities']} CDM)")
        print(f"  Relationships: {metadata['relationships']}")
        return ExitCode.SUCCESS
