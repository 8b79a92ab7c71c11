"""
ERD commands: validate, fix and convert.

These commands work offline; none of them contacts Dataverse.
"""

import argparse
import json
import logging
from typing import Any, Dict, Optional

from constants import ExitCode
from formats.mermaid import ERDToDataverseConverter, SchemaGenerationError
from formats.mermaid.erd_fixer import FIX_TYPES_ALL, FIX_TYPES_AUTO_ONLY

from ..helpers import print_footer, print_header, write_output
from .base import BaseCommand, exit_code_for, print_findings, read_erd


logger = logging.getLogger(__name__)


def _options(args: argparse.Namespace) -> Dict[str, Any]:
    choice = getattr(args, "entity_choice", None)
    return {"entityChoice": choice} if choice else {}


class ValidateCommand(BaseCommand):
    """
    Validate a Mermaid ERD.

    Usage:
        validate <path> [--entity-choice cdm|custom] [--output report.json] [--verbose]
    """

    def execute(self, args: argparse.Namespace) -> int:
        self.setup_logging_from_config()
        try:
            content = read_erd(args.path)
        except (ValueError, TypeError, OSError) as exc:
            print(f"✗ {exc}")
            return exit_code_for(exc)

        result = self.get_validation_service().validate_erd(content, _options(args))
        summary = result["validation"]["summary"]

        print_header(f"Validation: {args.path}")
        print(f"  Entities:      {result['summary']['entityCount']}")
        print(f"  Relationships: {result['summary']['relationshipCount']}")
        print(f"  CDM matches:   {result['summary']['cdmMatchCount']}")
        print(f"  Errors: {summary['errorCount']}  Warnings: {summary['warningCount']}  Info: {summary['infoCount']}")
        print_findings(result["warnings"], verbose=getattr(args, "verbose", False))
        print_footer()

        if getattr(args, "output", None):
            try:
                target = write_output(args.output, json.dumps(result, indent=2))
            except (ValueError, OSError) as exc:
                print(f"✗ Could not write report: {exc}")
                return exit_code_for(exc)
            print(f"Report saved to: {target}")

        if not result["success"]:
            print("✗ Validation failed.")
            return ExitCode.VALIDATION_ERROR
        if summary["warningCount"]:
            print("⚠ Validation completed with warnings.")
        else:
            print("✓ Validation successful!")
        return ExitCode.SUCCESS


class FixCommand(BaseCommand):
    """
    Apply auto-fixes and write the corrected ERD.

    Usage:
        fix <path> [--types TYPE ...|--auto-only] [--output fixed.mmd]

    Without ``--output`` the fixed ERD is printed to stdout.
    """

    def execute(self, args: argparse.Namespace) -> int:
        self.setup_logging_from_config()
        try:
            content = read_erd(args.path)
        except (ValueError, TypeError, OSError) as exc:
            print(f"✗ {exc}")
            return exit_code_for(exc)

        if getattr(args, "types", None):
            fix_types: Any = list(args.types)
        elif getattr(args, "auto_only", False):
            fix_types = FIX_TYPES_AUTO_ONLY
        else:
            fix_types = FIX_TYPES_ALL

        service = self.get_validation_service()
        options = _options(args)
        warnings = service.parse_and_validate(content, options).warnings
        result = service.bulk_fix(content, warnings, fix_types, options)

        for fix in result.applied_fixes:
            print(f"  ✓ {fix['warningType']}: {fix['message']}")
        for fix in result.failed_fixes:
            print(f"  ✗ {fix['warningType']}: {fix['error']}")
        summary = result.summary
        print(
            f"Applied {summary['fixesApplied']} fix(es), {summary['fixesFailed']} failed, "
            f"{summary['remainingCount']} finding(s) remain"
        )

        if getattr(args, "output", None):
            try:
                target = write_output(args.output, result.fixed_content)
            except (ValueError, OSError) as exc:
                print(f"✗ Could not write output: {exc}")
                return exit_code_for(exc)
            print(f"Fixed ERD saved to: {target}")
        else:
            print()
            print(result.fixed_content)

        has_errors = any(w.is_error for w in result.remaining_warnings)
        return ExitCode.VALIDATION_ERROR if has_errors else ExitCode.SUCCESS


class ConvertCommand(BaseCommand):
    """
    Generate the Dataverse schema document for an ERD.

    Usage:
        convert <path> --prefix cr123 [--entity-choice cdm|custom] [--output schema.json]
    """

    def __init__(self, *args: Any, converter: Optional[ERDToDataverseConverter] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._converter = converter

    def execute(self, args: argparse.Namespace) -> int:
        self.setup_logging_from_config()
        try:
            content = read_erd(args.path)
        except (ValueError, TypeError, OSError) as exc:
            print(f"✗ {exc}")
            return exit_code_for(exc)

        outcome = self.get_validation_service().parse_and_validate(content, _options(args))
        if not outcome.report.is_valid:
            print_findings([w.to_dict() for w in outcome.report.errors])
            print("✗ Fix validation errors before converting.")
            return ExitCode.VALIDATION_ERROR

        converter = self._converter if self._converter is not None else ERDToDataverseConverter()
        try:
            schema = converter.convert(outcome.parsed, args.prefix, outcome.detection.matches)
        except SchemaGenerationError as exc:
            print(f"✗ {exc}")
            return ExitCode.VALIDATION_ERROR

        document = json.dumps(schema.to_dict(), indent=2)
        if getattr(args, "output", None):
            try:
                target = write_output(args.output, document)
            except (ValueError, OSError) as exc:
                print(f"✗ Could not write output: {exc}")
                return exit_code_for(exc)
            print(
                f"✓ Schema with {len(schema.entities)} table(s), {len(schema.relationships)} relationship(s) "
                f"and {len(schema.global_choices)} choice(s) saved to: {target}"
            )
        else:
            print(document)
        return ExitCode.SUCCESS
