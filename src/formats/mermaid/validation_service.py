"""
ERD validation service.

Composes the parser, CDM matcher, validator and fixer into the operations
exposed to clients: validate, bulk fix and fix-one-warning. Every call
works on its own parsed graph; nothing is shared between calls.

Usage:
    from formats.mermaid.validation_service import ERDValidationService

    service = ERDValidationService()
    response = service.validate_erd(content, {"entityChoice": "custom"})
    print(response["summary"])
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from .cdm_matcher import CDMDetectionResult, CDMMatcher, CDMRegistry, apply_entity_choice
from .erd_fixer import FIX_TYPES_ALL, FIX_TYPES_AUTO_ONLY, BulkFixResult, ERDFixer, FixResult
from .erd_models import ParsedERD
from .erd_parser import ERDParser
from .erd_validator import ERDValidator, ValidationReport, ValidatorOptions
from .erd_warnings import ValidationWarning, warnings_to_dicts

logger = logging.getLogger(__name__)


@dataclass
class ValidationOutcome:
    """Parsed graph, CDM detection and validation report for one content string."""
    parsed: ParsedERD
    detection: CDMDetectionResult
    report: ValidationReport

    @property
    def warnings(self) -> List[ValidationWarning]:
        return self.report.warnings


class ERDValidationService:
    """
    Validate and fix Mermaid ERD content.

    Args:
        cdm_registry: Optional registry used for CDM detection.
    """

    def __init__(self, cdm_registry: Optional[CDMRegistry] = None):
        self._parser = ERDParser()
        self._cdm_matcher = CDMMatcher(cdm_registry)

    def parse_and_validate(self, content: str, options: Optional[Dict[str, Any]] = None) -> ValidationOutcome:
        """
        Parse content, detect CDM entities and validate in one pass.

        Raises:
            ValueError: If content is empty or options are invalid.
        """
        if not content or not content.strip():
            raise ValueError("mermaidContent is required")
        options = options or {}
        validator_options = ValidatorOptions.from_dict(options)

        parsed = self._parser.parse(content)
        detection = self._cdm_matcher.detect_cdm_entities(parsed.entity_list())
        apply_entity_choice(parsed, detection, options.get("entityChoice"))
        report = ERDValidator(validator_options).validate(parsed, detection)
        return ValidationOutcome(parsed=parsed, detection=detection, report=report)

    def validate_erd(self, content: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Validate content and build the client response.

        ``correctedERD`` is the content with every auto-fixable warning
        applied, or the content unchanged when there is nothing to fix.
        """
        options = options or {}
        outcome = self.parse_and_validate(content, options)
        warnings = outcome.warnings

        corrected = content
        if any(w.auto_fixable for w in warnings):
            fixer = self._fixer(options)
            corrected = fixer.bulk_fix_warnings(
                content, warnings, FIX_TYPES_AUTO_ONLY, normalize=False
            ).fixed_content

        logger.info(
            f"Validated ERD: {len(outcome.parsed.entities)} entities, "
            f"{len(outcome.parsed.relationships)} relationships, {len(warnings)} findings"
        )
        return {
            "success": outcome.report.is_valid,
            "validation": outcome.report.to_dict(),
            "entities": [entity.to_dict() for entity in outcome.parsed.entities.values()],
            "relationships": [rel.to_dict() for rel in outcome.parsed.relationships],
            "warnings": warnings_to_dicts(warnings),
            "correctedERD": corrected,
            "summary": {
                "entityCount": len(outcome.parsed.entities),
                "relationshipCount": len(outcome.parsed.relationships),
                "warningCount": len(warnings),
                "cdmMatchCount": len(outcome.detection.matches),
            },
            "cdmDetection": outcome.detection.to_dict(),
        }

    def bulk_fix(
        self,
        content: str,
        warnings: Sequence[Union[ValidationWarning, Dict[str, Any]]],
        fix_types: Union[str, Sequence[str]] = FIX_TYPES_ALL,
        options: Optional[Dict[str, Any]] = None,
    ) -> BulkFixResult:
        if not content or not content.strip():
            raise ValueError("mermaidContent is required")
        return self._fixer(options or {}).bulk_fix_warnings(content, warnings, fix_types)

    def fix_warning(
        self,
        content: str,
        warning_id: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> FixResult:
        if not content or not content.strip():
            raise ValueError("mermaidContent is required")
        if not warning_id:
            raise ValueError("warningId is required")
        return self._fixer(options or {}).fix_individual_warning(content, warning_id)

    def _fixer(self, options: Dict[str, Any]) -> ERDFixer:
        return ERDFixer(
            parser=self._parser,
            validator_options=ValidatorOptions.from_dict(options),
            cdm_matcher=self._cdm_matcher,
            entity_choice=options.get("entityChoice"),
        )
