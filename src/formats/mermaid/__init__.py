"""
Mermaid ERD Module

This module parses Mermaid ``erDiagram`` text, validates it against
Dataverse rules, fixes the findings it can fix and converts the result to
a Dataverse schema document.

Key Components:
- erd_parser: Line-oriented parser producing a ParsedERD graph
- erd_validator: Structural and naming validation
- cdm_matcher: Common Data Model entity detection
- erd_fixer: Individual and bulk auto-fix
- erd_converter: ParsedERD to DataverseSchema
- validation_service: Client-facing validate / fix operations

Usage:
    from formats.mermaid import ERDParser, ERDValidator, ERDToDataverseConverter

    parsed = ERDParser().parse(content)
    report = ERDValidator().validate(parsed)
    schema = ERDToDataverseConverter().convert(parsed, "cr123")
"""

from .erd_models import (
    CardinalityType,
    ERDAttribute,
    ERDEntity,
    ERDRelationship,
    ParsedERD,
    SourceSpan,
)

from .erd_type_mapper import (
    DataverseType,
    ERDTypeMapper,
    ERD_TYPE_MAPPINGS,
)

from .erd_warnings import (
    ValidationWarning,
    WarningType,
    generate_warning_id,
)

from .erd_parser import ERDParser

from .erd_validator import ERDValidator, ValidationReport, ValidatorOptions

from .cdm_matcher import CDMMatch, CDMMatcher, CDMRegistry, CDMDetectionResult

from .erd_fixer import BulkFixResult, ERDFixer, FixResult

from .erd_writer import ERDWriter

from .erd_converter import ERDToDataverseConverter, SchemaGenerationError

from .validation_service import ERDValidationService

__all__ = [
    # Models
    'CardinalityType',
    'ERDAttribute',
    'ERDEntity',
    'ERDRelationship',
    'ParsedERD',
    'SourceSpan',
    # Type mapping
    'DataverseType',
    'ERDTypeMapper',
    'ERD_TYPE_MAPPINGS',
    # Warnings
    'ValidationWarning',
    'WarningType',
    'generate_warning_id',
    # Core classes
    'ERDParser',
    'ERDValidator',
    'ValidationReport',
    'ValidatorOptions',
    'CDMMatch',
    'CDMMatcher',
    'CDMRegistry',
    'CDMDetectionResult',
    'BulkFixResult',
    'ERDFixer',
    'FixResult',
    'ERDWriter',
    'ERDToDataverseConverter',
    'SchemaGenerationError',
    'ERDValidationService',
]
