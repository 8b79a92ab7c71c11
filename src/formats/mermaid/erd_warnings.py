"""
ERD validation warnings.

Defines the closed set of warning kinds produced by the validator and the
``ValidationWarning`` record. Warning ids are content-addressed so a client
can ask for one specific warning to be fixed without any server-side state.

Usage:
    from formats.mermaid.erd_warnings import create_warning, WarningType

    warning = create_warning(
        WarningType.MISSING_PRIMARY_KEY,
        message="Entity 'Customer' has no primary key",
        entity="Customer",
        auto_fixable=True,
        fix_data={"entityName": "Customer"},
    )
    print(warning.id)  # warning_1a2b3c4d
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from shared.utilities.validation import IssueCategory, Severity


class WarningType(str, Enum):
    """Closed set of validation finding kinds."""
    MISSING_PRIMARY_KEY = "missing_primary_key"
    MULTIPLE_PRIMARY_KEYS = "multiple_primary_keys"
    DUPLICATE_COLUMNS = "duplicate_columns"
    SYSTEM_ATTRIBUTE_CONFLICT = "system_attribute_conflict"
    STATUS_COLUMN_IGNORED = "status_column_ignored"
    NAMING_CONFLICT = "naming_conflict"
    SYSTEM_COLUMN_CONFLICT = "system_column_conflict"
    MISSING_ENTITY = "missing_entity"
    MANY_TO_MANY_RELATIONSHIP = "many_to_many_relationship"
    SELF_REFERENCING_RELATIONSHIP = "self_referencing_relationship"
    MISSING_FOREIGN_KEY = "missing_foreign_key"
    FOREIGN_KEY_NAMING = "foreign_key_naming"
    DUPLICATE_RELATIONSHIP = "duplicate_relationship"
    CIRCULAR_DEPENDENCY = "circular_dependency"
    ORPHANED_RELATIONSHIP = "orphaned_relationship"
    INVALID_ENTITY_NAME = "invalid_entity_name"
    ENTITY_NAME_TOO_LONG = "entity_name_too_long"
    RESERVED_ENTITY_NAME = "reserved_entity_name"
    SQL_RESERVED_WORD = "sql_reserved_word"
    ENTITY_NAMING_CONVENTION = "entity_naming_convention"
    INVALID_ATTRIBUTE_NAME = "invalid_attribute_name"
    ATTRIBUTE_NAME_TOO_LONG = "attribute_name_too_long"
    ATTRIBUTE_NAMING_CONVENTION = "attribute_naming_convention"
    INVALID_RELATIONSHIP_NAME = "invalid_relationship_name"
    RELATIONSHIP_NAME_TOO_LONG = "relationship_name_too_long"
    CDM_ENTITY_DETECTED = "cdm_entity_detected"
    CDM_SUMMARY = "cdm_summary"
    MALFORMED_SYNTAX = "malformed_syntax"

    def __str__(self) -> str:
        return self.value


# =============================================================================
# Deterministic ids
# =============================================================================

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193


def fnv1a_32(text: str) -> int:
    """FNV-1a 32-bit hash over the UTF-8 bytes of ``text``."""
    value = FNV_OFFSET_BASIS
    for byte in text.encode("utf-8"):
        value ^= byte
        value = (value * FNV_PRIME) & 0xFFFFFFFF
    return value


def generate_warning_id(
    warning_type: str,
    entity: Optional[str] = None,
    attribute: Optional[str] = None,
    relationship: Optional[str] = None,
    message: str = "",
) -> str:
    """
    Compute the content-addressed id for a warning.

    Missing parts hash as empty strings, so the same logical issue always
    yields the same id.
    """
    key = "|".join([
        str(warning_type),
        entity or "",
        attribute or "",
        relationship or "",
        message or "",
    ])
    return f"warning_{fnv1a_32(key):08x}"


@dataclass
class ValidationWarning:
    """
    A single validation finding.

    Attributes:
        id: Deterministic id (see ``generate_warning_id``).
        type: Warning kind.
        severity: error, warning or info.
        category: structure, naming, relationships, cdm or system.
        message: Human-readable message.
        suggestion: Suggested remediation.
        entity: Entity the finding refers to.
        attribute: Attribute the finding refers to.
        relationship: Relationship label (``A → B``).
        auto_fixable: Whether the auto-fixer handles this kind.
        fix_data: Structured payload for the fix function.
        context: Extra diagnostic data (e.g. the cycle path).
    """
    id: str
    type: WarningType
    severity: Severity
    category: IssueCategory
    message: str
    suggestion: str = ""
    entity: Optional[str] = None
    attribute: Optional[str] = None
    relationship: Optional[str] = None
    auto_fixable: bool = False
    fix_data: Optional[Dict[str, Any]] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON shape returned to clients."""
        result: Dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "suggestion": self.suggestion,
            "autoFixable": self.auto_fixable,
        }
        if self.entity:
            result["entity"] = self.entity
        if self.attribute:
            result["attribute"] = self.attribute
        if self.relationship:
            result["relationship"] = self.relationship
        if self.fix_data is not None:
            result["fixData"] = dict(self.fix_data)
        if self.context:
            result["context"] = dict(self.context)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationWarning":
        """Rebuild a warning from its JSON shape (e.g. a bulk-fix request)."""
        warning_type = WarningType(data["type"])
        message = data.get("message", "")
        warning_id = data.get("id") or generate_warning_id(
            warning_type.value,
            data.get("entity"),
            data.get("attribute"),
            data.get("relationship"),
            message,
        )
        return cls(
            id=warning_id,
            type=warning_type,
            severity=Severity(data.get("severity", Severity.WARNING.value)),
            category=IssueCategory(data.get("category", IssueCategory.STRUCTURE.value)),
            message=message,
            suggestion=data.get("suggestion", ""),
            entity=data.get("entity"),
            attribute=data.get("attribute"),
            relationship=data.get("relationship"),
            auto_fixable=bool(data.get("autoFixable", False)),
            fix_data=data.get("fixData"),
            context=dict(data.get("context") or {}),
        )


def create_warning(
    warning_type: WarningType,
    message: str,
    severity: Severity = Severity.WARNING,
    category: IssueCategory = IssueCategory.STRUCTURE,
    suggestion: str = "",
    entity: Optional[str] = None,
    attribute: Optional[str] = None,
    relationship: Optional[str] = None,
    auto_fixable: bool = False,
    fix_data: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
) -> ValidationWarning:
    """Build a warning and assign its deterministic id."""
    return ValidationWarning(
        id=generate_warning_id(warning_type.value, entity, attribute, relationship, message),
        type=warning_type,
        severity=severity,
        category=category,
        message=message,
        suggestion=suggestion,
        entity=entity,
        attribute=attribute,
        relationship=relationship,
        auto_fixable=auto_fixable,
        fix_data=fix_data,
        context=dict(context or {}),
    )


def find_warning(warnings: Iterable[ValidationWarning], warning_id: str) -> Optional[ValidationWarning]:
    for warning in warnings:
        if warning.id == warning_id:
            return warning
    return None


def warnings_to_dicts(warnings: Iterable[ValidationWarning]) -> List[Dict[str, Any]]:
    return [warning.to_dict() for warning in warnings]
