"""
Naming rules for ERD identifiers.

Entity, attribute and relationship names are checked against the
Dataverse character set, length limits, reserved names and casing
conventions. Each check returns a list of ``ValidationWarning``.

Usage:
    from formats.mermaid.naming_rules import check_entity_name

    for warning in check_entity_name("user-profile"):
        print(warning.type, warning.fix_data)
"""

import re
from typing import List

from constants import DataverseLimits
from shared.utilities.validation import IssueCategory, Severity

from .erd_models import ERDAttribute, ERDEntity, ERDRelationship
from .erd_warnings import ValidationWarning, WarningType, create_warning

VALID_NAME_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_]*$')
VALID_RELATIONSHIP_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_ -]*$')
PASCAL_CASE_PATTERN = re.compile(r'^[A-Z][A-Za-z0-9]*$')
SNAKE_CASE_PATTERN = re.compile(r'^[a-z][a-z0-9_]*$')
CAMEL_CASE_PATTERN = re.compile(r'^[a-z][A-Za-z0-9]*$')
WORD_SPLIT = re.compile(r'[^A-Za-z0-9]+')


def _words(name: str) -> List[str]:
    return [part for part in WORD_SPLIT.split(name) if part]


def to_pascal_case(name: str) -> str:
    """``user-profile`` -> ``UserProfile``; leading digits get an ``Entity`` prefix."""
    result = "".join(part[:1].upper() + part[1:] for part in _words(name))
    if not result or not result[0].isalpha():
        result = f"Entity{result}"
    return result


def to_camel_case(name: str) -> str:
    """``product-name`` -> ``productName``; leading digits get an ``attr`` prefix."""
    parts = _words(name)
    if not parts:
        return "attr"
    result = parts[0][:1].lower() + parts[0][1:]
    result += "".join(part[:1].upper() + part[1:] for part in parts[1:])
    if not result[0].isalpha():
        result = f"attr{result}"
    return result


def sanitize_relationship_name(name: str) -> str:
    cleaned = re.sub(r'[^A-Za-z0-9_ -]', '', name).strip()
    cleaned = re.sub(r'^[^A-Za-z]+', '', cleaned)
    return cleaned or "relationship"


# =============================================================================
# Entity names
# =============================================================================

def check_entity_name(name: str) -> List[ValidationWarning]:
    """Character set, length, reserved names and PascalCase convention."""
    warnings: List[ValidationWarning] = []
    lowered = name.lower()

    if not VALID_NAME_PATTERN.match(name):
        suggested = to_pascal_case(name)
        warnings.append(create_warning(
            WarningType.INVALID_ENTITY_NAME,
            message=f"Entity name '{name}' must start with a letter and contain only letters, digits and underscores",
            severity=Severity.ERROR,
            category=IssueCategory.NAMING,
            suggestion=f"Rename to '{suggested}'",
            entity=name,
            auto_fixable=True,
            fix_data={"originalName": name, "suggestedName": suggested},
        ))

    if len(name) > DataverseLimits.MAX_ENTITY_NAME_LENGTH:
        suggested = name[:DataverseLimits.MAX_ENTITY_NAME_LENGTH]
        warnings.append(create_warning(
            WarningType.ENTITY_NAME_TOO_LONG,
            message=(
                f"Entity name '{name}' is {len(name)} characters; "
                f"the limit is {DataverseLimits.MAX_ENTITY_NAME_LENGTH}"
            ),
            severity=Severity.ERROR,
            category=IssueCategory.NAMING,
            suggestion=f"Shorten to '{suggested}'",
            entity=name,
            auto_fixable=True,
            fix_data={"originalName": name, "suggestedName": suggested},
        ))

    if lowered in DataverseLimits.RESERVED_ENTITY_NAMES:
        suggested = f"Custom{to_pascal_case(name)}"
        warnings.append(create_warning(
            WarningType.RESERVED_ENTITY_NAME,
            message=f"Entity name '{name}' collides with a Dataverse system entity",
            severity=Severity.ERROR,
            category=IssueCategory.NAMING,
            suggestion=f"Rename to '{suggested}' or reuse the standard entity",
            entity=name,
            auto_fixable=True,
            fix_data={"originalName": name, "suggestedName": suggested},
        ))
    elif lowered in DataverseLimits.SQL_RESERVED_WORDS:
        suggested = f"{to_pascal_case(name)}Entity"
        warnings.append(create_warning(
            WarningType.SQL_RESERVED_WORD,
            message=f"Entity name '{name}' is a SQL reserved word",
            severity=Severity.WARNING,
            category=IssueCategory.NAMING,
            suggestion=f"Rename to '{suggested}'",
            entity=name,
            auto_fixable=True,
            fix_data={"originalName": name, "suggestedName": suggested, "scope": "entity"},
        ))

    if VALID_NAME_PATTERN.match(name) and not PASCAL_CASE_PATTERN.match(name):
        warnings.append(create_warning(
            WarningType.ENTITY_NAMING_CONVENTION,
            message=f"Entity name '{name}' is not PascalCase",
            severity=Severity.INFO,
            category=IssueCategory.NAMING,
            suggestion=f"Consider '{to_pascal_case(name)}'",
            entity=name,
        ))

    return warnings


# =============================================================================
# Attribute names
# =============================================================================

def check_attribute_name(entity: ERDEntity, attribute: ERDAttribute) -> List[ValidationWarning]:
    """Character set, length, SQL reserved words and snake/camel convention."""
    warnings: List[ValidationWarning] = []
    name = attribute.name
    lowered = name.lower()

    if not VALID_NAME_PATTERN.match(name):
        suggested = to_camel_case(name)
        warnings.append(create_warning(
            WarningType.INVALID_ATTRIBUTE_NAME,
            message=(
                f"Attribute '{name}' in '{entity.name}' must start with a letter "
                f"and contain only letters, digits and underscores"
            ),
            severity=Severity.ERROR,
            category=IssueCategory.NAMING,
            suggestion=f"Rename to '{suggested}'",
            entity=entity.name,
            attribute=name,
            auto_fixable=True,
            fix_data={"entityName": entity.name, "originalName": name, "suggestedName": suggested},
        ))

    if len(name) > DataverseLimits.MAX_ATTRIBUTE_NAME_LENGTH:
        suggested = name[:DataverseLimits.MAX_ATTRIBUTE_NAME_LENGTH]
        warnings.append(create_warning(
            WarningType.ATTRIBUTE_NAME_TOO_LONG,
            message=(
                f"Attribute '{name}' in '{entity.name}' is {len(name)} characters; "
                f"the limit is {DataverseLimits.MAX_ATTRIBUTE_NAME_LENGTH}"
            ),
            severity=Severity.WARNING,
            category=IssueCategory.NAMING,
            suggestion=f"Shorten to '{suggested}'",
            entity=entity.name,
            attribute=name,
            auto_fixable=True,
            fix_data={"entityName": entity.name, "originalName": name, "suggestedName": suggested},
        ))

    if lowered in DataverseLimits.SQL_RESERVED_WORDS:
        suggested = f"{entity.name.lower()}_{lowered}"
        warnings.append(create_warning(
            WarningType.SQL_RESERVED_WORD,
            message=f"Attribute '{name}' in '{entity.name}' is a SQL reserved word",
            severity=Severity.WARNING,
            category=IssueCategory.NAMING,
            suggestion=f"Rename to '{suggested}'",
            entity=entity.name,
            attribute=name,
            auto_fixable=True,
            fix_data={
                "entityName": entity.name,
                "originalName": name,
                "suggestedName": suggested,
                "scope": "attribute",
            },
        ))

    if (
        VALID_NAME_PATTERN.match(name)
        and not SNAKE_CASE_PATTERN.match(name)
        and not CAMEL_CASE_PATTERN.match(name)
    ):
        warnings.append(create_warning(
            WarningType.ATTRIBUTE_NAMING_CONVENTION,
            message=f"Attribute '{name}' in '{entity.name}' is neither snake_case nor camelCase",
            severity=Severity.INFO,
            category=IssueCategory.NAMING,
            suggestion=f"Consider '{to_camel_case(name)}'",
            entity=entity.name,
            attribute=name,
        ))

    return warnings


def check_system_columns(entity: ERDEntity, already_reported: set) -> List[ValidationWarning]:
    """
    Report columns that Dataverse creates for every custom table.

    ``already_reported`` holds lowercased attribute names flagged as
    system attribute conflicts; those are not reported twice.
    """
    warnings: List[ValidationWarning] = []
    own_id = f"{entity.name.lower()}id"
    for attribute in entity.attributes:
        lowered = attribute.name.lower()
        if lowered in already_reported:
            continue
        if lowered in DataverseLimits.SYSTEM_COLUMNS:
            reason = "is a Dataverse system column"
        elif lowered == own_id and not attribute.is_primary_key:
            reason = "collides with the generated primary id column"
        else:
            continue
        warnings.append(create_warning(
            WarningType.SYSTEM_COLUMN_CONFLICT,
            message=f"Attribute '{attribute.name}' in '{entity.name}' {reason}",
            severity=Severity.WARNING,
            category=IssueCategory.SYSTEM,
            suggestion=f"Rename to '{entity.name.lower()}_{lowered}'",
            entity=entity.name,
            attribute=attribute.name,
        ))
    return warnings


# =============================================================================
# Relationship names
# =============================================================================

def check_relationship_name(relationship: ERDRelationship) -> List[ValidationWarning]:
    warnings: List[ValidationWarning] = []
    name = relationship.name

    if not VALID_RELATIONSHIP_PATTERN.match(name):
        suggested = sanitize_relationship_name(name)
        warnings.append(create_warning(
            WarningType.INVALID_RELATIONSHIP_NAME,
            message=f"Relationship name '{name}' contains unsupported characters",
            severity=Severity.WARNING,
            category=IssueCategory.NAMING,
            suggestion=f"Rename to '{suggested}'",
            relationship=relationship.arrow,
            auto_fixable=True,
            fix_data={
                "fromEntity": relationship.from_entity,
                "toEntity": relationship.to_entity,
                "originalName": name,
                "suggestedName": suggested,
            },
        ))

    if len(name) > DataverseLimits.MAX_RELATIONSHIP_NAME_LENGTH:
        suggested = name[:DataverseLimits.MAX_RELATIONSHIP_NAME_LENGTH].rstrip()
        warnings.append(create_warning(
            WarningType.RELATIONSHIP_NAME_TOO_LONG,
            message=(
                f"Relationship name '{name[:30]}...' is {len(name)} characters; "
                f"the limit is {DataverseLimits.MAX_RELATIONSHIP_NAME_LENGTH}"
            ),
            severity=Severity.WARNING,
            category=IssueCategory.NAMING,
            suggestion="Shorten the relationship label",
            relationship=relationship.arrow,
            auto_fixable=True,
            fix_data={
                "fromEntity": relationship.from_entity,
                "toEntity": relationship.to_entity,
                "originalName": name,
                "suggestedName": suggested,
            },
        ))

    return warnings
