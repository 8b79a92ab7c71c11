"""
Mermaid ERD Structural Validator.

This module validates a parsed ERD graph before it is converted into a
Dataverse schema. Every check is an independent method returning a list
of ``ValidationWarning``; ``validate`` runs them in a fixed order.

Validation includes:
- Primary key cardinality and duplicate columns
- System attribute and naming conflicts
- Referential integrity and many-to-many detection
- Missing foreign keys and duplicate relationships
- Circular dependency detection
- Naming rules (character set, length, reserved words, conventions)
- CDM match notices

Usage:
    from formats.mermaid.erd_parser import ERDParser
    from formats.mermaid.erd_validator import ERDValidator

    parsed = ERDParser().parse(content)
    report = ERDValidator().validate(parsed)
    if not report.is_valid:
        for warning in report.errors:
            print(f"Error: {warning.message}")
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from constants import DataverseLimits
from shared.utilities.validation import IssueCategory, Severity, count_by_severity

from .cdm_matcher import CDMDetectionResult
from .erd_models import CardinalityType, ERDEntity, ERDRelationship, ParsedERD
from .erd_warnings import ValidationWarning, WarningType, create_warning
from .naming_rules import (
    check_attribute_name,
    check_entity_name,
    check_relationship_name,
    check_system_columns,
)

logger = logging.getLogger(__name__)


FK_CHECKED_CARDINALITIES = (
    CardinalityType.ONE_TO_MANY,
    CardinalityType.ZERO_TO_MANY,
    CardinalityType.ONE_TO_ONE,
)

FK_NAMING_LENIENT = "lenient"
FK_NAMING_STRICT = "strict"


@dataclass
class ValidatorOptions:
    """
    Options for ``ERDValidator``.

    Attributes:
        fk_naming_strictness: ``lenient`` accepts an existing, differently
            named FK as an informational notice; ``strict`` reports it as
            a missing foreign key.
        check_naming: Run the naming rule checks.
    """
    fk_naming_strictness: str = FK_NAMING_LENIENT
    check_naming: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ValidatorOptions":
        data = data or {}
        strictness = str(data.get("fkNamingStrictness", FK_NAMING_LENIENT)).lower()
        if strictness not in (FK_NAMING_LENIENT, FK_NAMING_STRICT):
            raise ValueError(f"Invalid fkNamingStrictness: {strictness}")
        return cls(
            fk_naming_strictness=strictness,
            check_naming=bool(data.get("checkNaming", True)),
        )


@dataclass
class ValidationReport:
    """Warnings plus the summary derived from them."""
    warnings: List[ValidationWarning] = field(default_factory=list)

    @property
    def errors(self) -> List[ValidationWarning]:
        return [w for w in self.warnings if w.severity == Severity.ERROR]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def status(self) -> str:
        counts = count_by_severity(self.warnings)
        if counts["errors"]:
            return "error"
        if counts["warnings"]:
            return "warning"
        return "success"

    def to_dict(self) -> Dict[str, Any]:
        counts = count_by_severity(self.warnings)
        return {
            "isValid": self.is_valid,
            "status": self.status,
            "summary": {
                "errorCount": counts["errors"],
                "warningCount": counts["warnings"],
                "infoCount": counts["info"],
                "totalIssues": len(self.warnings),
                "cdmEntitiesDetected": sum(
                    1 for w in self.warnings if w.category == IssueCategory.CDM
                ),
            },
        }


class ERDValidator:
    """
    Validate a parsed ERD for Dataverse deployment.

    The validator is stateless; all inputs are passed to ``validate``.

    Example:
        >>> report = ERDValidator().validate(parsed)
        >>> report.status
        'warning'
    """

    def __init__(self, options: Optional[ValidatorOptions] = None):
        self.options = options if options is not None else ValidatorOptions()

    def validate(
        self,
        parsed: ParsedERD,
        cdm_detection: Optional[CDMDetectionResult] = None,
    ) -> ValidationReport:
        """
        Run every check over the parsed graph.

        Args:
            parsed: Output of ``ERDParser.parse``.
            cdm_detection: CDM matches used for the informational notices.

        Returns:
            ValidationReport with warnings in check order (duplicates removed).
        """
        warnings: List[ValidationWarning] = []
        warnings.extend(self.check_parse_warnings(parsed))

        for entity in parsed.entities.values():
            if entity.is_cdm:
                continue
            warnings.extend(self.check_primary_keys(entity))
            warnings.extend(self.check_duplicate_columns(entity))
            system_warnings = self.check_system_attributes(entity)
            warnings.extend(system_warnings)
            warnings.extend(self.check_naming_conflict(entity))
            if self.options.check_naming:
                warnings.extend(self.check_entity_naming(entity, system_warnings))

        warnings.extend(self.check_referential_integrity(parsed))
        warnings.extend(self.check_many_to_many(parsed))
        warnings.extend(self.check_self_references(parsed))
        warnings.extend(self.check_foreign_keys(parsed))
        warnings.extend(self.check_orphaned_foreign_keys(parsed))
        warnings.extend(self.check_duplicate_relationships(parsed))
        warnings.extend(self.check_circular_dependencies(parsed))
        if self.options.check_naming:
            for relationship in parsed.relationships:
                warnings.extend(check_relationship_name(relationship))

        if cdm_detection is not None:
            warnings.extend(self.check_cdm_matches(cdm_detection))

        unique: List[ValidationWarning] = []
        seen: Set[str] = set()
        for warning in warnings:
            if warning.id in seen:
                continue
            seen.add(warning.id)
            unique.append(warning)

        logger.debug(f"Validation produced {len(unique)} findings")
        return ValidationReport(warnings=unique)

    # =========================================================================
    # Parse-level
    # =========================================================================

    def check_parse_warnings(self, parsed: ParsedERD) -> List[ValidationWarning]:
        return [
            create_warning(
                WarningType.MALFORMED_SYNTAX,
                message=f"Line {entry['line']}: {entry['message']}",
                severity=Severity.WARNING,
                category=IssueCategory.STRUCTURE,
                suggestion="Check the Mermaid ERD syntax on this line",
                entity=entry.get("entity"),
                attribute=entry.get("attribute"),
                context={"line": entry["line"]},
            )
            for entry in parsed.parse_warnings
        ]

    # =========================================================================
    # Entity checks
    # =========================================================================

    def check_primary_keys(self, entity: ERDEntity) -> List[ValidationWarning]:
        primary_keys = entity.primary_keys
        if not primary_keys:
            return [create_warning(
                WarningType.MISSING_PRIMARY_KEY,
                message=f"Entity '{entity.name}' has no primary key",
                severity=Severity.ERROR,
                category=IssueCategory.STRUCTURE,
                suggestion="Add a primary key column such as 'string id PK'",
                entity=entity.name,
                auto_fixable=True,
                fix_data={"entityName": entity.name},
            )]
        if len(primary_keys) > 1:
            names = [attr.name for attr in primary_keys]
            return [create_warning(
                WarningType.MULTIPLE_PRIMARY_KEYS,
                message=f"Entity '{entity.name}' has {len(names)} primary keys: {', '.join(names)}",
                severity=Severity.ERROR,
                category=IssueCategory.STRUCTURE,
                suggestion=f"Keep '{names[0]}' as the only primary key",
                entity=entity.name,
                auto_fixable=True,
                fix_data={"entityName": entity.name, "keep": names[0], "demote": names[1:]},
            )]
        return []

    def check_duplicate_columns(self, entity: ERDEntity) -> List[ValidationWarning]:
        groups: Dict[str, List[str]] = {}
        for attr in entity.attributes:
            groups.setdefault(attr.name.lower(), []).append(attr.name)

        warnings = []
        for names in groups.values():
            if len(names) < 2:
                continue
            warnings.append(create_warning(
                WarningType.DUPLICATE_COLUMNS,
                message=f"Entity '{entity.name}' defines column '{names[0]}' {len(names)} times",
                severity=Severity.ERROR,
                category=IssueCategory.STRUCTURE,
                suggestion="Remove the duplicate column definitions",
                entity=entity.name,
                attribute=names[0],
                auto_fixable=True,
                fix_data={"entityName": entity.name, "attributeName": names[0]},
            ))
        return warnings

    def check_system_attributes(self, entity: ERDEntity) -> List[ValidationWarning]:
        warnings = []
        for attr in entity.attributes:
            lowered = attr.name.lower()
            if lowered in DataverseLimits.SYSTEM_ATTRIBUTES:
                suggested = f"{entity.name}_{attr.name}".lower()
                warnings.append(create_warning(
                    WarningType.SYSTEM_ATTRIBUTE_CONFLICT,
                    message=f"Attribute '{attr.name}' in '{entity.name}' conflicts with a Dataverse system attribute",
                    severity=Severity.ERROR,
                    category=IssueCategory.SYSTEM,
                    suggestion=f"Rename to '{suggested}'",
                    entity=entity.name,
                    attribute=attr.name,
                    auto_fixable=True,
                    fix_data={
                        "entityName": entity.name,
                        "originalName": attr.name,
                        "suggestedName": suggested,
                    },
                ))
            elif lowered == "status":
                warnings.append(create_warning(
                    WarningType.STATUS_COLUMN_IGNORED,
                    message=(
                        f"Column 'status' in '{entity.name}' will be ignored; "
                        f"Dataverse provides a built-in status column"
                    ),
                    severity=Severity.INFO,
                    category=IssueCategory.SYSTEM,
                    suggestion="Use the built-in status column or rename this one",
                    entity=entity.name,
                    attribute=attr.name,
                ))
        return warnings

    def check_naming_conflict(self, entity: ERDEntity) -> List[ValidationWarning]:
        warnings = []
        for attr in entity.attributes:
            if attr.name.lower() != "name" or attr.is_primary_key:
                continue
            suggested = f"{entity.name.lower()}_name"
            warnings.append(create_warning(
                WarningType.NAMING_CONFLICT,
                message=(
                    f"Attribute 'name' in '{entity.name}' conflicts with the primary "
                    f"name column Dataverse generates"
                ),
                severity=Severity.WARNING,
                category=IssueCategory.NAMING,
                suggestion=f"Rename to '{suggested}'",
                entity=entity.name,
                attribute=attr.name,
                auto_fixable=True,
                fix_data={
                    "entityName": entity.name,
                    "originalName": attr.name,
                    "suggestedName": suggested,
                },
            ))
        return warnings

    def check_entity_naming(
        self,
        entity: ERDEntity,
        system_warnings: List[ValidationWarning],
    ) -> List[ValidationWarning]:
        warnings = check_entity_name(entity.name)
        for attr in entity.attributes:
            warnings.extend(check_attribute_name(entity, attr))
        reported = {
            (w.attribute or "").lower()
            for w in system_warnings
            if w.type == WarningType.SYSTEM_ATTRIBUTE_CONFLICT
        }
        warnings.extend(check_system_columns(entity, reported))
        return warnings

    # =========================================================================
    # Relationship checks
    # =========================================================================

    def check_referential_integrity(self, parsed: ParsedERD) -> List[ValidationWarning]:
        warnings = []
        for rel in parsed.relationships:
            missing = []
            for endpoint in (rel.from_entity, rel.to_entity):
                if endpoint not in parsed.entities and endpoint not in missing:
                    missing.append(endpoint)
            for name in missing:
                warnings.append(create_warning(
                    WarningType.MISSING_ENTITY,
                    message=f"Relationship {rel.arrow} references undefined entity '{name}'",
                    severity=Severity.ERROR,
                    category=IssueCategory.RELATIONSHIPS,
                    suggestion=f"Define entity '{name}' or remove the relationship",
                    entity=name,
                    relationship=rel.arrow,
                    auto_fixable=True,
                    fix_data={"entityName": name},
                ))
        return warnings

    def check_many_to_many(self, parsed: ParsedERD) -> List[ValidationWarning]:
        warnings = []
        for rel in parsed.relationships:
            if rel.cardinality != CardinalityType.MANY_TO_MANY:
                continue
            junction = f"{rel.from_entity}{rel.to_entity}"
            warnings.append(create_warning(
                WarningType.MANY_TO_MANY_RELATIONSHIP,
                message=f"Many-to-many relationship {rel.arrow} cannot be created directly",
                severity=Severity.ERROR,
                category=IssueCategory.RELATIONSHIPS,
                suggestion=(
                    f"Introduce a junction entity '{junction}' with two one-to-many relationships"
                ),
                relationship=rel.arrow,
                auto_fixable=True,
                fix_data={
                    "fromEntity": rel.from_entity,
                    "toEntity": rel.to_entity,
                    "junctionName": junction,
                    "relationshipName": rel.name,
                },
            ))
        return warnings

    def check_self_references(self, parsed: ParsedERD) -> List[ValidationWarning]:
        return [
            create_warning(
                WarningType.SELF_REFERENCING_RELATIONSHIP,
                message=f"Entity '{rel.from_entity}' references itself",
                severity=Severity.WARNING,
                category=IssueCategory.RELATIONSHIPS,
                suggestion="Self-referencing relationships are supported but need a distinct lookup name",
                entity=rel.from_entity,
                relationship=rel.arrow,
            )
            for rel in parsed.relationships
            if rel.is_self_referencing
        ]

    def check_foreign_keys(self, parsed: ParsedERD) -> List[ValidationWarning]:
        warnings = []
        for rel in parsed.relationships:
            if rel.cardinality not in FK_CHECKED_CARDINALITIES:
                continue
            source = parsed.entities.get(rel.from_entity)
            target = parsed.entities.get(rel.to_entity)
            if source is None or target is None:
                continue
            if source.is_cdm and target.is_cdm:
                continue
            warning = self._check_relationship_fk(rel, target)
            if warning is not None:
                warnings.append(warning)
        return warnings

    def _check_relationship_fk(self, rel: ERDRelationship, target: ERDEntity) -> Optional[ValidationWarning]:
        expected = f"{rel.from_entity.lower()}_id"
        for attr in target.attributes:
            if attr.name.lower() == expected:
                return None
            if attr.target_entity and attr.target_entity.lower() == rel.from_entity.lower():
                return None

        foreign_keys = target.foreign_keys
        if not foreign_keys or self.options.fk_naming_strictness == FK_NAMING_STRICT:
            return create_warning(
                WarningType.MISSING_FOREIGN_KEY,
                message=f"Entity '{target.name}' has no foreign key '{expected}' for relationship {rel.arrow}",
                severity=Severity.WARNING,
                category=IssueCategory.RELATIONSHIPS,
                suggestion=f"Add 'string {expected} FK' to '{target.name}'",
                entity=target.name,
                attribute=expected,
                relationship=rel.arrow,
                auto_fixable=True,
                fix_data={
                    "entityName": target.name,
                    "columnName": expected,
                    "referencedEntity": rel.from_entity,
                },
            )

        names = [attr.name for attr in foreign_keys]
        fix_data = None
        if len(foreign_keys) == 1:
            fix_data = {
                "entityName": target.name,
                "originalName": names[0],
                "suggestedName": expected,
            }
        return create_warning(
            WarningType.FOREIGN_KEY_NAMING,
            message=(
                f"Entity '{target.name}' has foreign keys ({', '.join(names)}) but none "
                f"named '{expected}' for relationship {rel.arrow}"
            ),
            severity=Severity.INFO,
            category=IssueCategory.NAMING,
            suggestion=f"Rename the foreign key to '{expected}' if it references '{rel.from_entity}'",
            entity=target.name,
            relationship=rel.arrow,
            auto_fixable=fix_data is not None,
            fix_data=fix_data,
        )

    def check_orphaned_foreign_keys(self, parsed: ParsedERD) -> List[ValidationWarning]:
        connected: Set[str] = set()
        for rel in parsed.relationships:
            connected.add(rel.from_entity)
            connected.add(rel.to_entity)

        warnings = []
        for entity in parsed.entities.values():
            if entity.is_cdm or entity.name in connected:
                continue
            for attr in entity.foreign_keys:
                warnings.append(create_warning(
                    WarningType.ORPHANED_RELATIONSHIP,
                    message=(
                        f"Foreign key '{attr.name}' in '{entity.name}' is not backed by any relationship"
                    ),
                    severity=Severity.WARNING,
                    category=IssueCategory.RELATIONSHIPS,
                    suggestion="Add a relationship line for this foreign key or remove the FK marker",
                    entity=entity.name,
                    attribute=attr.name,
                ))
        return warnings

    def check_duplicate_relationships(self, parsed: ParsedERD) -> List[ValidationWarning]:
        seen: Dict[Tuple[str, ...], int] = {}
        warnings = []
        for rel in parsed.relationships:
            key = tuple(sorted((rel.from_entity.lower(), rel.to_entity.lower())))
            seen[key] = seen.get(key, 0) + 1
            occurrence = seen[key]
            if occurrence < 2:
                continue
            warnings.append(create_warning(
                WarningType.DUPLICATE_RELATIONSHIP,
                message=(
                    f"Relationship between '{rel.from_entity}' and '{rel.to_entity}' "
                    f"is defined more than once (occurrence {occurrence})"
                ),
                severity=Severity.WARNING,
                category=IssueCategory.RELATIONSHIPS,
                suggestion="Remove the duplicate relationship line",
                relationship=rel.arrow,
                auto_fixable=True,
                fix_data={
                    "fromEntity": rel.from_entity,
                    "toEntity": rel.to_entity,
                    "occurrence": occurrence,
                },
            ))
        return warnings

    def check_circular_dependencies(self, parsed: ParsedERD) -> List[ValidationWarning]:
        cycles = find_cycles(parsed.relationships)
        return [
            create_warning(
                WarningType.CIRCULAR_DEPENDENCY,
                message=f"Circular dependency detected: {' → '.join(cycle)}",
                severity=Severity.ERROR,
                category=IssueCategory.RELATIONSHIPS,
                suggestion="Break the cycle by removing or reversing one relationship",
                entity=cycle[0],
                context={"cycle": list(cycle)},
            )
            for cycle in cycles
        ]

    # =========================================================================
    # CDM notices
    # =========================================================================

    def check_cdm_matches(self, detection: CDMDetectionResult) -> List[ValidationWarning]:
        warnings = [
            create_warning(
                WarningType.CDM_ENTITY_DETECTED,
                message=f"Entity '{match.entity_name}' matches CDM entity '{match.display_name}'.",
                severity=Severity.INFO,
                category=IssueCategory.CDM,
                suggestion=(
                    f"Consider using the existing CDM {match.display_name} entity "
                    f"instead of creating a custom one."
                ),
                entity=match.entity_name,
                context={
                    "logicalName": match.logical_name,
                    "confidence": round(match.confidence, 2),
                    "matchType": match.match_type,
                },
            )
            for match in detection.matches
        ]
        if detection.matches:
            warnings.append(create_warning(
                WarningType.CDM_SUMMARY,
                message=f"Found {len(detection.matches)} CDM entity matches.",
                severity=Severity.INFO,
                category=IssueCategory.CDM,
                suggestion="Consider leveraging CDM entities for better integration.",
            ))
        return warnings


def find_cycles(relationships: List[ERDRelationship]) -> List[List[str]]:
    """
    Depth-first search for cycles over from→to edges.

    Self-loops are ignored. Each cycle is returned once, as a closed path
    (first node repeated at the end), rotated to start at its earliest
    node in discovery order.
    """
    graph: Dict[str, List[str]] = {}
    order: List[str] = []
    for rel in relationships:
        for node in (rel.from_entity, rel.to_entity):
            if node not in graph:
                graph[node] = []
                order.append(node)
        if rel.from_entity != rel.to_entity and rel.to_entity not in graph[rel.from_entity]:
            graph[rel.from_entity].append(rel.to_entity)

    position = {node: index for index, node in enumerate(order)}
    cycles: List[List[str]] = []
    seen_keys: Set[Tuple[str, ...]] = set()
    visited: Set[str] = set()

    def record(cycle: List[str]) -> None:
        start = min(range(len(cycle)), key=lambda i: position[cycle[i]])
        rotated = cycle[start:] + cycle[:start]
        key = tuple(rotated)
        if key not in seen_keys:
            seen_keys.add(key)
            cycles.append(rotated + [rotated[0]])

    # Iterative DFS over an explicit stack of (node, remaining neighbours)
    for root in order:
        if root in visited:
            continue
        path: List[str] = [root]
        on_path: Set[str] = {root}
        stack: List[Tuple[str, Iterator[str]]] = [(root, iter(graph[root]))]
        while stack:
            node, neighbours = stack[-1]
            neighbour = next(neighbours, None)
            if neighbour is None:
                stack.pop()
                path.pop()
                on_path.discard(node)
                visited.add(node)
            elif neighbour in on_path:
                record(path[path.index(neighbour):])
            elif neighbour not in visited:
                path.append(neighbour)
                on_path.add(neighbour)
                stack.append((neighbour, iter(graph[neighbour])))
    return cycles
