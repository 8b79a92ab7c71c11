"""
Dataverse to Mermaid ERD extractor.

Reads the tables, columns and one-to-many relationships of a solution (or
of every custom table when no solution is named) and renders them as a
Mermaid ``erDiagram``. Lookups come back as ``FK`` columns on the
referencing table; system columns and the primary id are replaced by a
single ``id PK`` column.

Also compares the solution lists of two environments.

Usage:
    from core.solution_extractor import SolutionExtractor

    result = SolutionExtractor(client).extract_solution("ProjectSolution")
    print(result.erd_content)
"""

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from formats.mermaid import CardinalityType, ERDAttribute, ERDEntity, ERDRelationship, ERDWriter, ParsedERD
from formats.mermaid.erd_type_mapper import ATTRIBUTE_TYPE_TOKENS, ERDTypeMapper, format_display_name

from .dataverse_client import DataverseClient, localized_label

logger = logging.getLogger(__name__)

# Columns Dataverse adds or manages itself; they have no ERD counterpart
SKIPPED_ATTRIBUTE_TYPES = frozenset({
    "Lookup", "Customer", "Owner", "Virtual", "EntityName", "State", "Status",
    "PartyList", "ManagedProperty", "CalendarRules",
})

REQUIRED_LEVELS = frozenset({"ApplicationRequired", "SystemRequired"})


class SolutionNotFoundError(LookupError):
    """The named solution does not exist in the environment."""


@dataclass
class ExtractionResult:
    """
    Output of one extraction.

    Attributes:
        erd_content: Rendered Mermaid text.
        parsed: The extracted graph.
        metadata: Solution and count summary.
    """
    erd_content: str
    parsed: ParsedERD
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {"erdContent": self.erd_content, "metadata": dict(self.metadata)}


def strip_prefix(name: str, is_custom: bool) -> str:
    """``cr123_Project`` -> ``Project`` for custom components."""
    if is_custom and "_" in name:
        return name.split("_", 1)[1] or name
    return name


def choice_token(options: List[str]) -> str:
    """Render choice options as a ``choice(...)`` type token."""
    labels = [re.sub(r'\W+', '_', option).strip('_') for option in options]
    labels = [label for label in labels if label]
    return f"choice({','.join(labels)})" if labels else "string"


def clean_description(label: Optional[Dict[str, Any]]) -> Optional[str]:
    text = localized_label(label).replace('"', '').strip()
    return text or None


class SolutionExtractor:
    """
    Build a Mermaid ERD from live Dataverse metadata.

    Args:
        client: Client for the environment to read.
        type_mapper: Resolves ERD type tokens back to Dataverse types.
    """

    def __init__(self, client: DataverseClient, type_mapper: Optional[ERDTypeMapper] = None):
        self.client = client
        self.type_mapper = type_mapper if type_mapper is not None else ERDTypeMapper()

    def extract_solution(self, solution_name: Optional[str] = None) -> ExtractionResult:
        """
        Extract a solution, or every custom table when ``solution_name`` is empty.

        Raises:
            SolutionNotFoundError: If ``solution_name`` does not exist.
            DataverseAPIError: On metadata read failures.
        """
        solution = self._find_solution(solution_name) if solution_name else None
        definitions = self._entity_definitions(solution)
        logger.info(f"Extracting {len(definitions)} table(s) from {solution_name or 'all custom tables'}")

        parsed = ParsedERD()
        names = self._entity_names(definitions)
        for definition in definitions:
            entity = self._build_entity(definition, names[definition['LogicalName']])
            parsed.entities[entity.name] = entity

        parsed.relationships = self._build_relationships(definitions, names, parsed)
        erd_content = ERDWriter.render(parsed)

        cdm_count = sum(1 for e in parsed.entities.values() if e.is_cdm)
        metadata = {
            "solutionName": (solution or {}).get('friendlyname') or solution_name or "All Custom Tables",
            "uniqueName": solution_name,
            "publisher": ((solution or {}).get('publisherid') or {}).get('uniquename'),
            "version": (solution or {}).get('version') or "1.0.0.0",
            "extractedAt": datetime.now(timezone.utc).isoformat(),
            "entities": len(parsed.entities),
            "relationships": len(parsed.relationships),
            "cdmEntities": cdm_count,
            "customEntities": len(parsed.entities) - cdm_count,
        }
        logger.info(
            f"Extracted {metadata['entities']} table(s) and {metadata['relationships']} relationship(s)"
        )
        return ExtractionResult(erd_content=erd_content, parsed=parsed, metadata=metadata)

    # -------------------------------------------------------------------------
    # Tables
    # -------------------------------------------------------------------------

    def _find_solution(self, solution_name: str) -> Dict[str, Any]:
        for solution in self.client.list_solutions():
            if (solution.get('uniquename') or '').lower() == solution_name.lower():
                return solution
        raise SolutionNotFoundError(f"Solution '{solution_name}' not found")

    def _entity_definitions(self, solution: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if solution is None:
            definitions = self.client.list_entity_definitions(custom_only=True)
        else:
            ids = self.client.list_solution_component_ids(solution['solutionid'])
            definitions = [self.client.get_entity_definition(metadata_id) for metadata_id in ids]
        return sorted(definitions, key=lambda d: d['LogicalName'])

    @staticmethod
    def _entity_names(definitions: List[Dict[str, Any]]) -> Dict[str, str]:
        """ERD name per logical name; falls back to the full schema name on collision."""
        names: Dict[str, str] = {}
        taken: Set[str] = set()
        for definition in definitions:
            schema_name = definition.get('SchemaName') or definition['LogicalName']
            name = strip_prefix(schema_name, bool(definition.get('IsCustomEntity')))
            if name.lower() in taken:
                name = schema_name
            taken.add(name.lower())
            names[definition['LogicalName']] = name
        return names

    def _build_entity(self, definition: Dict[str, Any], name: str) -> ERDEntity:
        logical_name = definition['LogicalName']
        is_custom = bool(definition.get('IsCustomEntity'))
        entity = ERDEntity(
            name=name,
            display_name=localized_label(definition.get('DisplayName')) or format_display_name(name),
            is_cdm=not is_custom,
        )
        entity.attributes.append(ERDAttribute(
            name="id", constraints=["PK"], is_primary_key=True, is_required=True,
            original_type="string", display_name="Id",
        ))

        choices = self.client.list_choice_options(logical_name)
        primary_name = definition.get('PrimaryNameAttribute')
        for metadata in self.client.list_attributes(logical_name):
            attribute = self._build_attribute(metadata, is_custom, primary_name, choices)
            if attribute is not None and entity.get_attribute(attribute.name) is None:
                entity.attributes.append(attribute)
        return entity

    def _build_attribute(
        self,
        metadata: Dict[str, Any],
        entity_is_custom: bool,
        primary_name: Optional[str],
        choices: Dict[str, List[str]],
    ) -> Optional[ERDAttribute]:
        logical_name = metadata['LogicalName']
        attribute_type = metadata.get('AttributeType')
        is_primary_name = bool(metadata.get('IsPrimaryName')) or logical_name == primary_name

        if metadata.get('AttributeOf') or metadata.get('IsPrimaryId'):
            return None
        if attribute_type in SKIPPED_ATTRIBUTE_TYPES:
            return None
        if not metadata.get('IsCustomAttribute') and not is_primary_name:
            return None

        if is_primary_name and entity_is_custom:
            name = "name"
        else:
            name = strip_prefix(logical_name, bool(metadata.get('IsCustomAttribute')))

        if attribute_type == "Picklist":
            token = choice_token(choices.get(logical_name, []))
        else:
            token = ATTRIBUTE_TYPE_TOKENS.get(attribute_type, "string")
        mapping = self.type_mapper.map_type(token, name)

        required = (metadata.get('RequiredLevel') or {}).get('Value') in REQUIRED_LEVELS
        return ERDAttribute(
            name=name,
            type=mapping.dataverse_type,
            original_type=token,
            display_name=format_display_name(name),
            description=clean_description(metadata.get('Description')),
            constraints=["NOT NULL"] if required else [],
            is_required=required,
            choice_options=list(mapping.choice_options),
        )

    # -------------------------------------------------------------------------
    # Relationships
    # -------------------------------------------------------------------------

    def _build_relationships(
        self,
        definitions: List[Dict[str, Any]],
        names: Dict[str, str],
        parsed: ParsedERD,
    ) -> List[ERDRelationship]:
        relationships: List[ERDRelationship] = []
        seen: Set[str] = set()
        for definition in definitions:
            for rel in self.client.list_one_to_many_relationships(definition['LogicalName']):
                schema_name = rel.get('SchemaName')
                referenced = names.get(rel.get('ReferencedEntity'))
                referencing = names.get(rel.get('ReferencingEntity'))
                if not referenced or not referencing or schema_name in seen:
                    continue
                seen.add(schema_name)
                relationships.append(ERDRelationship(
                    from_entity=referenced,
                    to_entity=referencing,
                    cardinality=CardinalityType.ONE_TO_MANY,
                    name="has",
                ))
                self._add_foreign_key(parsed.entities[referencing], referenced)
        return relationships

    @staticmethod
    def _add_foreign_key(entity: ERDEntity, target: str) -> None:
        fk_name = f"{target.lower()}_id"
        if entity.get_attribute(fk_name) is not None:
            return
        entity.attributes.append(ERDAttribute(
            name=fk_name, constraints=["FK"], is_foreign_key=True,
            original_type="string", display_name=format_display_name(fk_name),
            description=f"Foreign key to {target}",
        ))


# =============================================================================
# Cross-environment comparison
# =============================================================================

def compare_environments(source: DataverseClient, target: DataverseClient) -> Dict[str, Any]:
    """
    Compare the visible solutions of two environments by unique name.

    Returns:
        Dict with ``sourceOnly``, ``targetOnly``, ``common`` (each common
        entry flags ``versionDifference``) and a ``summary`` of counts.
    """
    source_solutions = OrderedDict(
        (s['uniquename'], s) for s in source.list_solutions() if s.get('uniquename')
    )
    target_solutions = OrderedDict(
        (s['uniquename'], s) for s in target.list_solutions() if s.get('uniquename')
    )

    def summary(solution: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "uniqueName": solution['uniquename'],
            "friendlyName": solution.get('friendlyname'),
            "version": solution.get('version'),
            "isManaged": bool(solution.get('ismanaged')),
        }

    common = []
    for name, solution in source_solutions.items():
        other = target_solutions.get(name)
        if other is None:
            continue
        common.append({
            "uniqueName": name,
            "sourceVersion": solution.get('version'),
            "targetVersion": other.get('version'),
            "versionDifference": solution.get('version') != other.get('version'),
        })

    source_only = [summary(s) for n, s in source_solutions.items() if n not in target_solutions]
    target_only = [summary(s) for n, s in target_solutions.items() if n not in source_solutions]
    return {
        "sourceOnly": source_only,
        "targetOnly": target_only,
        "common": common,
        "summary": {
            "sourceCount": len(source_solutions),
            "targetCount": len(target_solutions),
            "sourceOnly": len(source_only),
            "targetOnly": len(target_only),
            "common": len(common),
            "versionDifferences": sum(1 for c in common if c["versionDifference"]),
        },
    }
