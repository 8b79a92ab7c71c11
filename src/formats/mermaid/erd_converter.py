"""
ERD to Dataverse schema converter.

This module converts a validated ``ParsedERD`` into a ``DataverseSchema``
document that the deployment orchestrator can execute.

Conversion process:
1. Resolve logical and schema names under the publisher prefix
2. Convert columns, skipping keys and columns Dataverse provides
3. Convert relationships (explicit lines and lookup columns) to one-to-many
4. Collect selected and custom global choices

Usage:
    from formats.mermaid.erd_converter import ERDToDataverseConverter

    converter = ERDToDataverseConverter()
    schema = converter.convert(parsed, publisher_prefix="cr123")
    for entity in schema.entities:
        print(entity.logical_name)
"""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Set, Union

from constants import DataverseLimits
from shared.models.dataverse_types import (
    DataverseAttributeDefinition,
    DataverseEntityDefinition,
    DataverseGlobalChoice,
    DataverseRelationshipDefinition,
    DataverseSchema,
)

from .cdm_matcher import CDMMatch, CDMMatcher, apply_entity_choice, resolve_logical_name
from .erd_models import CardinalityType, ERDAttribute, ERDEntity, ParsedERD
from .erd_parser import ERDParser
from .erd_type_mapper import DataverseType, format_display_name

logger = logging.getLogger(__name__)

PREFIX_PATTERN = re.compile(r'^[a-z][a-z0-9]{1,7}$')


class SchemaGenerationError(Exception):
    """Raised when a parsed ERD cannot be turned into a Dataverse schema."""


def safe_name(name: str) -> str:
    """Lowercase, replace anything outside ``[a-z0-9_]`` and collapse underscores."""
    lowered = re.sub(r'[^a-z0-9_]', '_', name.lower())
    lowered = re.sub(r'_+', '_', lowered)
    return lowered.strip('_')


def to_schema_name(logical_name: str) -> str:
    """``cr123_customer_name`` -> ``cr123_Customer_Name``."""
    prefix, _, rest = logical_name.partition('_')
    if not rest:
        return logical_name
    return prefix + '_' + '_'.join(part[:1].upper() + part[1:] for part in rest.split('_'))


class ERDToDataverseConverter:
    """
    Convert parsed ERD graphs to Dataverse schema documents.

    Example:
        >>> converter = ERDToDataverseConverter()
        >>> schema = converter.convert(parsed, "cr123")
        >>> schema.entities[0].schema_name
        'cr123_Customer'
    """

    def __init__(self, parser: Optional[ERDParser] = None, cdm_matcher: Optional[CDMMatcher] = None):
        self._parser = parser if parser is not None else ERDParser()
        self._cdm_matcher = cdm_matcher if cdm_matcher is not None else CDMMatcher()

    def convert_content(
        self,
        content: str,
        publisher_prefix: str,
        entity_choice: Optional[str] = None,
        **kwargs: Any,
    ) -> DataverseSchema:
        """Parse content, apply the CDM choice and convert."""
        parsed = self._parser.parse(content)
        detection = self._cdm_matcher.detect_cdm_entities(parsed.entity_list())
        apply_entity_choice(parsed, detection, entity_choice)
        return self.convert(parsed, publisher_prefix, detection.matches, **kwargs)

    def convert(
        self,
        parsed: ParsedERD,
        publisher_prefix: str,
        cdm_matches: Optional[Sequence[CDMMatch]] = None,
        selected_choices: Optional[Sequence[Union[str, Dict[str, Any]]]] = None,
        custom_choices: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> DataverseSchema:
        """
        Convert a parsed ERD.

        Args:
            parsed: Parsed (and validated) ERD.
            publisher_prefix: Customization prefix, 2-8 lowercase characters.
            cdm_matches: CDM matches used to resolve reused entity names.
            selected_choices: Existing global choices to add to the solution.
            custom_choices: New global choices ``{name, displayName, options}``.

        Returns:
            DataverseSchema.

        Raises:
            SchemaGenerationError: Invalid prefix or unresolved many-to-many.
        """
        prefix = (publisher_prefix or "").lower()
        if not PREFIX_PATTERN.match(prefix):
            raise SchemaGenerationError(
                f"Invalid publisher prefix '{publisher_prefix}': use 2-8 lowercase letters or digits"
            )

        many_to_many = [r for r in parsed.relationships if r.cardinality == CardinalityType.MANY_TO_MANY]
        if many_to_many:
            names = ", ".join(r.arrow for r in many_to_many)
            raise SchemaGenerationError(
                f"Many-to-many relationships must be resolved with a junction entity first: {names}"
            )

        cdm_logical = {m.entity_name: m.logical_name for m in (cdm_matches or [])}
        schema = DataverseSchema(publisher_prefix=prefix)
        logical_names: Dict[str, str] = {}

        for entity in parsed.entities.values():
            if entity.is_cdm:
                definition = self._convert_cdm_entity(entity, cdm_logical)
            else:
                definition = self._convert_entity(entity, prefix)
            logical_names[entity.name] = definition.logical_name
            schema.entities.append(definition)

        self._convert_relationships(parsed, prefix, logical_names, schema)
        schema.global_choices.extend(self._convert_choices(prefix, selected_choices, custom_choices))

        logger.info(
            f"Generated schema: {len(schema.custom_entities)} custom entities, "
            f"{len(schema.cdm_entities)} CDM entities, {len(schema.relationships)} relationships"
        )
        return schema

    # =========================================================================
    # Entities
    # =========================================================================

    def _convert_cdm_entity(self, entity: ERDEntity, cdm_logical: Dict[str, str]) -> DataverseEntityDefinition:
        logical = cdm_logical.get(entity.name) or resolve_logical_name(entity.name)
        return DataverseEntityDefinition(
            schema_name=logical,
            logical_name=logical,
            display_name=entity.display_name or format_display_name(entity.name),
            display_collection_name=f"{entity.display_name or entity.name}s",
            is_cdm=True,
            cdm_logical_name=logical,
            source_name=entity.name,
        )

    def _convert_entity(self, entity: ERDEntity, prefix: str) -> DataverseEntityDefinition:
        entity_safe = safe_name(entity.name)
        display = entity.display_name or format_display_name(entity.name)
        name_attribute = entity.get_attribute("name")

        definition = DataverseEntityDefinition(
            schema_name=f"{prefix}_{re.sub(r'[^A-Za-z0-9_]', '_', entity.name)}",
            logical_name=f"{prefix}_{entity_safe}",
            display_name=display,
            display_collection_name=f"{display}s",
            primary_name_schema=to_schema_name(f"{prefix}_{entity_safe}_name"),
            primary_name_display=name_attribute.display_name if name_attribute else "Name",
            source_name=entity.name,
        )

        excluded = {"name", f"{entity_safe}_name", "status"}
        used: Set[str] = set()
        for attr in entity.attributes:
            if attr.is_foreign_key or attr.is_primary_key or attr.name.lower() in excluded:
                continue
            if attr.type == DataverseType.LOOKUP:
                continue
            column = self._convert_attribute(attr, entity_safe, prefix)
            if column.logical_name in used:
                logger.warning(f"Skipping duplicate column {column.logical_name} on {entity.name}")
                continue
            used.add(column.logical_name)
            definition.attributes.append(column)
        return definition

    def _convert_attribute(self, attr: ERDAttribute, entity_safe: str, prefix: str) -> DataverseAttributeDefinition:
        name = safe_name(attr.name)
        if name in DataverseLimits.RESERVED_ATTRIBUTE_NAMES:
            name = f"{entity_safe}_{name}"
        logical = f"{prefix}_{name}"
        return DataverseAttributeDefinition(
            schema_name=to_schema_name(logical),
            logical_name=logical,
            display_name=attr.display_name or format_display_name(attr.name),
            attribute_type=attr.type.value,
            required_level="ApplicationRequired" if attr.is_required else "None",
            description=attr.description,
            options=list(attr.choice_options),
        )

    # =========================================================================
    # Relationships
    # =========================================================================

    def _convert_relationships(
        self,
        parsed: ParsedERD,
        prefix: str,
        logical_names: Dict[str, str],
        schema: DataverseSchema,
    ) -> None:
        schema_names: Set[str] = set()
        lookups: Set[str] = set()

        def unique(name: str, taken: Set[str]) -> str:
            candidate, counter = name, 2
            while candidate in taken:
                candidate = f"{name}{counter}"
                counter += 1
            taken.add(candidate)
            return candidate

        for rel in parsed.relationships:
            referenced = logical_names.get(rel.from_entity)
            referencing = logical_names.get(rel.to_entity)
            if referenced is None or referencing is None:
                logger.warning(f"Skipping relationship {rel.arrow}: undefined entity")
                continue
            from_safe, to_safe = safe_name(rel.from_entity), safe_name(rel.to_entity)
            lookup_logical = unique(f"{prefix}_{from_safe}id", lookups) if not rel.is_self_referencing \
                else unique(f"{prefix}_parent{from_safe}id", lookups)
            schema.relationships.append(DataverseRelationshipDefinition(
                schema_name=unique(f"{prefix}_{from_safe}_{to_safe}", schema_names),
                referenced_entity=referenced,
                referencing_entity=referencing,
                lookup_schema_name=to_schema_name(lookup_logical),
                lookup_display_name=f"{format_display_name(rel.from_entity)} Reference",
                display_name=rel.display_name,
            ))

        for entity in parsed.entities.values():
            if entity.is_cdm:
                continue
            for attr in entity.attributes:
                if attr.type != DataverseType.LOOKUP or not attr.target_entity:
                    continue
                target = logical_names.get(attr.target_entity) or self._standard_target(attr.target_entity)
                if target is None:
                    logger.warning(
                        f"Skipping lookup {entity.name}.{attr.name}: unknown target '{attr.target_entity}'"
                    )
                    continue
                lookup_logical = unique(f"{prefix}_{safe_name(attr.name)}", lookups)
                schema.relationships.append(DataverseRelationshipDefinition(
                    schema_name=unique(
                        f"{prefix}_{safe_name(attr.target_entity)}_{safe_name(entity.name)}", schema_names
                    ),
                    referenced_entity=target,
                    referencing_entity=logical_names[entity.name],
                    lookup_schema_name=to_schema_name(lookup_logical),
                    lookup_display_name=attr.display_name or format_display_name(attr.name),
                    display_name=attr.display_name,
                    is_implicit=True,
                ))

    @staticmethod
    def _standard_target(name: str) -> Optional[str]:
        logical = resolve_logical_name(name)
        if logical in DataverseLimits.RESERVED_ENTITY_NAMES:
            return logical
        return None

    # =========================================================================
    # Global choices
    # =========================================================================

    @staticmethod
    def _convert_choices(
        prefix: str,
        selected: Optional[Sequence[Union[str, Dict[str, Any]]]],
        custom: Optional[Sequence[Dict[str, Any]]],
    ) -> List[DataverseGlobalChoice]:
        choices: List[DataverseGlobalChoice] = []
        for item in selected or []:
            if isinstance(item, str):
                name, display = item, item
            else:
                name = item.get("name") or item.get("Name") or ""
                display = item.get("displayName") or name
            if name:
                choices.append(DataverseGlobalChoice(name=name, display_name=display, is_existing=True))

        for item in custom or []:
            raw_name = item.get("name") or item.get("displayName") or ""
            options = [
                opt if isinstance(opt, str) else str(opt.get("label") or opt.get("value") or "")
                for opt in item.get("options", [])
            ]
            if not raw_name or not options:
                logger.warning(f"Skipping custom choice without name or options: {item!r}")
                continue
            name = raw_name if raw_name.startswith(f"{prefix}_") else f"{prefix}_{safe_name(raw_name)}"
            choices.append(DataverseGlobalChoice(
                name=name,
                display_name=item.get("displayName") or format_display_name(raw_name),
                options=[opt for opt in options if opt],
                description=item.get("description"),
            ))
        return choices
