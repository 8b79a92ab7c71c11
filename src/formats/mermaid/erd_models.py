"""
Mermaid ERD Data Models.

This module defines the in-memory graph produced by the ERD parser. Every
node carries a source span so the auto-fixer can edit the original lines
instead of regenerating the whole document.

Models:
- CardinalityType: Decoded relationship cardinality
- SourceSpan: 1-based inclusive line range in the source text
- ERDAttribute: Column definition inside an entity block
- ERDEntity: Entity block with its attributes
- ERDRelationship: Cardinality-typed edge between two entities
- ParsedERD: Result of one parse call
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .erd_type_mapper import DataverseType


class CardinalityType(str, Enum):
    """Relationship cardinality decoded from Mermaid symbols."""
    ONE_TO_ONE = "one-to-one"
    ONE_TO_MANY = "one-to-many"
    ZERO_TO_MANY = "zero-to-many"
    MANY_TO_MANY = "many-to-many"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class SourceSpan:
    """Inclusive range of 1-based source line numbers."""
    start_line: int
    end_line: int

    @property
    def start_index(self) -> int:
        return self.start_line - 1

    @property
    def end_index(self) -> int:
        return self.end_line - 1


@dataclass
class ERDAttribute:
    """
    Represents one column inside an entity block.

    Attributes:
        name: Column name as written.
        type: Resolved Dataverse type.
        original_type: Raw type token (kept for round-trip).
        display_name: Title-cased display label.
        description: Quoted description, if any.
        constraints: Constraint tokens in source order (PK, FK, UK, NOT NULL).
        is_primary_key: Marked PK.
        is_foreign_key: Marked FK.
        is_unique: Marked UK.
        is_required: NOT NULL or PK.
        choice_options: Options for Choice columns.
        target_entity: Target for Lookup columns.
        span: Source line of the attribute.
    """
    name: str
    type: DataverseType = DataverseType.STRING
    original_type: str = "string"
    display_name: str = ""
    description: Optional[str] = None
    constraints: List[str] = field(default_factory=list)
    is_primary_key: bool = False
    is_foreign_key: bool = False
    is_unique: bool = False
    is_required: bool = False
    choice_options: List[str] = field(default_factory=list)
    target_entity: Optional[str] = None
    span: Optional[SourceSpan] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        result: Dict[str, Any] = {
            "name": self.name,
            "displayName": self.display_name,
            "type": self.type.value,
            "originalType": self.original_type,
            "isPrimaryKey": self.is_primary_key,
            "isForeignKey": self.is_foreign_key,
            "isUnique": self.is_unique,
            "isRequired": self.is_required,
        }
        if self.description:
            result["description"] = self.description
        if self.choice_options:
            result["choiceOptions"] = list(self.choice_options)
        if self.target_entity:
            result["targetEntity"] = self.target_entity
        return result


@dataclass
class ERDEntity:
    """
    Represents an entity block.

    Attributes:
        name: Entity identifier.
        display_name: Title-cased display label.
        attributes: Columns in source order.
        is_cdm: Set after the caller opts into CDM reuse.
        span: Opening and closing line of the block.
    """
    name: str
    display_name: str = ""
    attributes: List[ERDAttribute] = field(default_factory=list)
    is_cdm: bool = False
    span: Optional[SourceSpan] = None

    @property
    def primary_keys(self) -> List[ERDAttribute]:
        return [attr for attr in self.attributes if attr.is_primary_key]

    @property
    def foreign_keys(self) -> List[ERDAttribute]:
        return [attr for attr in self.attributes if attr.is_foreign_key]

    def get_attribute(self, name: str) -> Optional[ERDAttribute]:
        """Case-insensitive lookup of an attribute by name."""
        lowered = name.lower()
        for attr in self.attributes:
            if attr.name.lower() == lowered:
                return attr
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "name": self.name,
            "displayName": self.display_name,
            "attributes": [attr.to_dict() for attr in self.attributes],
            "isCdm": self.is_cdm,
        }


@dataclass
class ERDRelationship:
    """
    Represents a relationship line.

    ``from_entity`` is the left-hand side of the line, which is the "one"
    side for one-to-many relationships.
    """
    from_entity: str
    to_entity: str
    cardinality: CardinalityType = CardinalityType.UNKNOWN
    symbol: str = ""
    name: str = ""
    display_name: str = ""
    span: Optional[SourceSpan] = None

    @property
    def is_self_referencing(self) -> bool:
        return self.from_entity == self.to_entity

    @property
    def arrow(self) -> str:
        """``From → To`` label used in warnings."""
        return f"{self.from_entity} → {self.to_entity}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "fromEntity": self.from_entity,
            "toEntity": self.to_entity,
            "cardinality": {"type": self.cardinality.value, "symbol": self.symbol},
            "name": self.name,
            "displayName": self.display_name,
        }


@dataclass
class ParsedERD:
    """
    Output of a single parse call.

    Attributes:
        entities: Entities keyed by name, in source order.
        relationships: Relationships in source order.
        parse_warnings: Recoverable syntax problems (plain messages with line).
        lines: The raw source lines the spans refer to.
    """
    entities: "OrderedDict[str, ERDEntity]" = field(default_factory=OrderedDict)
    relationships: List[ERDRelationship] = field(default_factory=list)
    parse_warnings: List[Dict[str, Any]] = field(default_factory=list)
    lines: List[str] = field(default_factory=list)

    def get_entity(self, name: str) -> Optional[ERDEntity]:
        return self.entities.get(name)

    def entity_list(self) -> List[ERDEntity]:
        return list(self.entities.values())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "entities": [entity.to_dict() for entity in self.entities.values()],
            "relationships": [rel.to_dict() for rel in self.relationships],
        }
