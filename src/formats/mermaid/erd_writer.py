"""
Mermaid ERD writer.

Renders a ``ParsedERD`` back to Mermaid text and normalizes text so that
the diagram library can render it. Dataverse-only constructs such as
``choice(...)``, ``lookup(...)`` and ``NOT NULL`` are not part of the
Mermaid grammar.

Usage:
    from formats.mermaid.erd_writer import ERDWriter

    text = ERDWriter.render(parsed)
    printable = ERDWriter.normalize_for_mermaid(text)
"""

import re
from typing import List, Optional

from .erd_models import CardinalityType, ERDAttribute, ERDEntity, ERDRelationship, ParsedERD
from .erd_parser import looks_like_relationship

INDENT = "    "

CARDINALITY_SYMBOLS = {
    CardinalityType.ONE_TO_ONE: "||--||",
    CardinalityType.ONE_TO_MANY: "||--o{",
    CardinalityType.ZERO_TO_MANY: "o|--o{",
}

COMPOSITE_TYPE_PATTERN = re.compile(r'^(\s*)(?:choice|lookup)\([^)]*\)(?=\s)', re.IGNORECASE)
BROKEN_COMPOSITE_PATTERN = re.compile(r'^(\s*)(?:choice|lookup)\(\S*', re.IGNORECASE)
NOT_NULL_PATTERN = re.compile(r',?\s+NOT\s+NULL\b', re.IGNORECASE)


class ERDWriter:
    """Render and normalize Mermaid ERD text."""

    @staticmethod
    def render(parsed: ParsedERD) -> str:
        """
        Render the parsed graph as Mermaid text.

        Many-to-many relationships are written as a junction entity plus two
        one-to-many relationships.
        """
        lines: List[str] = ["erDiagram"]
        entities = list(parsed.entities.values())
        relationships: List[ERDRelationship] = []
        defined = set(parsed.entities)

        for rel in parsed.relationships:
            if rel.cardinality != CardinalityType.MANY_TO_MANY:
                relationships.append(rel)
                continue
            junction_name = f"{rel.from_entity}{rel.to_entity}"
            if junction_name not in defined:
                entities.append(junction_entity(rel.from_entity, rel.to_entity))
                defined.add(junction_name)
            for side in (rel.from_entity, rel.to_entity):
                relationships.append(ERDRelationship(
                    from_entity=side,
                    to_entity=junction_name,
                    cardinality=CardinalityType.ONE_TO_MANY,
                    name="has",
                ))

        for entity in entities:
            lines.extend(render_entity(entity))
        for rel in relationships:
            lines.append(f"{INDENT}{render_relationship(rel)}")
        return "\n".join(lines) + "\n"

    @staticmethod
    def normalize_for_mermaid(content: str) -> str:
        """
        Make text renderable by the Mermaid diagram library.

        Composite type tokens become ``string`` and ``NOT NULL`` is dropped.
        Relationship lines and comments are left untouched.
        """
        output = []
        for line in content.split("\n"):
            stripped = line.strip()
            if not stripped or stripped.startswith("%%") or looks_like_relationship(stripped):
                output.append(line)
                continue
            updated = COMPOSITE_TYPE_PATTERN.sub(r'\1string', line)
            if updated == line:
                updated = BROKEN_COMPOSITE_PATTERN.sub(r'\1string', line)
            updated = NOT_NULL_PATTERN.sub('', updated)
            output.append(updated)
        return "\n".join(output)


def render_attribute(attribute: ERDAttribute) -> str:
    parts = [attribute.original_type or "string", attribute.name]
    if attribute.constraints:
        parts.append(", ".join(attribute.constraints))
    text = " ".join(parts)
    if attribute.description is not None:
        text += f' "{attribute.description}"'
    return text


def render_entity(entity: ERDEntity) -> List[str]:
    lines = [f"{INDENT}{entity.name} {{"]
    for attribute in entity.attributes:
        lines.append(f"{INDENT}{INDENT}{render_attribute(attribute)}")
    lines.append(f"{INDENT}}}")
    return lines


def render_relationship(rel: ERDRelationship) -> str:
    symbol = CARDINALITY_SYMBOLS.get(rel.cardinality, rel.symbol or "||--o{")
    return f'{rel.from_entity} {symbol} {rel.to_entity} : "{rel.name}"'


def junction_entity(from_entity: str, to_entity: str, name: Optional[str] = None) -> ERDEntity:
    """Junction entity replacing a many-to-many relationship."""
    return ERDEntity(
        name=name or f"{from_entity}{to_entity}",
        attributes=[
            ERDAttribute(name="id", constraints=["PK"], is_primary_key=True,
                         is_required=True, description="Unique identifier"),
            ERDAttribute(name=f"{from_entity.lower()}_id", constraints=["FK"],
                         is_foreign_key=True, description=f"Foreign key to {from_entity}"),
            ERDAttribute(name=f"{to_entity.lower()}_id", constraints=["FK"],
                         is_foreign_key=True, description=f"Foreign key to {to_entity}"),
        ],
    )
