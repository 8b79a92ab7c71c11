"""
Mermaid ERD Parser.

This module parses the subset of Mermaid ``erDiagram`` syntax used to
describe Dataverse schemas into an ``ParsedERD`` graph.

Supported syntax:
- ``erDiagram`` header and ``%%`` comments
- Entity blocks ``Name { type attr [PK|FK|UK|NOT NULL] ["description"] }``
- Relationship lines ``A ||--o{ B : "label"``
- Composite types ``choice(a,b,c)`` and ``lookup(Target)``

Parsing never raises for recoverable syntax. Malformed lines are reported
as parse warnings and the rest of the document is still parsed.

Usage:
    from formats.mermaid.erd_parser import ERDParser

    parser = ERDParser()
    parsed = parser.parse(mermaid_text)
    for entity in parsed.entities.values():
        print(entity.name, len(entity.attributes))
"""

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from constants import DataverseLimits

from .erd_models import (
    CardinalityType,
    ERDAttribute,
    ERDEntity,
    ERDRelationship,
    ParsedERD,
    SourceSpan,
)
from .erd_type_mapper import DataverseType, ERDTypeMapper, format_display_name

logger = logging.getLogger(__name__)


# =============================================================================
# Grammar
# =============================================================================

HEADER_KEYWORD = "erDiagram"
COMMENT_PREFIX = "%%"

# Identifiers accept hyphens so that invalid names reach the naming checks.
EMPTY_ENTITY_PATTERN = re.compile(r'^([\w-]+)\s*\{\s*\}$')
ENTITY_OPEN_PATTERN = re.compile(r'^([\w-]+)\s*\{')
RELATIONSHIP_PATTERN = re.compile(r'^([\w-]+)\s+([|}{o-]+)\s+([\w-]+)(?:\s*:\s*(.+))?$')
ATTRIBUTE_PATTERN = re.compile(
    r'^((?:choice\([^)]+\)|lookup\([^)]+\)|\w+))\s+([\w-]+)(?:\s+([^"]+?))?(?:\s+"([^"]*)")?$',
    re.IGNORECASE,
)
QUOTED_LABEL_PATTERN = re.compile(r':\s*"[^"]*"\s*$')
DESCRIPTION_PATTERN = re.compile(r'"([^"]*)"\s*$')

CARDINALITY_INDICATORS = ("||--", "--o{", "o{", "}|")
CONSTRAINT_SPLIT = re.compile(r'[\s,]+')


def split_lines(text: Optional[str]) -> List[str]:
    """Split source text into the line list that spans index into."""
    return (text or "").replace("\r\n", "\n").split("\n")


def decode_cardinality(symbol: str) -> CardinalityType:
    """Decode a Mermaid cardinality symbol such as ``||--o{``."""
    if "||" in symbol and "{" in symbol:
        return CardinalityType.ONE_TO_MANY
    if "||" in symbol:
        return CardinalityType.ONE_TO_ONE
    if "}" in symbol and "{" in symbol:
        return CardinalityType.MANY_TO_MANY
    if "o" in symbol and "{" in symbol:
        return CardinalityType.ZERO_TO_MANY
    return CardinalityType.UNKNOWN


def looks_like_relationship(line: str) -> bool:
    """Check whether a trimmed line has the shape of a relationship."""
    if RELATIONSHIP_PATTERN.match(line):
        return True
    if any(indicator in line for indicator in CARDINALITY_INDICATORS):
        return True
    return bool(QUOTED_LABEL_PATTERN.search(line))


def parse_constraints(raw: Optional[str]) -> List[str]:
    """Split a constraint string into normalized tokens (``NOT NULL`` kept whole)."""
    if not raw:
        return []
    tokens = [t.upper() for t in CONSTRAINT_SPLIT.split(raw.strip()) if t]
    constraints: List[str] = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token == "NOT" and i + 1 < len(tokens) and tokens[i + 1] == "NULL":
            constraints.append("NOT NULL")
            i += 2
            continue
        constraints.append(token)
        i += 1
    return constraints


@dataclass
class _ParseContext:
    """Mutable state for one parse call."""
    lines: List[str]
    entities: "OrderedDict[str, ERDEntity]" = field(default_factory=OrderedDict)
    relationships: List[ERDRelationship] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    current: Optional[ERDEntity] = None
    current_start: int = 0
    depth: int = 0

    def warn(self, line_number: int, message: str, **extra: Any) -> None:
        entry: Dict[str, Any] = {"line": line_number, "message": message}
        entry.update({k: v for k, v in extra.items() if v is not None})
        self.warnings.append(entry)
        logger.debug(f"Parse warning at line {line_number}: {message}")


class ERDParser:
    """
    Parse Mermaid ERD text into a ``ParsedERD``.

    Instances hold no per-document state. Every call to ``parse`` builds a
    fresh context, so one parser can be shared between requests.

    Example:
        >>> parser = ERDParser()
        >>> parsed = parser.parse('''erDiagram
        ...     Customer {
        ...         string id PK
        ...     }''')
        >>> list(parsed.entities)
        ['Customer']
    """

    def __init__(self, type_mapper: Optional[ERDTypeMapper] = None):
        self._type_mapper = type_mapper if type_mapper is not None else ERDTypeMapper()

    def parse(self, text: str) -> ParsedERD:
        """
        Parse ERD text.

        Args:
            text: Mermaid ERD source.

        Returns:
            ParsedERD with entities, relationships, parse warnings and the
            source lines the spans refer to.
        """
        ctx = _ParseContext(lines=split_lines(text))

        for index, raw_line in enumerate(ctx.lines):
            line_number = index + 1
            line = raw_line.strip()
            if not line or line.startswith(COMMENT_PREFIX):
                continue
            if line.startswith(HEADER_KEYWORD):
                continue

            if ctx.current is None:
                self._parse_top_level(ctx, line, line_number)
            else:
                self._parse_block_line(ctx, line, line_number)

        if ctx.current is not None:
            last_line = max(len(ctx.lines), ctx.current_start)
            ctx.warn(
                ctx.current_start,
                f"Entity '{ctx.current.name}' is missing a closing brace",
                entity=ctx.current.name,
            )
            self._close_entity(ctx, last_line)

        logger.debug(
            f"Parsed {len(ctx.entities)} entities and {len(ctx.relationships)} relationships"
        )
        return ParsedERD(
            entities=ctx.entities,
            relationships=ctx.relationships,
            parse_warnings=ctx.warnings,
            lines=list(ctx.lines),
        )

    def parse_file(self, file_path: str) -> ParsedERD:
        """Parse an ERD file from disk."""
        with open(file_path, 'r', encoding='utf-8') as f:
            return self.parse(f.read())

    # =========================================================================
    # Top level
    # =========================================================================

    def _parse_top_level(self, ctx: _ParseContext, line: str, line_number: int) -> None:
        empty = EMPTY_ENTITY_PATTERN.match(line)
        if empty:
            entity = self._new_entity(ctx, empty.group(1), line_number)
            if entity is not None:
                entity.span = SourceSpan(line_number, line_number)
            return

        opened = ENTITY_OPEN_PATTERN.match(line)
        if opened and not RELATIONSHIP_PATTERN.match(line):
            entity = self._new_entity(ctx, opened.group(1), line_number)
            ctx.current = entity if entity is not None else ERDEntity(name=opened.group(1))
            ctx.current_start = line_number
            ctx.depth = 1
            return

        relationship = self._parse_relationship(line, line_number)
        if relationship is not None:
            ctx.relationships.append(relationship)
            return

        ctx.warn(line_number, f"Unrecognized line: {line}")

    def _new_entity(self, ctx: _ParseContext, name: str, line_number: int) -> Optional[ERDEntity]:
        if name in ctx.entities:
            ctx.warn(
                line_number,
                f"Entity '{name}' is defined more than once; later definition ignored",
                entity=name,
            )
            return None
        entity = ERDEntity(name=name, display_name=format_display_name(name))
        ctx.entities[name] = entity
        return entity

    def _close_entity(self, ctx: _ParseContext, line_number: int) -> None:
        entity = ctx.current
        if entity is not None and ctx.entities.get(entity.name) is entity:
            entity.span = SourceSpan(ctx.current_start, line_number)
        ctx.current = None
        ctx.depth = 0

    # =========================================================================
    # Entity blocks
    # =========================================================================

    def _parse_block_line(self, ctx: _ParseContext, line: str, line_number: int) -> None:
        if line == "}":
            ctx.depth -= 1
            if ctx.depth <= 0:
                self._close_entity(ctx, line_number)
            return

        # Relationship shapes are rejected before attribute matching.
        if looks_like_relationship(line):
            relationship = self._parse_relationship(line, line_number)
            if relationship is not None:
                ctx.relationships.append(relationship)
            else:
                ctx.warn(line_number, f"Unrecognized relationship syntax: {line}")
            return

        if line.endswith("{"):
            ctx.depth += 1
            return
        if ctx.depth > 1:
            return

        attribute = self._parse_attribute(ctx, line, line_number)
        if attribute is None or ctx.current is None:
            return

        if attribute.name.lower() in DataverseLimits.SYSTEM_FIELDS:
            logger.debug(f"Dropping system field '{attribute.name}' on {ctx.current.name}")
            return
        ctx.current.attributes.append(attribute)

    def _parse_attribute(self, ctx: _ParseContext, line: str, line_number: int) -> Optional[ERDAttribute]:
        entity_name = ctx.current.name if ctx.current else None
        match = ATTRIBUTE_PATTERN.match(line)
        if not match:
            return self._recover_attribute(ctx, line, line_number, entity_name)

        type_token, name, raw_constraints, description = match.groups()
        mapping = self._type_mapper.map_type(type_token, name)
        if mapping.warning and not mapping.is_exact_match and "(" in type_token:
            ctx.warn(line_number, mapping.warning, entity=entity_name, attribute=name)

        constraints = parse_constraints(raw_constraints)
        is_pk = "PK" in constraints
        return ERDAttribute(
            name=name,
            type=mapping.dataverse_type,
            original_type=type_token,
            display_name=format_display_name(name),
            description=description,
            constraints=constraints,
            is_primary_key=is_pk,
            is_foreign_key="FK" in constraints,
            is_unique="UK" in constraints,
            is_required=is_pk or "NOT NULL" in constraints,
            choice_options=list(mapping.choice_options),
            target_entity=mapping.target_entity,
            span=SourceSpan(line_number, line_number),
        )

    def _recover_attribute(
        self,
        ctx: _ParseContext,
        line: str,
        line_number: int,
        entity_name: Optional[str],
    ) -> Optional[ERDAttribute]:
        """Best-effort extraction for lines with a malformed composite type."""
        if not line.lower().startswith(("choice(", "lookup(")):
            ctx.warn(line_number, f"Unrecognized attribute syntax: {line}", entity=entity_name)
            return None

        description_match = DESCRIPTION_PATTERN.search(line)
        description = description_match.group(1) if description_match else None
        body = DESCRIPTION_PATTERN.sub("", line).strip()
        name, constraints = self._extract_trailing_name(body)
        if name is None:
            ctx.warn(line_number, f"Unrecognized attribute syntax: {line}", entity=entity_name)
            return None

        type_token = body.split()[0]
        ctx.warn(
            line_number,
            f"Malformed type '{type_token}' for '{name}' treated as String",
            entity=entity_name,
            attribute=name,
        )
        is_pk = "PK" in constraints
        return ERDAttribute(
            name=name,
            type=DataverseType.STRING,
            original_type=type_token,
            display_name=format_display_name(name),
            description=description,
            constraints=constraints,
            is_primary_key=is_pk,
            is_foreign_key="FK" in constraints,
            is_unique="UK" in constraints,
            is_required=is_pk or "NOT NULL" in constraints,
            span=SourceSpan(line_number, line_number),
        )

    @staticmethod
    def _extract_trailing_name(body: str) -> Tuple[Optional[str], List[str]]:
        words = body.split()
        constraint_words: List[str] = []
        while len(words) > 1 and words[-1].upper().strip(",") in ("PK", "FK", "UK", "NULL", "NOT"):
            constraint_words.insert(0, words.pop())
        if len(words) < 2:
            return None, []
        candidate = words[-1]
        if not re.match(r'^[\w-]+$', candidate):
            return None, []
        return candidate, parse_constraints(" ".join(constraint_words))

    # =========================================================================
    # Relationships
    # =========================================================================

    def _parse_relationship(self, line: str, line_number: int) -> Optional[ERDRelationship]:
        match = RELATIONSHIP_PATTERN.match(line)
        if not match:
            return None

        from_entity, symbol, to_entity, label = match.groups()
        name = label.strip().strip('"').strip() if label else ""
        if not name:
            name = f"{from_entity}_{to_entity}"

        return ERDRelationship(
            from_entity=from_entity,
            to_entity=to_entity,
            cardinality=decode_cardinality(symbol),
            symbol=symbol,
            name=name,
            display_name=format_display_name(name),
            span=SourceSpan(line_number, line_number),
        )
