"""
Mermaid ERD auto-fix engine.

Resolves validation warnings by editing the source lines located through
the parser's source spans. Only the lines a fix touches are rewritten;
comments, blank lines and formatting elsewhere are preserved. After every
applied fix the document is re-parsed so later fixes see fresh spans.

Fixes run in a fixed priority order: structural fixes (missing entities,
junction entities, keys) come before cosmetic renames.

Usage:
    from formats.mermaid.erd_fixer import ERDFixer

    fixer = ERDFixer()
    result = fixer.bulk_fix_warnings(content, warnings, fix_types="all")
    print(result.fixed_content)

    single = fixer.fix_individual_warning(content, "warning_1a2b3c4d")
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from shared.utilities.result import Result

from .cdm_matcher import CDMMatcher, apply_entity_choice
from .erd_models import CardinalityType, ERDAttribute, ERDEntity, ERDRelationship, ParsedERD
from .erd_parser import ERDParser, split_lines
from .erd_validator import ERDValidator, ValidatorOptions
from .erd_warnings import ValidationWarning, WarningType, find_warning, warnings_to_dicts
from .erd_writer import ERDWriter, junction_entity, render_attribute, render_relationship

logger = logging.getLogger(__name__)


FIX_PRIORITY: Tuple[WarningType, ...] = (
    WarningType.MISSING_ENTITY,
    WarningType.MANY_TO_MANY_RELATIONSHIP,
    WarningType.MISSING_PRIMARY_KEY,
    WarningType.MULTIPLE_PRIMARY_KEYS,
    WarningType.DUPLICATE_COLUMNS,
    WarningType.DUPLICATE_RELATIONSHIP,
    WarningType.MISSING_FOREIGN_KEY,
    WarningType.SYSTEM_ATTRIBUTE_CONFLICT,
    WarningType.INVALID_ENTITY_NAME,
    WarningType.RESERVED_ENTITY_NAME,
    WarningType.INVALID_ATTRIBUTE_NAME,
    WarningType.SQL_RESERVED_WORD,
    WarningType.NAMING_CONFLICT,
    WarningType.ENTITY_NAME_TOO_LONG,
    WarningType.ATTRIBUTE_NAME_TOO_LONG,
    WarningType.INVALID_RELATIONSHIP_NAME,
    WarningType.RELATIONSHIP_NAME_TOO_LONG,
    WarningType.FOREIGN_KEY_NAMING,
)

FIX_TYPES_ALL = "all"
FIX_TYPES_AUTO_ONLY = "autoFixableOnly"

DEFAULT_INDENT = "    "
PRIMARY_KEY_LINE = 'string id PK "Primary identifier"'

RELATIONSHIP_LINE_PATTERN = re.compile(r'^(\s*)([\w-]+)(\s+[|}{o-]+\s+)([\w-]+)(.*)$')

# (start index, end index exclusive, replacement lines)
Edit = Tuple[int, int, List[str]]
WarningInput = Union[ValidationWarning, Dict[str, Any]]


def _indent_of(line: str) -> str:
    return line[:len(line) - len(line.lstrip())]


def _priority(warning: ValidationWarning) -> int:
    try:
        return FIX_PRIORITY.index(warning.type)
    except ValueError:
        return len(FIX_PRIORITY)


# =============================================================================
# Result records
# =============================================================================

@dataclass
class FixResult:
    """Outcome of fixing one warning by id."""
    success: bool
    fixed_content: str
    message: str = ""
    applied_fix: Optional[Dict[str, Any]] = None
    remaining_warnings: List[ValidationWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "fixedContent": self.fixed_content,
            "appliedFix": self.applied_fix,
            "remainingWarnings": warnings_to_dicts(self.remaining_warnings),
            "message": self.message,
        }


@dataclass
class BulkFixResult:
    """Outcome of a bulk fix."""
    fixed_content: str
    applied_fixes: List[Dict[str, Any]] = field(default_factory=list)
    failed_fixes: List[Dict[str, Any]] = field(default_factory=list)
    remaining_warnings: List[ValidationWarning] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "fixesApplied": len(self.applied_fixes),
            "fixesFailed": len(self.failed_fixes),
            "remainingCount": len(self.remaining_warnings),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "fixedContent": self.fixed_content,
            "appliedFixes": list(self.applied_fixes),
            "failedFixes": list(self.failed_fixes),
            "remainingWarnings": warnings_to_dicts(self.remaining_warnings),
            "summary": self.summary,
        }


class _Document:
    """Source lines plus the parse of those lines."""

    def __init__(self, content: str, parser: ERDParser):
        self._parser = parser
        self.lines = split_lines(content)
        self.parsed: ParsedERD = parser.parse(self.content)

    @property
    def content(self) -> str:
        return "\n".join(self.lines)

    def apply(self, edits: Iterable[Edit]) -> None:
        for start, end, replacement in sorted(edits, key=lambda e: e[0], reverse=True):
            self.lines[start:end] = replacement
        self.parsed = self._parser.parse(self.content)

    def entity(self, name: Optional[str]) -> Optional[ERDEntity]:
        if not name:
            return None
        return self.parsed.entities.get(name)

    def attribute_indent(self, entity: ERDEntity) -> str:
        for attr in entity.attributes:
            if attr.span is not None:
                return _indent_of(self.lines[attr.span.start_index])
        return _indent_of(self.lines[entity.span.start_index]) + DEFAULT_INDENT

    def block_indent(self) -> str:
        for entity in self.parsed.entities.values():
            if entity.span is not None:
                return _indent_of(self.lines[entity.span.start_index])
        return DEFAULT_INDENT

    def end_of_entities(self) -> int:
        """Index after the last entity block, or after the header line."""
        ends = [e.span.end_index for e in self.parsed.entities.values() if e.span is not None]
        if ends:
            return max(ends) + 1
        for index, line in enumerate(self.lines):
            if line.strip().startswith("erDiagram"):
                return index + 1
        return 0

    def attribute_line(self, attribute: ERDAttribute, **changes: Any) -> str:
        """Re-render one attribute line with its original indentation."""
        indent = _indent_of(self.lines[attribute.span.start_index])
        updated = ERDAttribute(**{**attribute.__dict__, **changes})
        return f"{indent}{render_attribute(updated)}"


class ERDFixer:
    """
    Apply auto-fixes to Mermaid ERD text.

    Example:
        >>> fixer = ERDFixer()
        >>> result = fixer.fix_individual_warning(content, warning_id)
        >>> result.success
        True
    """

    def __init__(
        self,
        parser: Optional[ERDParser] = None,
        validator_options: Optional[ValidatorOptions] = None,
        cdm_matcher: Optional[CDMMatcher] = None,
        entity_choice: Optional[str] = None,
    ):
        self._parser = parser if parser is not None else ERDParser()
        self._validator = ERDValidator(validator_options)
        self._cdm_matcher = cdm_matcher if cdm_matcher is not None else CDMMatcher()
        self._entity_choice = entity_choice
        self._fixers: Dict[WarningType, Callable[[_Document, ValidationWarning], Result]] = {
            WarningType.MISSING_ENTITY: self._fix_missing_entity,
            WarningType.MANY_TO_MANY_RELATIONSHIP: self._fix_many_to_many,
            WarningType.MISSING_PRIMARY_KEY: self._fix_missing_primary_key,
            WarningType.MULTIPLE_PRIMARY_KEYS: self._fix_multiple_primary_keys,
            WarningType.DUPLICATE_COLUMNS: self._fix_duplicate_columns,
            WarningType.DUPLICATE_RELATIONSHIP: self._fix_duplicate_relationship,
            WarningType.MISSING_FOREIGN_KEY: self._fix_missing_foreign_key,
            WarningType.SYSTEM_ATTRIBUTE_CONFLICT: self._fix_rename_attribute,
            WarningType.INVALID_ENTITY_NAME: self._fix_rename_entity,
            WarningType.RESERVED_ENTITY_NAME: self._fix_rename_entity,
            WarningType.INVALID_ATTRIBUTE_NAME: self._fix_rename_attribute,
            WarningType.SQL_RESERVED_WORD: self._fix_sql_reserved_word,
            WarningType.NAMING_CONFLICT: self._fix_rename_attribute,
            WarningType.ENTITY_NAME_TOO_LONG: self._fix_rename_entity,
            WarningType.ATTRIBUTE_NAME_TOO_LONG: self._fix_rename_attribute,
            WarningType.INVALID_RELATIONSHIP_NAME: self._fix_relationship_name,
            WarningType.RELATIONSHIP_NAME_TOO_LONG: self._fix_relationship_name,
            WarningType.FOREIGN_KEY_NAMING: self._fix_rename_attribute,
        }

    @property
    def supported_types(self) -> List[WarningType]:
        return list(self._fixers)

    def validate(self, content: str) -> List[ValidationWarning]:
        """Parse, detect CDM entities and validate ``content``."""
        parsed = self._parser.parse(content)
        detection = self._cdm_matcher.detect_cdm_entities(parsed.entity_list())
        apply_entity_choice(parsed, detection, self._entity_choice)
        return self._validator.validate(parsed, detection).warnings

    # =========================================================================
    # Public API
    # =========================================================================

    def bulk_fix_warnings(
        self,
        content: str,
        warnings: Sequence[WarningInput],
        fix_types: Union[str, Sequence[str]] = FIX_TYPES_ALL,
        normalize: bool = True,
    ) -> BulkFixResult:
        """
        Apply every selected fix in priority order.

        Args:
            content: ERD source text.
            warnings: Warnings (objects or JSON dicts) from a validation call.
            fix_types: ``'all'``, ``'autoFixableOnly'`` or a list of warning types.
            normalize: Run the Mermaid normalization pass on the result.

        Returns:
            BulkFixResult with the fixed text and re-validated warnings.
        """
        selected = self._select(self._coerce(warnings), fix_types)
        document = _Document(content, self._parser)
        applied: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []

        for warning in selected:
            outcome = self._apply(document, warning)
            if outcome.ok:
                applied.append({
                    "warningId": warning.id,
                    "warningType": warning.type.value,
                    "entity": warning.entity,
                    "message": outcome.message,
                })
            else:
                logger.debug(f"Fix for {warning.id} ({warning.type.value}) failed: {outcome.error}")
                failed.append({
                    "warningId": warning.id,
                    "warningType": warning.type.value,
                    "error": outcome.error,
                })

        fixed = document.content
        if normalize:
            fixed = ERDWriter.normalize_for_mermaid(fixed)

        logger.info(f"Bulk fix applied {len(applied)} fixes, {len(failed)} failed")
        return BulkFixResult(
            fixed_content=fixed,
            applied_fixes=applied,
            failed_fixes=failed,
            remaining_warnings=self.validate(fixed),
        )

    def fix_individual_warning(self, content: str, warning_id: str) -> FixResult:
        """
        Fix a single warning identified by its deterministic id.

        An id that no longer appears in a fresh validation is treated as
        already resolved and returns success without changing the content.
        """
        current = self.validate(content)
        warning = find_warning(current, warning_id)
        if warning is None:
            return FixResult(
                success=True,
                fixed_content=content,
                message="Warning already resolved",
                remaining_warnings=current,
            )

        if not warning.auto_fixable or warning.type not in self._fixers:
            return FixResult(
                success=False,
                fixed_content=content,
                message=f"Warning type '{warning.type.value}' is not auto-fixable",
                remaining_warnings=current,
            )

        document = _Document(content, self._parser)
        outcome = self._apply(document, warning)
        if not outcome.ok:
            return FixResult(
                success=False,
                fixed_content=content,
                message=outcome.error or "Fix failed",
                remaining_warnings=current,
            )

        fixed = document.content
        return FixResult(
            success=True,
            fixed_content=fixed,
            message=outcome.message,
            applied_fix={
                "warningId": warning.id,
                "warningType": warning.type.value,
                "entity": warning.entity,
                "message": outcome.message,
            },
            remaining_warnings=self.validate(fixed),
        )

    # =========================================================================
    # Selection
    # =========================================================================

    @staticmethod
    def _coerce(warnings: Sequence[WarningInput]) -> List[ValidationWarning]:
        coerced = []
        for item in warnings:
            if isinstance(item, ValidationWarning):
                coerced.append(item)
                continue
            try:
                coerced.append(ValidationWarning.from_dict(item))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed warning payload: {e}")
        return coerced

    def _select(
        self,
        warnings: List[ValidationWarning],
        fix_types: Union[str, Sequence[str]],
    ) -> List[ValidationWarning]:
        if fix_types == FIX_TYPES_ALL:
            chosen = [w for w in warnings if w.type in self._fixers]
        elif fix_types == FIX_TYPES_AUTO_ONLY:
            chosen = [w for w in warnings if w.auto_fixable and w.type in self._fixers]
        else:
            wanted = {str(t) for t in fix_types}
            chosen = [w for w in warnings if w.type.value in wanted and w.type in self._fixers]

        unique: List[ValidationWarning] = []
        seen = set()
        for warning in chosen:
            if warning.id not in seen:
                seen.add(warning.id)
                unique.append(warning)
        return sorted(unique, key=_priority)

    def _apply(self, document: _Document, warning: ValidationWarning) -> Result:
        fixer = self._fixers.get(warning.type)
        if fixer is None:
            return Result.failure(f"No fix available for '{warning.type.value}'")
        if not warning.fix_data:
            return Result.failure(f"Warning {warning.id} has no fix data")
        return fixer(document, warning)

    # =========================================================================
    # Structural fixes
    # =========================================================================

    def _fix_missing_entity(self, doc: _Document, warning: ValidationWarning) -> Result:
        name = warning.fix_data.get("entityName") or warning.entity
        if not name:
            return Result.failure("Missing entity name")
        if doc.entity(name) is not None:
            return Result.success(message=f"Entity '{name}' already defined")

        indent = doc.block_indent()
        block = [
            f"{indent}{name} {{",
            f"{indent}{DEFAULT_INDENT}{PRIMARY_KEY_LINE}",
            f"{indent}}}",
        ]
        doc.apply([(doc.end_of_entities(), doc.end_of_entities(), block)])
        return Result.success(message=f"Added entity '{name}'")

    def _fix_many_to_many(self, doc: _Document, warning: ValidationWarning) -> Result:
        data = warning.fix_data
        from_entity, to_entity = data.get("fromEntity"), data.get("toEntity")
        junction = data.get("junctionName") or f"{from_entity}{to_entity}"

        rel = next((
            r for r in doc.parsed.relationships
            if r.from_entity == from_entity
            and r.to_entity == to_entity
            and r.cardinality == CardinalityType.MANY_TO_MANY
        ), None)
        if rel is None or rel.span is None:
            return Result.failure(f"Many-to-many relationship {from_entity} → {to_entity} not found")

        line_indent = _indent_of(doc.lines[rel.span.start_index])
        edits: List[Edit] = [(rel.span.start_index, rel.span.start_index + 1, [
            line_indent + render_relationship(ERDRelationship(
                from_entity=side, to_entity=junction, cardinality=CardinalityType.ONE_TO_MANY, name="has",
            ))
            for side in (from_entity, to_entity)
        ])]

        if doc.entity(junction) is None:
            indent = doc.block_indent()
            inner = f"{indent}{DEFAULT_INDENT}"
            insert_at = doc.end_of_entities()
            entity = junction_entity(from_entity, to_entity, name=junction)
            edits.append((insert_at, insert_at, [
                f"{indent}{junction} {{",
                *(f"{inner}{render_attribute(attribute)}" for attribute in entity.attributes),
                f"{indent}}}",
            ]))

        doc.apply(edits)
        return Result.success(message=f"Replaced {from_entity} ↔ {to_entity} with junction '{junction}'")

    def _fix_missing_primary_key(self, doc: _Document, warning: ValidationWarning) -> Result:
        entity = doc.entity(warning.fix_data.get("entityName") or warning.entity)
        if entity is None or entity.span is None:
            return Result.failure(f"Entity '{warning.entity}' not found")
        if entity.primary_keys:
            return Result.success(message=f"Entity '{entity.name}' already has a primary key")

        existing_id = entity.get_attribute("id")
        if existing_id is not None and existing_id.span is not None:
            line = doc.attribute_line(
                existing_id,
                constraints=["PK"] + [c for c in existing_id.constraints if c != "PK"],
            )
            doc.apply([(existing_id.span.start_index, existing_id.span.start_index + 1, [line])])
            return Result.success(message=f"Marked 'id' as primary key of '{entity.name}'")

        indent = doc.attribute_indent(entity)
        new_line = f"{indent}{PRIMARY_KEY_LINE}"
        doc.apply([self._insert_first(doc, entity, new_line)])
        return Result.success(message=f"Added primary key 'id' to '{entity.name}'")

    def _fix_multiple_primary_keys(self, doc: _Document, warning: ValidationWarning) -> Result:
        entity = doc.entity(warning.fix_data.get("entityName") or warning.entity)
        if entity is None:
            return Result.failure(f"Entity '{warning.entity}' not found")
        primary_keys = entity.primary_keys
        if len(primary_keys) < 2:
            return Result.success(message=f"Entity '{entity.name}' already has a single primary key")

        keep = warning.fix_data.get("keep") or primary_keys[0].name
        edits: List[Edit] = []
        for attr in primary_keys:
            if attr.name == keep or attr.span is None:
                continue
            line = doc.attribute_line(
                attr,
                constraints=[c for c in attr.constraints if c != "PK"],
                is_primary_key=False,
            )
            edits.append((attr.span.start_index, attr.span.start_index + 1, [line]))
        doc.apply(edits)
        return Result.success(message=f"Kept '{keep}' as the only primary key of '{entity.name}'")

    def _fix_duplicate_columns(self, doc: _Document, warning: ValidationWarning) -> Result:
        entity = doc.entity(warning.fix_data.get("entityName") or warning.entity)
        if entity is None:
            return Result.failure(f"Entity '{warning.entity}' not found")
        name = (warning.fix_data.get("attributeName") or warning.attribute or "").lower()
        instances = [attr for attr in entity.attributes if attr.name.lower() == name]
        if len(instances) < 2:
            return Result.success(message=f"Column '{name}' is no longer duplicated")

        best = choose_best_instance(instances)
        edits: List[Edit] = [
            (attr.span.start_index, attr.span.start_index + 1, [])
            for attr in instances
            if attr is not best and attr.span is not None
        ]
        doc.apply(edits)
        return Result.success(message=f"Removed {len(edits)} duplicate '{best.name}' columns from '{entity.name}'")

    def _fix_duplicate_relationship(self, doc: _Document, warning: ValidationWarning) -> Result:
        data = warning.fix_data
        pair = sorted(((data.get("fromEntity") or "").lower(), (data.get("toEntity") or "").lower()))
        occurrence = int(data.get("occurrence") or 2)
        matching = [
            rel for rel in doc.parsed.relationships
            if sorted((rel.from_entity.lower(), rel.to_entity.lower())) == pair
        ]
        if len(matching) < occurrence:
            return Result.success(message="Duplicate relationship already removed")

        rel = matching[occurrence - 1]
        doc.apply([(rel.span.start_index, rel.span.start_index + 1, [])])
        return Result.success(message=f"Removed duplicate relationship {rel.arrow}")

    def _fix_missing_foreign_key(self, doc: _Document, warning: ValidationWarning) -> Result:
        data = warning.fix_data
        entity = doc.entity(data.get("entityName") or warning.entity)
        if entity is None or entity.span is None:
            return Result.failure(f"Entity '{data.get('entityName')}' not found")
        column = data.get("columnName")
        referenced = data.get("referencedEntity", "")
        if not column:
            return Result.failure("Missing foreign key column name")
        if entity.get_attribute(column) is not None:
            return Result.success(message=f"Column '{column}' already exists on '{entity.name}'")

        indent = doc.attribute_indent(entity)
        new_line = f'{indent}string {column} FK "Foreign key to {referenced}"'
        doc.apply([self._insert_last(doc, entity, new_line)])
        return Result.success(message=f"Added foreign key '{column}' to '{entity.name}'")

    # =========================================================================
    # Renames
    # =========================================================================

    def _fix_sql_reserved_word(self, doc: _Document, warning: ValidationWarning) -> Result:
        data = warning.fix_data
        scope = data.get("scope") or ("attribute" if data.get("entityName") else "entity")
        if scope == "attribute":
            return self._fix_rename_attribute(doc, warning)
        return self._fix_rename_entity(doc, warning)

    def _fix_rename_attribute(self, doc: _Document, warning: ValidationWarning) -> Result:
        data = warning.fix_data
        entity = doc.entity(data.get("entityName") or warning.entity)
        if entity is None:
            return Result.failure(f"Entity '{data.get('entityName') or warning.entity}' not found")
        original, suggested = data.get("originalName"), data.get("suggestedName")
        if not original or not suggested:
            return Result.failure("Rename requires originalName and suggestedName")

        attribute = next((a for a in entity.attributes if a.name == original), None)
        if attribute is None:
            attribute = entity.get_attribute(original)
        if attribute is None or attribute.span is None:
            if entity.get_attribute(suggested) is not None:
                return Result.success(message=f"Attribute already renamed to '{suggested}'")
            return Result.failure(f"Attribute '{original}' not found in '{entity.name}'")

        clash = entity.get_attribute(suggested)
        if clash is not None and clash is not attribute:
            return Result.failure(f"Attribute '{suggested}' already exists in '{entity.name}'")

        line = doc.attribute_line(attribute, name=suggested)
        doc.apply([(attribute.span.start_index, attribute.span.start_index + 1, [line])])
        return Result.success(message=f"Renamed '{entity.name}.{attribute.name}' to '{suggested}'")

    def _fix_rename_entity(self, doc: _Document, warning: ValidationWarning) -> Result:
        data = warning.fix_data
        original = data.get("originalName") or warning.entity
        suggested = data.get("suggestedName")
        if not original or not suggested:
            return Result.failure("Rename requires originalName and suggestedName")

        entity = doc.entity(original)
        if entity is None or entity.span is None:
            if doc.entity(suggested) is not None:
                return Result.success(message=f"Entity already renamed to '{suggested}'")
            return Result.failure(f"Entity '{original}' not found")
        if doc.entity(suggested) is not None:
            return Result.failure(f"Entity '{suggested}' already exists")

        edits: List[Edit] = []
        header_index = entity.span.start_index
        header = doc.lines[header_index]
        renamed = re.sub(rf'(?<![\w-]){re.escape(original)}(?![\w-])', suggested, header, count=1)
        edits.append((header_index, header_index + 1, [renamed]))

        for rel in doc.parsed.relationships:
            if rel.span is None or original not in (rel.from_entity, rel.to_entity):
                continue
            index = rel.span.start_index
            line = self._rename_relationship_endpoint(doc.lines[index], original, suggested)
            if line != doc.lines[index]:
                edits.append((index, index + 1, [line]))

        lookup = re.compile(rf'lookup\(\s*{re.escape(original)}\s*\)', re.IGNORECASE)
        for other in doc.parsed.entities.values():
            for attr in other.attributes:
                if attr.span is None or attr.target_entity != original:
                    continue
                index = attr.span.start_index
                edits.append((index, index + 1, [lookup.sub(f"lookup({suggested})", doc.lines[index])]))

        doc.apply(edits)
        return Result.success(message=f"Renamed entity '{original}' to '{suggested}'")

    @staticmethod
    def _rename_relationship_endpoint(line: str, original: str, suggested: str) -> str:
        match = RELATIONSHIP_LINE_PATTERN.match(line)
        if not match:
            return line
        indent, left, symbol, right, rest = match.groups()
        left = suggested if left == original else left
        right = suggested if right == original else right
        return f"{indent}{left}{symbol}{right}{rest}"

    def _fix_relationship_name(self, doc: _Document, warning: ValidationWarning) -> Result:
        data = warning.fix_data
        original, suggested = data.get("originalName"), data.get("suggestedName")
        rel = next((
            r for r in doc.parsed.relationships
            if r.from_entity == data.get("fromEntity")
            and r.to_entity == data.get("toEntity")
            and r.name == original
        ), None)
        if rel is None or rel.span is None:
            return Result.failure(f"Relationship '{original}' not found")

        index = rel.span.start_index
        indent = _indent_of(doc.lines[index])
        line = f'{indent}{rel.from_entity} {rel.symbol} {rel.to_entity} : "{suggested}"'
        doc.apply([(index, index + 1, [line])])
        return Result.success(message=f"Renamed relationship '{original}' to '{suggested}'")

    # =========================================================================
    # Span helpers
    # =========================================================================

    @staticmethod
    def _insert_first(doc: _Document, entity: ERDEntity, new_line: str) -> Edit:
        start = entity.span.start_index
        if entity.span.start_line == entity.span.end_line:
            return ERDFixer._expand_inline_block(doc, entity, new_line)
        return (start + 1, start + 1, [new_line])

    @staticmethod
    def _insert_last(doc: _Document, entity: ERDEntity, new_line: str) -> Edit:
        if entity.span.start_line == entity.span.end_line:
            return ERDFixer._expand_inline_block(doc, entity, new_line)
        end = entity.span.end_index
        return (end, end, [new_line])

    @staticmethod
    def _expand_inline_block(doc: _Document, entity: ERDEntity, new_line: str) -> Edit:
        start = entity.span.start_index
        indent = _indent_of(doc.lines[start])
        return (start, start + 1, [
            f"{indent}{entity.name} {{",
            new_line,
            f"{indent}}}",
        ])


def choose_best_instance(instances: List[ERDAttribute]) -> ERDAttribute:
    """Prefer the instance with a constraint, then one with a description, then the first."""
    for attr in instances:
        if attr.constraints:
            return attr
    for attr in instances:
        if attr.description:
            return attr
    return instances[0]
