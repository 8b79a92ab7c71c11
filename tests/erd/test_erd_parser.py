"""
Tests for the Mermaid ERD parser.

Covers entity blocks, attribute constraints, composite types, relationship
cardinality decoding, source spans and the recoverable parse warnings.

Run with: pytest tests/erd/test_erd_parser.py -v
"""

import pytest

from formats.mermaid import CardinalityType, DataverseType, ERDParser
from formats.mermaid.erd_parser import (
    decode_cardinality,
    looks_like_relationship,
    parse_constraints,
    split_lines,
)

from fixtures import CHOICE_ERD, MALFORMED_ERD, SIMPLE_ERD


@pytest.fixture
def parser():
    return ERDParser()


# =============================================================================
# Helper Function Tests
# =============================================================================

@pytest.mark.unit
class TestParserHelpers:
    """Tests for the module-level grammar helpers."""

    @pytest.mark.parametrize("symbol,expected", [
        ("||--o{", CardinalityType.ONE_TO_MANY),
        ("||--|{", CardinalityType.ONE_TO_MANY),
        ("||--||", CardinalityType.ONE_TO_ONE),
        ("}o--o{", CardinalityType.MANY_TO_MANY),
        ("o|--o{", CardinalityType.ZERO_TO_MANY),
        ("--", CardinalityType.UNKNOWN),
    ])
    def test_decode_cardinality(self, symbol, expected):
        """Cardinality symbols decode to their relationship kind."""
        assert decode_cardinality(symbol) == expected

    def test_parse_constraints_keeps_not_null_together(self):
        """NOT NULL is one constraint token."""
        assert parse_constraints("pk, not null") == ["PK", "NOT NULL"]

    def test_parse_constraints_empty(self):
        """Missing constraint text yields no constraints."""
        assert parse_constraints(None) == []
        assert parse_constraints("   ") == []

    def test_looks_like_relationship(self):
        """Relationship shapes are recognised before attribute parsing."""
        assert looks_like_relationship('A ||--o{ B : "has"')
        assert looks_like_relationship('broken ||-- thing')
        assert not looks_like_relationship("string name")

    def test_split_lines_normalizes_crlf(self):
        """Windows line endings split like Unix ones."""
        assert split_lines("a\r\nb") == ["a", "b"]
        assert split_lines(None) == [""]


# =============================================================================
# Entity Parsing Tests
# =============================================================================

@pytest.mark.unit
class TestEntityParsing:
    """Tests for entity blocks and attributes."""

    def test_parses_entities_in_order(self, parser):
        """Entities keep their declaration order."""
        parsed = parser.parse(SIMPLE_ERD)
        assert list(parsed.entities) == ["Project", "Milestone"]

    def test_attribute_types_and_constraints(self, parser):
        """Types, keys and descriptions are read from each attribute line."""
        project = parser.parse(SIMPLE_ERD).get_entity("Project")

        identifier = project.get_attribute("id")
        assert identifier.is_primary_key
        assert identifier.is_required
        assert identifier.description == "Unique identifier"
        assert project.get_attribute("budget").type == DataverseType.DECIMAL
        assert project.get_attribute("title").display_name == "Title"

    def test_foreign_key_flag(self, parser):
        """FK constraints mark the attribute as a foreign key."""
        milestone = parser.parse(SIMPLE_ERD).get_entity("Milestone")
        assert [a.name for a in milestone.foreign_keys] == ["project_id"]
        assert milestone.get_attribute("due_date").type == DataverseType.DATETIME

    def test_get_attribute_is_case_insensitive(self, parser):
        """Attribute lookup ignores case."""
        project = parser.parse(SIMPLE_ERD).get_entity("Project")
        assert project.get_attribute("TITLE") is not None

    def test_composite_types(self, parser):
        """choice(...) and lookup(...) resolve to Choice and Lookup."""
        request = parser.parse(CHOICE_ERD).get_entity("Request")

        priority = request.get_attribute("priority")
        assert priority.type == DataverseType.CHOICE
        assert priority.choice_options == ["Low", "Medium", "High"]

        desk = request.get_attribute("desk_ref")
        assert desk.type == DataverseType.LOOKUP
        assert desk.target_entity == "Desk"

    def test_system_fields_are_dropped(self, parser):
        """createdon and friends never become attributes."""
        parsed = parser.parse("""erDiagram
    Order {
        string id PK
        datetime createdon
        string modifiedby
    }
""")
        assert [a.name for a in parsed.get_entity("Order").attributes] == ["id"]

    def test_empty_entity_on_one_line(self, parser):
        """``Name { }`` declares an entity without attributes."""
        parsed = parser.parse("erDiagram\n    Tag { }\n")
        tag = parsed.get_entity("Tag")
        assert tag.attributes == []
        assert tag.span.start_line == 2
        assert tag.span.end_line == 2

    def test_entity_span_covers_block(self, parser):
        """Spans are 1-based and include the closing brace."""
        parsed = parser.parse(SIMPLE_ERD)
        project = parsed.get_entity("Project")
        assert project.span.start_line == 2
        assert project.span.end_line == 6
        assert parsed.lines[project.span.start_index].strip() == "Project {"

    def test_comments_are_ignored(self, parser):
        """%% comment lines produce no warnings."""
        parsed = parser.parse("erDiagram\n%% note\n    A {\n        string id PK\n    }\n")
        assert parsed.parse_warnings == []
        assert "A" in parsed.entities

    def test_duplicate_entity_warning(self, parser):
        """A second definition of the same entity is ignored with a warning."""
        parsed = parser.parse("""erDiagram
    A {
        string id PK
    }
    A {
        string other
    }
""")
        assert len(parsed.entities) == 1
        assert [a.name for a in parsed.get_entity("A").attributes] == ["id"]
        assert any("defined more than once" in w["message"] for w in parsed.parse_warnings)

    def test_missing_closing_brace(self, parser):
        """An unterminated block is closed at end of input with a warning."""
        parsed = parser.parse("erDiagram\n    A {\n        string id PK\n")
        assert "A" in parsed.entities
        assert parsed.parse_warnings[-1]["message"] == "Entity 'A' is missing a closing brace"


# =============================================================================
# Relationship Parsing Tests
# =============================================================================

@pytest.mark.unit
class TestRelationshipParsing:
    """Tests for relationship lines."""

    def test_relationship_fields(self, parser):
        """Label, cardinality and span are captured."""
        rel = parser.parse(SIMPLE_ERD).relationships[0]
        assert rel.from_entity == "Project"
        assert rel.to_entity == "Milestone"
        assert rel.cardinality == CardinalityType.ONE_TO_MANY
        assert rel.name == "has milestones"
        assert rel.display_name == "Has Milestones"
        assert rel.span.start_line == 13

    def test_unlabelled_relationship_gets_default_name(self, parser):
        """Without a label the name is ``From_To``."""
        rel = parser.parse("erDiagram\n    A ||--o{ B\n").relationships[0]
        assert rel.name == "A_B"

    def test_self_reference(self, parser):
        """A relationship from an entity to itself is flagged as self-referencing."""
        rel = parser.parse('erDiagram\n    Employee ||--o{ Employee : "manages"\n').relationships[0]
        assert rel.is_self_referencing


# =============================================================================
# Recovery Tests
# =============================================================================

@pytest.mark.unit
class TestParseRecovery:
    """Malformed input is reported and parsing continues."""

    def test_malformed_lines_reported(self, parser):
        """Each malformed line yields one parse warning with its line number."""
        parsed = parser.parse(MALFORMED_ERD)
        messages = {w["line"]: w["message"] for w in parsed.parse_warnings}

        assert messages[4] == "Unrecognized attribute syntax: ??? broken"
        assert messages[5] == "Malformed type 'choice(' for 'status' treated as String"
        assert messages[7] == "Unrecognized line: Widget >>--<< Gadget"

    def test_malformed_choice_recovered_as_string(self, parser):
        """A broken composite type still yields a String attribute."""
        widget = parser.parse(MALFORMED_ERD).get_entity("Widget")
        status = widget.get_attribute("status")
        assert status is not None
        assert status.type == DataverseType.STRING

    def test_parse_file(self, parser, tmp_path):
        """parse_file reads UTF-8 text from disk."""
        path = tmp_path / "model.mmd"
        path.write_text(SIMPLE_ERD, encoding="utf-8")
        assert list(parser.parse_file(str(path)).entities) == ["Project", "Milestone"]

    def test_to_dict_shape(self, parser):
        """ParsedERD serializes entities and relationships."""
        data = parser.parse(SIMPLE_ERD).to_dict()
        assert len(data["entities"]) == 2
        assert len(data["relationships"]) == 1
