"""
Tests for the ERD type mapper.

Run with: pytest tests/erd/test_erd_type_mapper.py -v
"""

import pytest

from formats.mermaid import DataverseType, ERDTypeMapper, ERD_TYPE_MAPPINGS
from formats.mermaid.erd_type_mapper import format_display_name


@pytest.fixture
def mapper():
    return ERDTypeMapper()


@pytest.mark.unit
class TestLiteralMappings:
    """Tests for literal type tokens."""

    @pytest.mark.parametrize("token,expected", [
        ("string", DataverseType.STRING),
        ("INT", DataverseType.INTEGER),
        ("decimal", DataverseType.DECIMAL),
        ("currency", DataverseType.MONEY),
        ("bool", DataverseType.BOOLEAN),
        ("date", DataverseType.DATETIME),
        ("dateonly", DataverseType.DATEONLY),
        ("text", DataverseType.MEMO),
        ("guid", DataverseType.UNIQUEIDENTIFIER),
        ("image", DataverseType.IMAGE),
    ])
    def test_known_tokens(self, mapper, token, expected):
        """Known tokens map exactly, ignoring case."""
        result = mapper.map_type(token, "value")
        assert result.dataverse_type == expected
        assert result.is_exact_match
        assert result.warning is None

    def test_unknown_token_defaults_to_string(self, mapper):
        """Unknown tokens fall back to String with a warning."""
        result = mapper.map_type("varchar", "code")
        assert result.dataverse_type == DataverseType.STRING
        assert not result.is_exact_match
        assert result.warning == "Unknown type 'varchar' defaulted to String"

    def test_get_all_mappings_uses_plain_strings(self, mapper):
        """The mapping table is exposed with string values."""
        mappings = mapper.get_all_mappings()
        assert mappings["money"] == "Money"
        assert len(mappings) == len(ERD_TYPE_MAPPINGS)

    def test_is_supported_type(self, mapper):
        """Supported tokens include well-formed composites only."""
        assert mapper.is_supported_type("Decimal")
        assert mapper.is_supported_type("choice(a,b)")
        assert not mapper.is_supported_type("varchar")


@pytest.mark.unit
class TestCompositeTypes:
    """Tests for choice(...) and lookup(...)."""

    def test_choice_options_trimmed(self, mapper):
        """Choice options are split on commas and trimmed."""
        result = mapper.map_type("choice( Open , Closed ,)", "state")
        assert result.dataverse_type == DataverseType.CHOICE
        assert result.choice_options == ["Open", "Closed"]

    def test_empty_choice_is_malformed(self, mapper):
        """A choice without options is treated as String."""
        result = mapper.map_type("choice(,)", "state")
        assert result.dataverse_type == DataverseType.STRING
        assert result.warning == "Malformed choice type 'choice(,)' treated as String"

    def test_lookup_target(self, mapper):
        """lookup(Target) records the target entity."""
        result = mapper.map_type("lookup(Account)", "parent")
        assert result.dataverse_type == DataverseType.LOOKUP
        assert result.target_entity == "Account"

    def test_lookup_with_bad_target(self, mapper):
        """Targets must be identifiers."""
        result = mapper.map_type("lookup(Account Name)", "parent")
        assert result.dataverse_type == DataverseType.STRING
        assert not result.is_exact_match


@pytest.mark.unit
class TestNameHeuristics:
    """Tests for semantic type refinement from attribute names."""

    @pytest.mark.parametrize("name,expected", [
        ("contact_email", DataverseType.EMAIL),
        ("mobile_number", DataverseType.PHONE),
        ("website", DataverseType.URL),
        ("title", DataverseType.STRING),
    ])
    def test_string_names(self, mapper, name, expected):
        """String columns are refined by name hints."""
        assert mapper.map_type("string", name).dataverse_type == expected

    def test_heuristics_skip_non_string(self, mapper):
        """An explicit non-string type is never overridden by the name."""
        assert mapper.map_type("int", "phone_count").dataverse_type == DataverseType.INTEGER

    def test_date_only_names(self, mapper):
        """Well-known date names become DateOnly."""
        result = mapper.map_type("datetime", "birthdate")
        assert result.dataverse_type == DataverseType.DATEONLY
        assert result.is_semantic


@pytest.mark.unit
class TestDisplayNames:
    """Tests for display name formatting."""

    @pytest.mark.parametrize("name,expected", [
        ("customer_first-name", "Customer First Name"),
        ("Title", "Title"),
        ("", ""),
    ])
    def test_format_display_name(self, name, expected):
        """Underscores and hyphens become spaces, words are capitalized."""
        assert format_display_name(name) == expected
