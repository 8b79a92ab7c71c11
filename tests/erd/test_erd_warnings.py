"""
Tests for validation warning records and deterministic warning ids.

Run with: pytest tests/erd/test_erd_warnings.py -v
"""

import pytest

from formats.mermaid import ValidationWarning, WarningType, generate_warning_id
from formats.mermaid.erd_warnings import create_warning, find_warning, fnv1a_32, warnings_to_dicts
from shared.utilities import IssueCategory, Severity, count_by_severity


@pytest.mark.unit
class TestWarningIds:
    """Tests for content-addressed ids."""

    def test_fnv1a_reference_values(self):
        """FNV-1a matches the published 32-bit test vectors."""
        assert fnv1a_32("") == 0x811C9DC5
        assert fnv1a_32("a") == 0xE40C292C

    def test_id_is_deterministic(self):
        """The same inputs always produce the same id."""
        first = generate_warning_id("missing_primary_key", "Customer", None, None, "msg")
        second = generate_warning_id("missing_primary_key", "Customer", None, None, "msg")
        assert first == second
        assert first.startswith("warning_")
        assert len(first) == len("warning_") + 8

    def test_id_changes_with_entity(self):
        """Different entities produce different ids."""
        assert generate_warning_id("missing_primary_key", "A") != generate_warning_id("missing_primary_key", "B")

    def test_missing_parts_hash_as_empty(self):
        """None and empty string are equivalent."""
        assert generate_warning_id("x", None, None, None, "") == generate_warning_id("x", "", "", "", "")


@pytest.mark.unit
class TestValidationWarning:
    """Tests for the warning record."""

    def _warning(self):
        return create_warning(
            WarningType.MISSING_PRIMARY_KEY,
            message="Entity 'Customer' has no primary key",
            severity=Severity.ERROR,
            entity="Customer",
            auto_fixable=True,
            fix_data={"entityName": "Customer"},
        )

    def test_create_assigns_id(self):
        """create_warning derives the id from the content."""
        warning = self._warning()
        assert warning.id == generate_warning_id(
            "missing_primary_key", "Customer", None, None, "Entity 'Customer' has no primary key"
        )
        assert warning.is_error

    def test_to_dict_omits_empty_optionals(self):
        """Optional keys only appear when set."""
        data = self._warning().to_dict()
        assert data["type"] == "missing_primary_key"
        assert data["severity"] == "error"
        assert data["category"] == "structure"
        assert data["autoFixable"] is True
        assert data["fixData"] == {"entityName": "Customer"}
        assert "attribute" not in data
        assert "context" not in data

    def test_from_dict_restores_warning(self):
        """A serialized warning can be rebuilt for a bulk-fix request."""
        original = self._warning()
        restored = ValidationWarning.from_dict(original.to_dict())
        assert restored.id == original.id
        assert restored.type == WarningType.MISSING_PRIMARY_KEY
        assert restored.fix_data == {"entityName": "Customer"}

    def test_from_dict_computes_missing_id(self):
        """Without an id, from_dict derives one."""
        restored = ValidationWarning.from_dict({"type": "self_referencing_relationship", "message": "m"})
        assert restored.id == generate_warning_id("self_referencing_relationship", None, None, None, "m")
        assert restored.severity == Severity.WARNING
        assert restored.category == IssueCategory.STRUCTURE

    def test_from_dict_rejects_unknown_type(self):
        """Unknown warning kinds are rejected."""
        with pytest.raises(ValueError):
            ValidationWarning.from_dict({"type": "not_a_kind", "message": "m"})

    def test_find_and_serialize(self):
        """find_warning locates by id; warnings_to_dicts serializes in order."""
        warning = self._warning()
        assert find_warning([warning], warning.id) is warning
        assert find_warning([warning], "warning_00000000") is None
        assert warnings_to_dicts([warning])[0]["id"] == warning.id

    def test_count_by_severity(self):
        """Counts are grouped into errors, warnings and info."""
        info = create_warning(WarningType.CDM_SUMMARY, "Found 1 CDM entity matches.", severity=Severity.INFO)
        counts = count_by_severity([self._warning(), info])
        assert counts == {"errors": 1, "warnings": 0, "info": 1}
