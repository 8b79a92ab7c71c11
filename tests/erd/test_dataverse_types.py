"""
Tests for Dataverse metadata payloads.

Run with: pytest tests/erd/test_dataverse_types.py -v
"""

import pytest

from constants import DataverseLimits
from shared.models.dataverse_types import (
    DataverseAttributeDefinition,
    DataverseEntityDefinition,
    DataverseGlobalChoice,
    DataverseRelationshipDefinition,
    build_options,
    label,
)


def attribute(kind, **kwargs):
    return DataverseAttributeDefinition(
        schema_name="cr123_Field", logical_name="cr123_field", display_name="Field",
        attribute_type=kind, **kwargs
    )


@pytest.mark.unit
class TestLabels:
    """Tests for label helpers."""

    def test_label(self):
        """Labels carry one localized entry in English."""
        payload = label("Customer")
        assert payload["LocalizedLabels"][0]["Label"] == "Customer"
        assert payload["LocalizedLabels"][0]["LanguageCode"] == 1033

    def test_option_values(self):
        """Option values start at the customization base."""
        options = build_options(["A", "B"])
        assert [o["Value"] for o in options] == [
            DataverseLimits.OPTION_VALUE_BASE, DataverseLimits.OPTION_VALUE_BASE + 1
        ]


@pytest.mark.unit
class TestAttributeMetadata:
    """Tests for column payloads."""

    @pytest.mark.parametrize("kind,odata_type", [
        ("String", "StringAttributeMetadata"),
        ("Email", "StringAttributeMetadata"),
        ("Memo", "MemoAttributeMetadata"),
        ("Integer", "IntegerAttributeMetadata"),
        ("Decimal", "DecimalAttributeMetadata"),
        ("Money", "MoneyAttributeMetadata"),
        ("Double", "DoubleAttributeMetadata"),
        ("Boolean", "BooleanAttributeMetadata"),
        ("DateTime", "DateTimeAttributeMetadata"),
        ("DateOnly", "DateTimeAttributeMetadata"),
        ("Choice", "PicklistAttributeMetadata"),
        ("File", "FileAttributeMetadata"),
    ])
    def test_odata_type(self, kind, odata_type):
        """Each supported type renders its metadata class."""
        payload = attribute(kind).to_metadata()
        assert payload["@odata.type"] == f"Microsoft.Dynamics.CRM.{odata_type}"
        assert payload["SchemaName"] == "cr123_Field"

    def test_string_format(self):
        """Email columns use the Email format with a shorter length."""
        payload = attribute("Email").to_metadata()
        assert payload["FormatName"] == {"Value": "Email"}
        assert payload["MaxLength"] == 100

    def test_date_only_format(self):
        """DateOnly uses the date-only format."""
        assert attribute("DateOnly").to_metadata()["Format"] == "DateOnly"
        assert attribute("DateTime").to_metadata()["Format"] == "DateAndTime"

    def test_local_choice(self):
        """Local choices embed their options."""
        payload = attribute("Choice", options=["Open", "Closed"]).to_metadata()
        assert payload["OptionSet"]["IsGlobal"] is False
        assert len(payload["OptionSet"]["Options"]) == 2

    def test_global_choice_binding(self):
        """Columns bound to a global choice reference it by name."""
        payload = attribute("Choice", global_choice_name="cr123_tier").to_metadata()
        assert payload["GlobalOptionSet@odata.bind"] == "/GlobalOptionSetDefinitions(Name='cr123_tier')"
        assert "OptionSet" not in payload

    def test_description_and_required(self):
        """Description and required level are carried over."""
        payload = attribute("String", description="Notes", required_level="ApplicationRequired").to_metadata()
        assert payload["Description"]["LocalizedLabels"][0]["Label"] == "Notes"
        assert payload["RequiredLevel"] == {"Value": "ApplicationRequired"}

    def test_lookup_is_not_a_column(self):
        """Lookups are created through relationships."""
        with pytest.raises(ValueError, match="cannot be created as a column"):
            attribute("Lookup").to_metadata()


@pytest.mark.unit
class TestEntityAndRelationshipMetadata:
    """Tests for table, relationship and choice payloads."""

    def test_entity_payload(self):
        """Tables include the primary name column."""
        entity = DataverseEntityDefinition(
            schema_name="cr123_Project", logical_name="cr123_project", display_name="Project",
            display_collection_name="Projects", primary_name_schema="cr123_Project_Name",
        )
        payload = entity.to_metadata()
        assert payload["OwnershipType"] == "UserOwned"
        primary = payload["Attributes"][0]
        assert primary["IsPrimaryName"] is True
        assert primary["SchemaName"] == "cr123_Project_Name"
        assert payload["Description"]["LocalizedLabels"][0]["Label"] == "Custom entity for Project"

    def test_relationship_payload(self):
        """Relationships reference the parent key and describe the lookup."""
        rel = DataverseRelationshipDefinition(
            schema_name="cr123_project_milestone", referenced_entity="cr123_project",
            referencing_entity="cr123_milestone", lookup_schema_name="cr123_Projectid",
        )
        payload = rel.to_metadata()
        assert payload["ReferencedAttribute"] == "cr123_projectid"
        assert payload["ReferencingEntityNavigationPropertyName"] == "cr123_projectid"
        assert payload["Lookup"]["SchemaName"] == "cr123_Projectid"
        assert payload["CascadeConfiguration"]["Delete"] == "RemoveLink"

    def test_global_choice_payload(self):
        """Global choices are global picklists."""
        payload = DataverseGlobalChoice(name="cr123_tier", display_name="Tier", options=["Gold"]).to_metadata()
        assert payload["IsGlobal"] is True
        assert payload["Name"] == "cr123_tier"
        assert payload["Description"]["LocalizedLabels"][0]["Label"] == "Tier"
