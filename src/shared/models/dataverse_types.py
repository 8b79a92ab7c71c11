"""
Dataverse schema data types.

This module defines the schema document produced by the ERD converter and
consumed by the deployment orchestrator. Each definition renders the
metadata payload the Dataverse Web API expects.

Reference:
    https://learn.microsoft.com/en-us/power-apps/developer/data-platform/webapi/create-update-entity-definitions-using-web-api
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from constants import APIConfig, DataverseLimits

ODATA_NS = "Microsoft.Dynamics.CRM"


def label(text: str, language_code: int = APIConfig.LANGUAGE_CODE) -> Dict[str, Any]:
    """Build a Dataverse ``Label`` with one localized label."""
    return {
        "@odata.type": f"{ODATA_NS}.Label",
        "LocalizedLabels": [
            {
                "@odata.type": f"{ODATA_NS}.LocalizedLabel",
                "Label": text,
                "LanguageCode": language_code,
            }
        ],
    }


def build_options(labels: List[str]) -> List[Dict[str, Any]]:
    """Option metadata with values starting at the customization base."""
    return [
        {"Value": DataverseLimits.OPTION_VALUE_BASE + index, "Label": label(text)}
        for index, text in enumerate(labels)
    ]


# Dataverse type name -> (metadata type, extra payload)
_STRING_FORMATS = {
    "String": ("Text", DataverseLimits.STRING_MAX_LENGTH),
    "Uniqueidentifier": ("Text", 100),
    "Email": ("Email", 100),
    "Phone": ("Phone", 50),
    "Url": ("Url", 200),
    "Ticker": ("TickerSymbol", 10),
}
_INTEGER_FORMATS = {
    "Integer": "None",
    "TimeZone": "TimeZone",
    "Language": "Language",
    "Duration": "Duration",
}
FILE_MAX_SIZE_KB = 32768
MEMO_MAX_LENGTH = 2000


@dataclass
class DataverseAttributeDefinition:
    """
    A column to create on a custom table.

    Attributes:
        schema_name: Schema name including the publisher prefix.
        logical_name: Lowercase logical name.
        display_name: Display label.
        attribute_type: Dataverse type name (String, Integer, Choice, ...).
        required_level: ``None`` or ``ApplicationRequired``.
        description: Optional description label.
        max_length: Override for string lengths.
        precision: Override for numeric precision.
        options: Labels of a local option set (Choice).
        global_choice_name: Bind to a global option set instead of local options.
    """
    schema_name: str
    logical_name: str
    display_name: str
    attribute_type: str = "String"
    required_level: str = "None"
    description: Optional[str] = None
    max_length: Optional[int] = None
    precision: Optional[int] = None
    options: List[str] = field(default_factory=list)
    global_choice_name: Optional[str] = None

    def to_metadata(self) -> Dict[str, Any]:
        """Render the attribute creation payload."""
        payload: Dict[str, Any] = {
            "SchemaName": self.schema_name,
            "DisplayName": label(self.display_name),
            "RequiredLevel": {"Value": self.required_level},
        }
        if self.description:
            payload["Description"] = label(self.description)

        kind = self.attribute_type
        if kind in _STRING_FORMATS:
            format_name, default_length = _STRING_FORMATS[kind]
            payload["@odata.type"] = f"{ODATA_NS}.StringAttributeMetadata"
            payload["MaxLength"] = self.max_length or default_length
            payload["FormatName"] = {"Value": format_name}
        elif kind == "Memo":
            payload["@odata.type"] = f"{ODATA_NS}.MemoAttributeMetadata"
            payload["MaxLength"] = self.max_length or MEMO_MAX_LENGTH
            payload["Format"] = "TextArea"
        elif kind in _INTEGER_FORMATS:
            payload["@odata.type"] = f"{ODATA_NS}.IntegerAttributeMetadata"
            payload["Format"] = _INTEGER_FORMATS[kind]
        elif kind == "Decimal":
            payload["@odata.type"] = f"{ODATA_NS}.DecimalAttributeMetadata"
            payload["Precision"] = self.precision if self.precision is not None else 2
        elif kind == "Money":
            payload["@odata.type"] = f"{ODATA_NS}.MoneyAttributeMetadata"
            payload["Precision"] = self.precision if self.precision is not None else 2
            payload["PrecisionSource"] = 2
        elif kind in ("Double", "Float"):
            payload["@odata.type"] = f"{ODATA_NS}.DoubleAttributeMetadata"
            payload["Precision"] = self.precision if self.precision is not None else 5
        elif kind == "Boolean":
            payload["@odata.type"] = f"{ODATA_NS}.BooleanAttributeMetadata"
            payload["OptionSet"] = {
                "@odata.type": f"{ODATA_NS}.BooleanOptionSetMetadata",
                "TrueOption": {"Value": 1, "Label": label("Yes")},
                "FalseOption": {"Value": 0, "Label": label("No")},
                "OptionSetType": "Boolean",
            }
        elif kind in ("DateTime", "DateOnly"):
            payload["@odata.type"] = f"{ODATA_NS}.DateTimeAttributeMetadata"
            payload["Format"] = "DateOnly" if kind == "DateOnly" else "DateAndTime"
        elif kind == "Choice":
            payload["@odata.type"] = f"{ODATA_NS}.PicklistAttributeMetadata"
            if self.global_choice_name:
                payload["GlobalOptionSet@odata.bind"] = (
                    f"/GlobalOptionSetDefinitions(Name='{self.global_choice_name}')"
                )
            else:
                payload["OptionSet"] = {
                    "@odata.type": f"{ODATA_NS}.OptionSetMetadata",
                    "IsGlobal": False,
                    "OptionSetType": "Picklist",
                    "Options": build_options(self.options),
                }
        elif kind == "Image":
            payload["@odata.type"] = f"{ODATA_NS}.ImageAttributeMetadata"
            payload["MaxSizeInKB"] = FILE_MAX_SIZE_KB
        elif kind == "File":
            payload["@odata.type"] = f"{ODATA_NS}.FileAttributeMetadata"
            payload["MaxSizeInKB"] = FILE_MAX_SIZE_KB
        else:
            raise ValueError(f"Attribute type '{kind}' cannot be created as a column")
        return payload

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "schemaName": self.schema_name,
            "logicalName": self.logical_name,
            "displayName": self.display_name,
            "type": self.attribute_type,
            "requiredLevel": self.required_level,
        }
        if self.options:
            result["options"] = list(self.options)
        if self.global_choice_name:
            result["globalChoice"] = self.global_choice_name
        return result


@dataclass
class DataverseEntityDefinition:
    """
    A custom table (or a reused standard table when ``is_cdm`` is set).

    Example:
        >>> entity = DataverseEntityDefinition(
        ...     schema_name="cr123_Customer",
        ...     logical_name="cr123_customer",
        ...     display_name="Customer",
        ...     display_collection_name="Customers",
        ...     primary_name_schema="cr123_Customer_Name",
        ... )
        >>> entity.to_metadata()["OwnershipType"]
        'UserOwned'
    """
    schema_name: str
    logical_name: str
    display_name: str
    display_collection_name: str
    primary_name_schema: str = ""
    primary_name_display: str = "Name"
    description: Optional[str] = None
    ownership_type: str = "UserOwned"
    attributes: List[DataverseAttributeDefinition] = field(default_factory=list)
    is_cdm: bool = False
    cdm_logical_name: Optional[str] = None
    source_name: str = ""

    @property
    def primary_name_logical(self) -> str:
        return self.primary_name_schema.lower()

    def to_metadata(self) -> Dict[str, Any]:
        """Render the entity creation payload including the primary name column."""
        return {
            "@odata.type": f"{ODATA_NS}.EntityMetadata",
            "SchemaName": self.schema_name,
            "LogicalName": self.logical_name,
            "DisplayName": label(self.display_name),
            "DisplayCollectionName": label(self.display_collection_name),
            "Description": label(self.description or f"Custom entity for {self.display_name}"),
            "OwnershipType": self.ownership_type,
            "HasActivities": False,
            "HasNotes": True,
            "IsActivity": False,
            "Attributes": [
                {
                    "@odata.type": f"{ODATA_NS}.StringAttributeMetadata",
                    "SchemaName": self.primary_name_schema,
                    "DisplayName": label(self.primary_name_display),
                    "RequiredLevel": {"Value": "ApplicationRequired"},
                    "MaxLength": DataverseLimits.PRIMARY_NAME_MAX_LENGTH,
                    "IsPrimaryName": True,
                    "FormatName": {"Value": "Text"},
                }
            ],
        }

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "schemaName": self.schema_name,
            "logicalName": self.logical_name,
            "displayName": self.display_name,
            "isCdm": self.is_cdm,
            "attributes": [attr.to_dict() for attr in self.attributes],
        }
        if self.cdm_logical_name:
            result["cdmLogicalName"] = self.cdm_logical_name
        return result


@dataclass
class DataverseRelationshipDefinition:
    """
    A one-to-many relationship.

    ``referenced_entity`` is the "one" side; ``referencing_entity`` holds
    the lookup column.
    """
    schema_name: str
    referenced_entity: str
    referencing_entity: str
    lookup_schema_name: str
    lookup_display_name: str = "From Reference"
    display_name: str = ""
    is_implicit: bool = False

    @property
    def referenced_attribute(self) -> str:
        return f"{self.referenced_entity}id"

    def to_metadata(self) -> Dict[str, Any]:
        """Render the relationship creation payload."""
        return {
            "@odata.type": f"{ODATA_NS}.OneToManyRelationshipMetadata",
            "SchemaName": self.schema_name,
            "ReferencedEntity": self.referenced_entity,
            "ReferencingEntity": self.referencing_entity,
            "ReferencedAttribute": self.referenced_attribute,
            "ReferencedEntityNavigationPropertyName": self.schema_name,
            "ReferencingEntityNavigationPropertyName": self.lookup_schema_name.lower(),
            "IsValidForAdvancedFind": True,
            "CascadeConfiguration": {
                "Assign": "NoCascade",
                "Delete": "RemoveLink",
                "Merge": "NoCascade",
                "Reparent": "NoCascade",
                "Share": "NoCascade",
                "Unshare": "NoCascade",
            },
            "AssociatedMenuConfiguration": {
                "Behavior": "UseCollectionName",
                "Group": "Details",
                "Order": 10000,
            },
            "Lookup": {
                "@odata.type": f"{ODATA_NS}.LookupAttributeMetadata",
                "SchemaName": self.lookup_schema_name,
                "DisplayName": label(self.lookup_display_name),
                "RequiredLevel": {"Value": "None"},
            },
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaName": self.schema_name,
            "referencedEntity": self.referenced_entity,
            "referencingEntity": self.referencing_entity,
            "lookupSchemaName": self.lookup_schema_name,
            "displayName": self.display_name,
            "isImplicit": self.is_implicit,
        }


@dataclass
class DataverseGlobalChoice:
    """
    A global option set.

    ``is_existing`` marks a choice that already exists in the environment
    and is only added to the solution.
    """
    name: str
    display_name: str
    options: List[str] = field(default_factory=list)
    description: Optional[str] = None
    is_existing: bool = False

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "@odata.type": f"{ODATA_NS}.OptionSetMetadata",
            "Name": self.name,
            "DisplayName": label(self.display_name),
            "Description": label(self.description or self.display_name),
            "IsGlobal": True,
            "OptionSetType": "Picklist",
            "Options": build_options(self.options),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "displayName": self.display_name,
            "options": list(self.options),
            "isExisting": self.is_existing,
        }


@dataclass
class DataverseSchema:
    """Complete schema document for one deployment."""
    publisher_prefix: str
    entities: List[DataverseEntityDefinition] = field(default_factory=list)
    relationships: List[DataverseRelationshipDefinition] = field(default_factory=list)
    global_choices: List[DataverseGlobalChoice] = field(default_factory=list)

    @property
    def custom_entities(self) -> List[DataverseEntityDefinition]:
        return [entity for entity in self.entities if not entity.is_cdm]

    @property
    def cdm_entities(self) -> List[DataverseEntityDefinition]:
        return [entity for entity in self.entities if entity.is_cdm]

    def get_entity(self, logical_name: str) -> Optional[DataverseEntityDefinition]:
        for entity in self.entities:
            if entity.logical_name == logical_name:
                return entity
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "publisherPrefix": self.publisher_prefix,
            "entities": [entity.to_dict() for entity in self.entities],
            "relationships": [rel.to_dict() for rel in self.relationships],
            "globalChoices": [choice.to_dict() for choice in self.global_choices],
        }
