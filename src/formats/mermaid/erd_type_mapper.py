"""
Mermaid ERD Type Mapper.

This module maps Mermaid ERD type tokens to Dataverse attribute types.

Mermaid ERD type tokens are free-form identifiers. The mapper resolves them
in two layers:
- Literal token mapping (string, int, decimal, money, datetime, ...)
- Semantic heuristics on the attribute name, applied only when the literal
  mapping produced a plain String (e.g. ``string contact_email`` -> Email)

Composite tokens ``choice(a,b,c)`` and ``lookup(Target)`` resolve to
Choice and Lookup respectively.

Usage:
    from formats.mermaid.erd_type_mapper import ERDTypeMapper, DataverseType

    mapper = ERDTypeMapper()
    result = mapper.map_type("string", "customer_email")
    print(result.dataverse_type)  # DataverseType.EMAIL
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class DataverseType(str, Enum):
    """Dataverse attribute types supported by the converter."""
    STRING = "String"
    INTEGER = "Integer"
    DECIMAL = "Decimal"
    MONEY = "Money"
    BOOLEAN = "Boolean"
    DATETIME = "DateTime"
    DATEONLY = "DateOnly"
    MEMO = "Memo"
    UNIQUEIDENTIFIER = "Uniqueidentifier"
    CHOICE = "Choice"
    LOOKUP = "Lookup"
    EMAIL = "Email"
    PHONE = "Phone"
    URL = "Url"
    TICKER = "Ticker"
    TIMEZONE = "TimeZone"
    LANGUAGE = "Language"
    DURATION = "Duration"
    FLOAT = "Float"
    DOUBLE = "Double"
    FILE = "File"
    IMAGE = "Image"

    def __str__(self) -> str:
        return self.value


# =============================================================================
# Literal Token Mappings
# =============================================================================

ERD_TYPE_MAPPINGS: Dict[str, DataverseType] = {
    "string": DataverseType.STRING,
    "int": DataverseType.INTEGER,
    "integer": DataverseType.INTEGER,
    "decimal": DataverseType.DECIMAL,
    "money": DataverseType.MONEY,
    "currency": DataverseType.MONEY,
    "boolean": DataverseType.BOOLEAN,
    "bool": DataverseType.BOOLEAN,
    "datetime": DataverseType.DATETIME,
    "date": DataverseType.DATETIME,
    "dateonly": DataverseType.DATEONLY,
    "text": DataverseType.MEMO,
    "memo": DataverseType.MEMO,
    "guid": DataverseType.UNIQUEIDENTIFIER,
    "uniqueidentifier": DataverseType.UNIQUEIDENTIFIER,
    "email": DataverseType.EMAIL,
    "phone": DataverseType.PHONE,
    "url": DataverseType.URL,
    "ticker": DataverseType.TICKER,
    "timezone": DataverseType.TIMEZONE,
    "language": DataverseType.LANGUAGE,
    "duration": DataverseType.DURATION,
    "float": DataverseType.FLOAT,
    "double": DataverseType.DOUBLE,
    "file": DataverseType.FILE,
    "image": DataverseType.IMAGE,
}

DEFAULT_DATAVERSE_TYPE = DataverseType.STRING

# Web API AttributeType values rendered back as ERD tokens; anything else is "string"
ATTRIBUTE_TYPE_TOKENS: Dict[str, str] = {
    "String": "string",
    "Memo": "text",
    "Integer": "int",
    "BigInt": "int",
    "Decimal": "decimal",
    "Double": "double",
    "Money": "money",
    "Boolean": "boolean",
    "DateTime": "datetime",
    "Uniqueidentifier": "guid",
    "Image": "image",
    "File": "file",
}


# =============================================================================
# Semantic Name Heuristics
# =============================================================================

EMAIL_NAME_HINTS = ("email",)
PHONE_NAME_HINTS = ("phone", "mobile", "tel")
URL_NAME_HINTS = ("url", "website", "link")

DATE_ONLY_NAMES = frozenset({
    "birthdate", "dateofbirth", "startdate", "enddate", "duedate",
    "orderdate", "deliverydate", "createddate", "modifieddate",
})

CHOICE_PATTERN = re.compile(r'^choice\((.*)\)$', re.IGNORECASE)
LOOKUP_PATTERN = re.compile(r'^lookup\((.*)\)$', re.IGNORECASE)


@dataclass
class TypeMappingResult:
    """
    Result of mapping an ERD type token.

    Attributes:
        dataverse_type: The resolved Dataverse type.
        original_type: The raw token as written in the diagram.
        is_exact_match: Whether the literal token was recognised.
        is_semantic: Whether a name heuristic changed the type.
        choice_options: Options for Choice types.
        target_entity: Target for Lookup types.
        warning: Message when the token was malformed or unknown.
    """
    dataverse_type: DataverseType
    original_type: str
    is_exact_match: bool = True
    is_semantic: bool = False
    choice_options: List[str] = field(default_factory=list)
    target_entity: Optional[str] = None
    warning: Optional[str] = None


def format_display_name(name: str) -> str:
    """Turn ``customer_first-name`` into ``Customer First Name``."""
    if not name:
        return ""
    spaced = re.sub(r'[_-]+', ' ', name.lower()).strip()
    return ' '.join(word.capitalize() for word in spaced.split())


class ERDTypeMapper:
    """
    Maps Mermaid ERD type tokens to Dataverse attribute types.

    Example:
        >>> mapper = ERDTypeMapper()
        >>> mapper.map_type("choice(Active,Inactive)", "state").choice_options
        ['Active', 'Inactive']
        >>> mapper.map_type("date", "birthdate").dataverse_type
        <DataverseType.DATEONLY: 'DateOnly'>
    """

    def __init__(self) -> None:
        self._mappings = dict(ERD_TYPE_MAPPINGS)

    def map_type(self, type_token: str, attribute_name: str = "") -> TypeMappingResult:
        """
        Resolve a type token for the given attribute name.

        Args:
            type_token: Raw token, e.g. ``string``, ``choice(a,b)``, ``lookup(Account)``.
            attribute_name: Attribute name used by the semantic heuristics.

        Returns:
            TypeMappingResult with the resolved type.
        """
        token = (type_token or "").strip()

        composite = self._map_composite(token)
        if composite is not None:
            return composite

        token_lower = token.lower()
        mapped = self._mappings.get(token_lower)
        if mapped is None:
            logger.debug(f"Unknown ERD type '{token}', defaulting to String")
            result = TypeMappingResult(
                dataverse_type=DEFAULT_DATAVERSE_TYPE,
                original_type=token,
                is_exact_match=False,
                warning=f"Unknown type '{token}' defaulted to String",
            )
        else:
            result = TypeMappingResult(dataverse_type=mapped, original_type=token)

        return self._apply_name_heuristics(result, token_lower, attribute_name)

    def _map_composite(self, token: str) -> Optional[TypeMappingResult]:
        lowered = token.lower()
        if lowered.startswith("choice("):
            match = CHOICE_PATTERN.match(token)
            options = []
            if match:
                options = [opt.strip() for opt in match.group(1).split(',') if opt.strip()]
            if not options:
                return TypeMappingResult(
                    dataverse_type=DataverseType.STRING,
                    original_type=token,
                    is_exact_match=False,
                    warning=f"Malformed choice type '{token}' treated as String",
                )
            return TypeMappingResult(
                dataverse_type=DataverseType.CHOICE,
                original_type=token,
                choice_options=options,
            )

        if lowered.startswith("lookup("):
            match = LOOKUP_PATTERN.match(token)
            target = match.group(1).strip() if match else ""
            if not target or not re.match(r'^\w+$', target):
                return TypeMappingResult(
                    dataverse_type=DataverseType.STRING,
                    original_type=token,
                    is_exact_match=False,
                    warning=f"Malformed lookup type '{token}' treated as String",
                )
            return TypeMappingResult(
                dataverse_type=DataverseType.LOOKUP,
                original_type=token,
                target_entity=target,
            )

        return None

    def _apply_name_heuristics(
        self,
        result: TypeMappingResult,
        token_lower: str,
        attribute_name: str,
    ) -> TypeMappingResult:
        name = (attribute_name or "").lower()
        if not name:
            return result

        if name in DATE_ONLY_NAMES and (
            token_lower == "date" or result.dataverse_type == DataverseType.DATETIME
        ):
            result.dataverse_type = DataverseType.DATEONLY
            result.is_semantic = True
            return result

        if result.dataverse_type != DataverseType.STRING:
            return result

        if any(hint in name for hint in EMAIL_NAME_HINTS):
            result.dataverse_type = DataverseType.EMAIL
        elif any(hint in name for hint in PHONE_NAME_HINTS):
            result.dataverse_type = DataverseType.PHONE
        elif any(hint in name for hint in URL_NAME_HINTS):
            result.dataverse_type = DataverseType.URL
        else:
            return result

        result.is_semantic = True
        return result

    def is_supported_type(self, type_token: str) -> bool:
        """Check whether a token maps without falling back to the default."""
        token = (type_token or "").strip().lower()
        if token.startswith("choice(") or token.startswith("lookup("):
            return self._map_composite(type_token.strip()) is not None
        return token in self._mappings

    def get_all_mappings(self) -> Dict[str, str]:
        """Return the literal token table as plain strings."""
        return {token: dv_type.value for token, dv_type in self._mappings.items()}
