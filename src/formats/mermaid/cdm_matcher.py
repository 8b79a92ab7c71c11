"""
CDM (Common Data Model) entity matcher.

Cross-references parsed ERD entities against known standard Dataverse
entities so the caller can reuse them instead of creating custom tables.

Matching is two-tier:
1. A ``CDMRegistry`` (the built-in registry by default) scores matches by
   name, alias and key-attribute overlap.
2. If the registry raises, an exact case-insensitive match against a fixed
   list of standard entity names is used instead.

Entities are only flagged as CDM when the caller opts in through
``apply_entity_choice``.

Usage:
    from formats.mermaid.cdm_matcher import CDMMatcher, apply_entity_choice

    matcher = CDMMatcher()
    detection = matcher.detect_cdm_entities(parsed.entity_list())
    apply_entity_choice(parsed, detection, "cdm")
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .erd_models import ERDEntity, ParsedERD

logger = logging.getLogger(__name__)


# =============================================================================
# Standard entity catalogue
# =============================================================================

FALLBACK_CDM_ENTITIES = (
    "Account", "Contact", "Lead", "Opportunity", "Case", "Incident",
    "Activity", "Email", "PhoneCall", "Task", "Appointment",
    "User", "Team", "BusinessUnit", "SystemUser",
    "Product", "PriceLevel", "Quote", "Order", "Invoice",
    "Campaign", "MarketingList", "Competitor",
)

COMMON_LOGICAL_NAMES: Dict[str, str] = {
    "case": "incident",
    "user": "systemuser",
    "activity": "activitypointer",
    "order": "salesorder",
    "marketinglist": "list",
}

ALIAS_CONFIDENCE = 0.85
ATTRIBUTE_OVERLAP_BONUS = 0.05


@dataclass(frozen=True)
class CDMEntityInfo:
    """A standard entity known to the registry."""
    logical_name: str
    display_name: str
    description: str
    key_attributes: Sequence[str] = ()
    aliases: Sequence[str] = ()


BUILTIN_CDM_ENTITIES: List[CDMEntityInfo] = [
    CDMEntityInfo("account", "Account", "Business that represents a customer or potential customer.",
                  ("accountid", "name", "accountnumber", "primarycontactid", "telephone1", "emailaddress1"),
                  ("Customer", "Company", "Organization")),
    CDMEntityInfo("contact", "Contact", "Person with whom a business unit has a relationship.",
                  ("contactid", "fullname", "firstname", "lastname", "emailaddress1", "telephone1"),
                  ("Person", "Individual")),
    CDMEntityInfo("lead", "Lead", "Prospect or potential customer for products or services.",
                  ("leadid", "fullname", "companyname", "subject"),
                  ("Prospect",)),
    CDMEntityInfo("opportunity", "Opportunity", "Potential revenue-generating event.",
                  ("opportunityid", "name", "estimatedvalue", "estimatedclosedate"),
                  ("Deal", "Sale")),
    CDMEntityInfo("incident", "Case", "Service request case associated with a contract.",
                  ("incidentid", "title", "ticketnumber", "customerid"),
                  ("Case", "Ticket", "Incident")),
    CDMEntityInfo("activitypointer", "Activity", "Task performed, or to be performed, by a user.",
                  ("activityid", "subject", "scheduledstart", "scheduledend"),
                  ("Activity",)),
    CDMEntityInfo("email", "Email", "Activity that is delivered using email protocols.",
                  ("activityid", "subject", "sender", "torecipients"),
                  ()),
    CDMEntityInfo("phonecall", "Phone Call", "Activity to track a telephone call.",
                  ("activityid", "subject", "phonenumber", "directioncode"),
                  ("PhoneCall", "Call")),
    CDMEntityInfo("task", "Task", "Generic activity representing work to be done.",
                  ("activityid", "subject", "scheduledend", "prioritycode"),
                  ("Todo",)),
    CDMEntityInfo("appointment", "Appointment", "Commitment representing a time interval.",
                  ("activityid", "subject", "scheduledstart", "scheduledend", "location"),
                  ("Meeting",)),
    CDMEntityInfo("systemuser", "User", "Person with access to the system.",
                  ("systemuserid", "fullname", "domainname", "internalemailaddress"),
                  ("User", "Employee", "SystemUser")),
    CDMEntityInfo("team", "Team", "Collection of system users that routinely collaborate.",
                  ("teamid", "name", "teamtype"),
                  ("Group",)),
    CDMEntityInfo("businessunit", "Business Unit", "Business, division, or department.",
                  ("businessunitid", "name", "parentbusinessunitid"),
                  ("BusinessUnit", "Department", "Division")),
    CDMEntityInfo("product", "Product", "Information about products and their pricing.",
                  ("productid", "name", "productnumber", "price"),
                  ("Item",)),
    CDMEntityInfo("pricelevel", "Price List", "Entity that defines pricing levels.",
                  ("pricelevelid", "name", "begindate", "enddate"),
                  ("PriceLevel", "PriceList")),
    CDMEntityInfo("quote", "Quote", "Formal offer for products and/or services.",
                  ("quoteid", "name", "quotenumber", "totalamount"),
                  ("Quotation",)),
    CDMEntityInfo("salesorder", "Order", "Quote that has been accepted.",
                  ("salesorderid", "name", "ordernumber", "totalamount"),
                  ("Order", "SalesOrder", "PurchaseOrder")),
    CDMEntityInfo("invoice", "Invoice", "Order that has been billed.",
                  ("invoiceid", "name", "invoicenumber", "totalamount"),
                  ("Bill",)),
    CDMEntityInfo("campaign", "Campaign", "Container for campaign activities and responses.",
                  ("campaignid", "name", "codename", "budgetedcost"),
                  ()),
    CDMEntityInfo("list", "Marketing List", "Group of existing or potential customers.",
                  ("listid", "listname", "membertype"),
                  ("MarketingList",)),
    CDMEntityInfo("competitor", "Competitor", "Business competing for the sale.",
                  ("competitorid", "name", "websiteurl"),
                  ("Rival",)),
]


# =============================================================================
# Match results
# =============================================================================

@dataclass
class CDMMatch:
    """One ERD entity matched to a standard entity."""
    entity_name: str
    logical_name: str
    display_name: str
    match_type: str = "exact"
    confidence: float = 1.0
    match_reasons: List[str] = field(default_factory=list)
    description: str = ""
    key_attributes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "originalEntity": {"name": self.entity_name},
            "cdmEntity": {
                "logicalName": self.logical_name,
                "displayName": self.display_name,
                "description": self.description,
                "keyAttributes": list(self.key_attributes),
            },
            "matchType": self.match_type,
            "confidence": round(self.confidence, 2),
            "matchReasons": list(self.match_reasons),
        }


@dataclass
class CDMDetectionResult:
    """Matches plus recommendations for one set of entities."""
    matches: List[CDMMatch] = field(default_factory=list)
    recommendations: List[Dict[str, Any]] = field(default_factory=list)
    total_entities: int = 0
    source: str = "registry"

    @property
    def matched_names(self) -> List[str]:
        return [match.entity_name for match in self.matches]

    def get_match(self, entity_name: str) -> Optional[CDMMatch]:
        for match in self.matches:
            if match.entity_name == entity_name:
                return match
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matches": [match.to_dict() for match in self.matches],
            "recommendations": list(self.recommendations),
            "summary": {
                "totalEntities": self.total_entities,
                "cdmMatches": len(self.matches),
                "customEntities": self.total_entities - len(self.matches),
            },
        }


class CDMRegistry(Protocol):
    """Pluggable registry of standard entities."""

    def detect_cdm_entities(self, entities: Sequence[ERDEntity]) -> List[CDMMatch]:
        ...


class BuiltinCDMRegistry:
    """
    Registry backed by ``BUILTIN_CDM_ENTITIES``.

    Exact name (display or logical) scores 1.0, an alias scores 0.85. Each
    attribute that overlaps the standard key attributes adds a small bonus,
    capped at 1.0.
    """

    def __init__(self, entities: Optional[Sequence[CDMEntityInfo]] = None):
        self._entities = list(entities if entities is not None else BUILTIN_CDM_ENTITIES)

    def find(self, name: str) -> Optional[tuple]:
        lowered = name.lower()
        for info in self._entities:
            if lowered in (info.logical_name, info.display_name.lower().replace(" ", "")):
                return info, "exact"
        for info in self._entities:
            if any(alias.lower() == lowered for alias in info.aliases):
                return info, "fuzzy"
        return None

    def detect_cdm_entities(self, entities: Sequence[ERDEntity]) -> List[CDMMatch]:
        matches: List[CDMMatch] = []
        for entity in entities:
            found = self.find(entity.name)
            if found is None:
                continue
            info, match_type = found
            confidence = 1.0 if match_type == "exact" else ALIAS_CONFIDENCE
            reasons = ["Exact name match" if match_type == "exact" else "Alias match"]

            overlap = [
                attr.name for attr in entity.attributes
                if attr.name.lower() in info.key_attributes
            ]
            if overlap:
                confidence = min(1.0, confidence + ATTRIBUTE_OVERLAP_BONUS * len(overlap))
                reasons.append(f"Attribute overlap: {', '.join(overlap)}")

            matches.append(CDMMatch(
                entity_name=entity.name,
                logical_name=info.logical_name,
                display_name=info.display_name,
                match_type=match_type,
                confidence=confidence,
                match_reasons=reasons,
                description=info.description,
                key_attributes=list(info.key_attributes),
            ))
        return matches


def resolve_logical_name(name: str) -> str:
    """Map a standard entity name to its Dataverse logical name."""
    lowered = name.lower()
    return COMMON_LOGICAL_NAMES.get(lowered, lowered)


class CDMMatcher:
    """
    Detect standard entities in a parsed ERD.

    Example:
        >>> matcher = CDMMatcher()
        >>> result = matcher.detect_cdm_entities([ERDEntity(name="Contact")])
        >>> result.matches[0].logical_name
        'contact'
    """

    def __init__(self, registry: Optional[CDMRegistry] = None):
        self._registry: Optional[CDMRegistry] = registry if registry is not None else BuiltinCDMRegistry()

    def detect_cdm_entities(self, entities: Sequence[ERDEntity]) -> CDMDetectionResult:
        entities = list(entities)
        matches: Optional[List[CDMMatch]] = None
        source = "registry"

        if self._registry is not None:
            try:
                matches = list(self._registry.detect_cdm_entities(entities))
            except Exception as e:
                logger.warning(f"CDM registry unavailable, using basic detection: {e}")

        if matches is None:
            matches = self._detect_basic(entities)
            source = "basic"

        recommendations = [
            {
                "entity": match.entity_name,
                "cdmEntity": match.logical_name,
                "recommendation": (
                    f"Consider using the standard '{match.display_name}' entity "
                    f"instead of creating '{match.entity_name}'"
                ),
            }
            for match in matches
        ]
        logger.debug(f"CDM detection ({source}): {len(matches)} of {len(entities)} entities matched")
        return CDMDetectionResult(
            matches=matches,
            recommendations=recommendations,
            total_entities=len(entities),
            source=source,
        )

    @staticmethod
    def _detect_basic(entities: Sequence[ERDEntity]) -> List[CDMMatch]:
        known = {name.lower(): name for name in FALLBACK_CDM_ENTITIES}
        matches = []
        for entity in entities:
            standard = known.get(entity.name.lower())
            if standard is None:
                continue
            matches.append(CDMMatch(
                entity_name=entity.name,
                logical_name=resolve_logical_name(standard),
                display_name=standard,
                match_type="exact",
                confidence=1.0,
                match_reasons=["Exact name match"],
                description=f"Standard {standard} entity with built-in attributes and relationships",
            ))
        return matches


def apply_entity_choice(parsed: ParsedERD, detection: CDMDetectionResult, choice: Optional[str]) -> None:
    """
    Flag matched entities as CDM when ``choice`` is ``'cdm'``.

    Any other choice (including None) leaves every entity custom.
    """
    matched = set(detection.matched_names) if choice == "cdm" else set()
    for entity in parsed.entities.values():
        entity.is_cdm = entity.name in matched
