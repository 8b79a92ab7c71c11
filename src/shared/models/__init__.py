"""
Shared data models for the Dataverse schema document.

This module contains the data classes produced by the ERD converter and
consumed by the deployment orchestrator.

Usage:
    from shared.models import DataverseSchema, DataverseEntityDefinition

    # Or import specific classes
    from shared.models.dataverse_types import DataverseRelationshipDefinition, label
"""

from .dataverse_types import (
    DataverseAttributeDefinition,
    DataverseEntityDefinition,
    DataverseGlobalChoice,
    DataverseRelationshipDefinition,
    DataverseSchema,
    label,
)

__all__ = [
    "DataverseAttributeDefinition",
    "DataverseEntityDefinition",
    "DataverseGlobalChoice",
    "DataverseRelationshipDefinition",
    "DataverseSchema",
    "label",
]
