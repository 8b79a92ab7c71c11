"""
Deployment data models.

Records persisted by the history store, the options and settings a
deployment runs with, and the result it returns. Every ``to_dict`` emits
camelCase keys; ``from_dict`` accepts what ``to_dict`` produced.
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from constants import DeploymentDefaults


class DeploymentStatus(str, Enum):
    """Lifecycle status of a recorded deployment."""
    PENDING = "pending"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    MODIFIED = "modified"
    ROLLED_BACK = "rolled-back"


def generate_deployment_id() -> str:
    """``deploy_{epoch_ms}_{hex8}``"""
    return f"deploy_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def generate_rollback_id() -> str:
    """``rollback_{epoch_ms}_{hex9}``"""
    return f"rollback_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Settings and options
# =============================================================================

@dataclass
class DeploymentSettings:
    """Concurrency, retry and readiness tuning for the orchestrator."""
    entity_batch_size: int = DeploymentDefaults.ENTITY_BATCH_SIZE
    relationship_batch_size: int = DeploymentDefaults.RELATIONSHIP_BATCH_SIZE
    max_retries: int = DeploymentDefaults.MAX_RETRIES
    attribute_batch_retries: int = DeploymentDefaults.ATTRIBUTE_BATCH_RETRIES
    solution_link_retries: int = DeploymentDefaults.SOLUTION_LINK_RETRIES
    base_delay: float = DeploymentDefaults.BASE_DELAY_SECONDS
    max_delay: float = DeploymentDefaults.MAX_DELAY_SECONDS
    jitter: float = DeploymentDefaults.JITTER_SECONDS
    poll_interval: float = DeploymentDefaults.POLL_INTERVAL_SECONDS
    ready_timeout: float = DeploymentDefaults.READY_TIMEOUT_SECONDS
    entity_settle_delay: float = DeploymentDefaults.ENTITY_SETTLE_SECONDS
    relationship_wait: float = DeploymentDefaults.RELATIONSHIP_WAIT_SECONDS
    attribute_settle_delay: float = DeploymentDefaults.ATTRIBUTE_SETTLE_SECONDS

    @classmethod
    def from_dict(cls, config_dict: Optional[Dict[str, Any]]) -> 'DeploymentSettings':
        """Read the ``deployment`` section; missing keys keep their defaults."""
        config_dict = config_dict or {}
        section = config_dict.get('deployment', config_dict)
        settings = cls()
        for name in settings.__dataclass_fields__:
            if name in section and section[name] is not None:
                current = getattr(settings, name)
                setattr(settings, name, type(current)(section[name]))
        if settings.entity_batch_size < 1 or settings.relationship_batch_size < 1:
            raise ValueError("Batch sizes must be at least 1")
        if settings.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        return settings


@dataclass
class DeploymentOptions:
    """Caller-supplied deployment parameters."""
    solution_name: str
    publisher_prefix: str
    publisher_name: str = DeploymentDefaults.DEFAULT_PUBLISHER_NAME
    solution_display_name: Optional[str] = None
    publisher_unique_name: Optional[str] = None
    description: str = ""
    include_relationships: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeploymentOptions':
        solution_name = data.get('solutionName') or data.get('solution_name') or ""
        prefix = data.get('publisherPrefix') or data.get('publisher_prefix') or ""
        if not solution_name:
            raise ValueError("solutionName is required")
        if not prefix:
            raise ValueError("publisherPrefix is required")
        return cls(
            solution_name=solution_name,
            publisher_prefix=prefix.lower(),
            publisher_name=data.get('publisherName') or DeploymentDefaults.DEFAULT_PUBLISHER_NAME,
            solution_display_name=data.get('solutionDisplayName'),
            publisher_unique_name=data.get('publisherUniqueName'),
            description=data.get('description', ""),
            include_relationships=bool(data.get('includeRelationships', True)),
        )


# =============================================================================
# Record
# =============================================================================

@dataclass
class SolutionInfo:
    solution_id: Optional[str] = None
    solution_name: Optional[str] = None
    publisher_id: Optional[str] = None
    publisher_name: Optional[str] = None
    publisher_prefix: Optional[str] = None
    solution_created: bool = False
    publisher_created: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "solutionId": self.solution_id,
            "solutionName": self.solution_name,
            "publisherId": self.publisher_id,
            "publisherName": self.publisher_name,
            "publisherPrefix": self.publisher_prefix,
            "solutionCreated": self.solution_created,
            "publisherCreated": self.publisher_created,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SolutionInfo':
        data = data or {}
        return cls(
            solution_id=data.get('solutionId'),
            solution_name=data.get('solutionName'),
            publisher_id=data.get('publisherId'),
            publisher_name=data.get('publisherName'),
            publisher_prefix=data.get('publisherPrefix'),
            solution_created=bool(data.get('solutionCreated', False)),
            publisher_created=bool(data.get('publisherCreated', False)),
        )


@dataclass
class RollbackData:
    """Components a deployment created, each list in creation order."""
    relationships: List[Dict[str, Any]] = field(default_factory=list)
    custom_entities: List[Dict[str, Any]] = field(default_factory=list)
    cdm_entities: List[Dict[str, Any]] = field(default_factory=list)
    global_choices_created: List[Dict[str, Any]] = field(default_factory=list)
    global_choices_added: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.relationships or self.custom_entities or self.cdm_entities
                    or self.global_choices_created or self.global_choices_added)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "relationships": list(self.relationships),
            "customEntities": list(self.custom_entities),
            "cdmEntities": list(self.cdm_entities),
            "globalChoicesCreated": list(self.global_choices_created),
            "globalChoicesAdded": list(self.global_choices_added),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['RollbackData']:
        if data is None:
            return None
        return cls(
            relationships=list(data.get('relationships', [])),
            custom_entities=list(data.get('customEntities', [])),
            cdm_entities=list(data.get('cdmEntities', [])),
            global_choices_created=list(data.get('globalChoicesCreated', [])),
            global_choices_added=list(data.get('globalChoicesAdded', [])),
        )


@dataclass
class DeploymentRecord:
    """One deployment as persisted by the history store."""
    deployment_id: str
    status: DeploymentStatus
    environment_suffix: str = "default"
    environment_url: Optional[str] = None
    erd_content: str = ""
    timestamp: str = field(default_factory=utc_now)
    solution_info: SolutionInfo = field(default_factory=SolutionInfo)
    rollback_data: Optional[RollbackData] = None
    summary: Dict[str, Any] = field(default_factory=dict)
    rollback_info: Dict[str, Any] = field(default_factory=lambda: {"rollbacks": []})
    rollback_eligible: bool = True
    duration: Optional[float] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None

    @property
    def rollbacks(self) -> List[Dict[str, Any]]:
        return self.rollback_info.setdefault("rollbacks", [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deploymentId": self.deployment_id,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "environmentSuffix": self.environment_suffix,
            "environmentUrl": self.environment_url,
            "erdContent": self.erd_content,
            "solutionInfo": self.solution_info.to_dict(),
            "rollbackData": self.rollback_data.to_dict() if self.rollback_data else None,
            "summary": self.summary,
            "rollbackInfo": self.rollback_info,
            "rollbackEligible": self.rollback_eligible,
            "duration": self.duration,
            "completedAt": self.completed_at,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeploymentRecord':
        return cls(
            deployment_id=data['deploymentId'],
            status=DeploymentStatus(data.get('status', 'pending')),
            environment_suffix=data.get('environmentSuffix', 'default'),
            environment_url=data.get('environmentUrl'),
            erd_content=data.get('erdContent', ''),
            timestamp=data.get('timestamp') or utc_now(),
            solution_info=SolutionInfo.from_dict(data.get('solutionInfo')),
            rollback_data=RollbackData.from_dict(data.get('rollbackData')),
            summary=data.get('summary') or {},
            rollback_info=data.get('rollbackInfo') or {"rollbacks": []},
            rollback_eligible=bool(data.get('rollbackEligible', True)),
            duration=data.get('duration'),
            completed_at=data.get('completedAt'),
            error=data.get('error'),
        )


# =============================================================================
# Result
# =============================================================================

@dataclass
class DeploymentResult:
    """Outcome of one orchestrated deployment."""
    deployment_id: str
    success: bool = False
    entities_created: int = 0
    entities_skipped: int = 0
    relationships_created: int = 0
    relationships_failed: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    created: Dict[str, List[Dict[str, Any]]] = field(
        default_factory=lambda: {"entities": [], "relationships": [], "global_choices": []}
    )
    cdm_entities: List[Dict[str, Any]] = field(default_factory=list)
    global_choices_added: List[Dict[str, Any]] = field(default_factory=list)
    solution_info: SolutionInfo = field(default_factory=SolutionInfo)
    performance: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def status(self) -> DeploymentStatus:
        if not self.success:
            return DeploymentStatus.FAILED
        return DeploymentStatus.PARTIAL if self.errors else DeploymentStatus.SUCCESS

    def rollback_data(self) -> RollbackData:
        return RollbackData(
            relationships=list(self.created["relationships"]),
            custom_entities=list(self.created["entities"]),
            cdm_entities=list(self.cdm_entities),
            global_choices_created=list(self.created["global_choices"]),
            global_choices_added=list(self.global_choices_added),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "deploymentId": self.deployment_id,
            "status": self.status.value,
            "entitiesCreated": self.entities_created,
            "entitiesSkipped": self.entities_skipped,
            "relationshipsCreated": self.relationships_created,
            "relationshipsFailed": self.relationships_failed,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "created": {
                "entities": list(self.created["entities"]),
                "relationships": list(self.created["relationships"]),
                "globalChoices": list(self.created["global_choices"]),
            },
            "solutionInfo": self.solution_info.to_dict(),
            "performance": dict(self.performance),
            "cancelled": self.cancelled,
        }
