"""
Deployment package: orchestration, history, rollback and status tracking.

Usage:
    from core.deployment import DeploymentOrchestrator, DeploymentHistoryStore, RollbackEngine
"""

from .models import (
    DeploymentOptions,
    DeploymentRecord,
    DeploymentResult,
    DeploymentSettings,
    DeploymentStatus,
    RollbackData,
    SolutionInfo,
    generate_deployment_id,
    generate_rollback_id,
)

from .retry import retry_with_backoff

from .orchestrator import (
    DeploymentOrchestrator,
    DeploymentState,
    DeploymentStateMachine,
    InvalidStateTransition,
)

from .history import DeploymentHistoryStore, DeploymentNotFoundError

from .status_tracker import RollbackStatusTracker

from .rollback import RollbackCapability, RollbackEngine, RollbackError, RollbackOptions

from .service import DeploymentService

__all__ = [
    # Models
    'DeploymentOptions',
    'DeploymentRecord',
    'DeploymentResult',
    'DeploymentSettings',
    'DeploymentStatus',
    'RollbackData',
    'SolutionInfo',
    'generate_deployment_id',
    'generate_rollback_id',
    # Orchestration
    'retry_with_backoff',
    'DeploymentOrchestrator',
    'DeploymentState',
    'DeploymentStateMachine',
    'InvalidStateTransition',
    'DeploymentService',
    # History and rollback
    'DeploymentHistoryStore',
    'DeploymentNotFoundError',
    'RollbackStatusTracker',
    'RollbackCapability',
    'RollbackEngine',
    'RollbackError',
    'RollbackOptions',
]
