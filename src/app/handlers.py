"""
Request handlers for the ERD validation, deployment, rollback and history
endpoints.

Each public method takes the decoded request (a dict, or raw JSON text for
the POST endpoints) and returns an ``ApiResponse``. The handlers are
transport-agnostic; any HTTP framework can route to them.

Routes:
    POST /api/validate-erd                       -> validate_erd
    POST /api/validation/bulk-fix                -> bulk_fix
    POST /api/validation/fix-warning             -> fix_warning
    POST /upload                                 -> deploy
    GET  /api/rollback/{deploymentId}/can-rollback -> can_rollback
    POST /api/rollback/{deploymentId}/execute    -> execute_rollback
    GET  /api/rollback/{rollbackId}/status       -> rollback_status
    GET  /api/deployments/history                -> deployment_history
    GET  /api/deployments/{id}/details           -> deployment_details
    GET  /api/deployments/compare?from=&to=      -> compare_deployments
    POST /api/import/dataverse-solution          -> import_dataverse_solution
    POST /api/cross-environment/compare          -> compare_environments

Usage:
    from app.handlers import ApiHandlers

    handlers = ApiHandlers(config=DataverseConfig.from_file("config.json"))
    response = handlers.validate_erd({"mermaidContent": content})
    print(response.status_code, response.body["summary"])
"""

import asyncio
import json
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Union

from constants import HistoryConfig
from core.cancellation import CancellationRegistry
from core.client_cache import ClientCache
from core.dataverse_client import DataverseAPIError, DataverseClient, DataverseConfig
from core.deployment import (
    DeploymentHistoryStore,
    DeploymentNotFoundError,
    DeploymentOptions,
    DeploymentRecord,
    DeploymentService,
    DeploymentSettings,
    RollbackEngine,
    RollbackError,
    RollbackOptions,
)
from core.solution_extractor import SolutionExtractor, SolutionNotFoundError, compare_environments
from core.validators import InputValidator, ValidationRateLimiter
from formats.mermaid import ERDValidationService

from .responses import ApiResponse, error_response, json_response, ndjson_response

logger = logging.getLogger(__name__)

RequestBody = Union[str, bytes, Dict[str, Any], None]


class BadRequest(ValueError):
    """Malformed or incomplete request."""


def parse_body(body: RequestBody) -> Dict[str, Any]:
    """Decode a request body into a dict, raising BadRequest when malformed."""
    if body is None:
        return {}
    if isinstance(body, dict):
        return body
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise BadRequest(f"Malformed JSON: {e}") from e
    if not isinstance(data, dict):
        raise BadRequest("Request body must be a JSON object")
    return data


def require_content(data: Dict[str, Any]) -> str:
    content = data.get("mermaidContent")
    if not isinstance(content, str) or not content.strip():
        raise BadRequest("mermaidContent is required")
    return content


class ApiHandlers:
    """
    Endpoint implementations.

    Args:
        config: Default Dataverse environment. Deploy requests may target
            another URL through ``targetEnvironment.url``.
        history: Deployment history store.
        settings: Deployment tuning.
        client_cache: Shared Dataverse client cache.
        validation_service: ERD validation service.
        rate_limiter: Admission control for ``validate_erd``.
        rollback_engine: Engine used by the rollback endpoints.
        sleep: Async sleep injected into deployments (tests pass a no-op).
    """

    def __init__(
        self,
        config: Optional[DataverseConfig] = None,
        history: Optional[DeploymentHistoryStore] = None,
        settings: Optional[DeploymentSettings] = None,
        client_cache: Optional[ClientCache] = None,
        validation_service: Optional[ERDValidationService] = None,
        rate_limiter: Optional[ValidationRateLimiter] = None,
        rollback_engine: Optional[RollbackEngine] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.config = config
        self.history = history if history is not None else DeploymentHistoryStore()
        self.settings = settings if settings is not None else DeploymentSettings()
        self.client_cache = client_cache if client_cache is not None else ClientCache()
        self.validation_service = validation_service if validation_service is not None else ERDValidationService()
        self.rate_limiter = rate_limiter if rate_limiter is not None else ValidationRateLimiter()
        self.cancellation = CancellationRegistry()
        if rollback_engine is None:
            rollback_engine = RollbackEngine(self.history, self._client_for_record)
        self.rollback_engine = rollback_engine
        self._sleep = sleep

    # =========================================================================
    # Client resolution
    # =========================================================================

    def _client_for_url(self, server_url: Optional[str] = None) -> DataverseClient:
        if self.config is None:
            raise BadRequest("No Dataverse environment is configured")
        config = self.config
        if server_url and server_url.rstrip('/') != config.server_url.rstrip('/'):
            config = replace(config, server_url=server_url)
        return self.client_cache.get_or_create(config)

    def _client_for_record(self, record: DeploymentRecord) -> DataverseClient:
        return self._client_for_url(record.environment_url or None)

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_erd(self, body: RequestBody) -> ApiResponse:
        try:
            data = parse_body(body)
            content = require_content(data)
        except BadRequest as e:
            return error_response(400, str(e))

        context = self.rate_limiter.validation_context().check(content)
        if not context.allowed:
            return error_response(429, context.reason)

        with context:
            try:
                result = self.validation_service.validate_erd(content, data.get("options") or {})
            except ValueError as e:
                return error_response(400, str(e))

        return json_response(result, 200 if result["success"] else 422)

    def bulk_fix(self, body: RequestBody) -> ApiResponse:
        try:
            data = parse_body(body)
            content = require_content(data)
            options = data.get("options") or {}
            warnings = data.get("warnings")
            if warnings is None:
                warnings = self.validation_service.parse_and_validate(content, options).warnings
            result = self.validation_service.bulk_fix(
                content, warnings, data.get("fixTypes") or "all", options,
            )
        except (BadRequest, ValueError) as e:
            return error_response(400, str(e))
        return json_response(result.to_dict())

    def fix_warning(self, body: RequestBody) -> ApiResponse:
        try:
            data = parse_body(body)
            content = require_content(data)
            warning_id = data.get("warningId")
            if not warning_id:
                raise BadRequest("warningId is required")
            result = self.validation_service.fix_warning(content, warning_id, data.get("options") or {})
        except (BadRequest, ValueError) as e:
            return error_response(400, str(e))
        return json_response(result.to_dict())

    # =========================================================================
    # Deployment
    # =========================================================================

    def deploy(self, body: RequestBody) -> ApiResponse:
        """
        Deploy an ERD.

        Streams NDJSON events unless ``testMode`` is set, in which case the
        deployment runs to completion and a single JSON result is returned.
        """
        try:
            data = parse_body(body)
            content = require_content(data)
            DeploymentOptions.from_dict(data)
            target = data.get("targetEnvironment") or {}
            client = self._client_for_url(target.get("url") if isinstance(target, dict) else None)
        except (BadRequest, ValueError) as e:
            return error_response(400, str(e))

        service = DeploymentService(
            client,
            settings=self.settings,
            history=self.history,
            cancellation=self.cancellation,
            validation_service=self.validation_service,
            sleep=self._sleep,
        )

        if data.get("testMode"):
            result = asyncio.run(service.deploy_erd(content, data))
            return json_response(result, 200 if result.get("success") else 422)

        logger.info(f"Streaming deployment of solution {data.get('solutionName')}")
        return ndjson_response(service.stream_deploy(content, data))

    def cancel_deployment(self, deployment_id: str) -> ApiResponse:
        if not self.cancellation.cancel(deployment_id, "Cancelled by request"):
            return error_response(404, f"No active deployment {deployment_id}")
        return json_response({"success": True, "deploymentId": deployment_id, "status": "cancelling"})

    # =========================================================================
    # Rollback
    # =========================================================================

    def can_rollback(self, deployment_id: str) -> ApiResponse:
        try:
            capability = self.rollback_engine.can_rollback(deployment_id)
        except ValueError as e:
            return error_response(400, str(e))
        return json_response({"success": True, **capability.to_dict()})

    def execute_rollback(self, deployment_id: str, body: RequestBody) -> ApiResponse:
        try:
            data = parse_body(body)
        except BadRequest as e:
            return error_response(400, str(e))

        if data.get("confirm") is not True:
            return error_response(400, "Rollback must be confirmed with confirm: true")

        try:
            started = self.rollback_engine.rollback_deployment(
                deployment_id, options=RollbackOptions.from_dict(data.get("options")),
            )
        except RollbackError as e:
            return error_response(409, str(e), details=e.details)
        except ValueError as e:
            return error_response(400, str(e))

        return json_response({
            "success": True,
            "message": "Rollback started",
            "deploymentId": deployment_id,
            **started,
        }, 202)

    def rollback_status(self, rollback_id: str) -> ApiResponse:
        status = self.rollback_engine.tracker.get(rollback_id)
        if status is None:
            return error_response(404, f"Rollback {rollback_id} not found")
        return json_response({"success": True, **status})

    # =========================================================================
    # History
    # =========================================================================

    def deployment_history(self, query: Optional[Dict[str, Any]] = None) -> ApiResponse:
        query = query or {}
        try:
            limit = int(query.get("limit", HistoryConfig.DEFAULT_HISTORY_LIMIT))
        except (TypeError, ValueError):
            return error_response(400, "limit must be an integer")

        environment = query.get("environmentSuffix") or query.get("environment")
        suffixes = [environment] if environment else self.history.environments()
        deployments = []
        for suffix in suffixes:
            deployments.extend(self.history.get_history(suffix, limit))
        deployments.sort(key=lambda e: e.get("timestamp", ""), reverse=True)
        deployments = deployments[:max(0, limit)]
        return json_response({"success": True, "deployments": deployments, "count": len(deployments)})

    def deployment_details(self, deployment_id: str) -> ApiResponse:
        try:
            record = self.history.get_deployment(deployment_id)
        except ValueError as e:
            return error_response(400, str(e))
        if record is None:
            return error_response(404, f"Deployment {deployment_id} not found")
        return json_response({"success": True, "deployment": record.to_dict()})

    def compare_deployments(self, query: Optional[Dict[str, Any]] = None) -> ApiResponse:
        query = query or {}
        from_id, to_id = query.get("from"), query.get("to")
        if not from_id or not to_id:
            return error_response(400, "Both 'from' and 'to' deployment ids are required")
        try:
            comparison = self.history.compare(from_id, to_id)
        except DeploymentNotFoundError as e:
            return error_response(404, str(e))
        except ValueError as e:
            return error_response(400, str(e))
        return json_response({"success": True, "comparison": comparison})

    # =========================================================================
    # Import and cross-environment
    # =========================================================================

    def import_dataverse_solution(self, body: RequestBody) -> ApiResponse:
        """Extract a solution as a Mermaid ERD and validate the result."""
        try:
            data = parse_body(body)
            environment_url = InputValidator.validate_environment_url(data.get("environmentUrl"))
            solution_name = data.get("solutionName") or None
            client = self._client_for_url(environment_url)
        except (BadRequest, TypeError, ValueError) as e:
            return error_response(400, str(e))

        try:
            extraction = SolutionExtractor(client).extract_solution(solution_name)
        except SolutionNotFoundError as e:
            return error_response(404, str(e))
        except DataverseAPIError as e:
            logger.error(f"Import from {environment_url} failed: {e}")
            return error_response(e.status_code if e.status_code in (401, 403, 404) else 502, str(e))

        validation = self.validation_service.validate_erd(extraction.erd_content)
        metadata = extraction.metadata
        return json_response({
            "success": True,
            "data": {
                **extraction.to_dict(),
                "validation": {
                    "isValid": validation["success"],
                    "warnings": validation.get("warnings", []),
                },
                "source": {
                    "type": "dataverse",
                    "environmentUrl": environment_url,
                    "solutionName": solution_name or "All Custom Tables",
                    "extractedAt": metadata["extractedAt"],
                },
            },
            "message": (
                f"Extracted {metadata['entities']} table(s) and "
                f"{metadata['relationships']} relationship(s) from Dataverse"
            ),
        })

    def compare_environments(self, body: RequestBody) -> ApiResponse:
        """Compare the solution lists of two environments."""
        try:
            data = parse_body(body)
            source_url = InputValidator.validate_environment_url(data.get("sourceUrl"))
            target_url = InputValidator.validate_environment_url(data.get("targetUrl"))
            source, target = self._client_for_url(source_url), self._client_for_url(target_url)
        except (BadRequest, TypeError, ValueError) as e:
            return error_response(400, str(e))

        try:
            comparison = compare_environments(source, target)
        except DataverseAPIError as e:
            logger.error(f"Environment comparison failed: {e}")
            return error_response(502, str(e))
        return json_response({
            "success": True,
            "sourceEnvironment": source_url,
            "targetEnvironment": target_url,
            "comparison": comparison,
        })
