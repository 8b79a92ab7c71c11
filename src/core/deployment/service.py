"""
Deployment service.

Facade over the full pipeline for one ERD: parse, validate, convert,
orchestrate and record. ``stream_deploy`` runs the same pipeline on a worker
thread and yields event dictionaries suitable for NDJSON streaming.

Usage:
    from core.deployment.service import DeploymentService

    service = DeploymentService(client, history=store)
    for event in service.stream_deploy(content, {"solutionName": "Sales", "publisherPrefix": "cr123"}):
        print(json.dumps(event))
"""

import asyncio
import logging
import queue
import threading
from typing import Any, Dict, Iterator, Optional

from constants import DeploymentDefaults

from formats.mermaid.erd_converter import ERDToDataverseConverter, SchemaGenerationError
from formats.mermaid.validation_service import ERDValidationService

from ..cancellation import CancellationRegistry
from ..dataverse_client import DataverseClient
from .models import DeploymentOptions, DeploymentSettings, generate_deployment_id
from .orchestrator import DeploymentOrchestrator, ProgressCallback
from .retry import SleepFunc

logger = logging.getLogger(__name__)

_STREAM_END = object()


class _EventLogHandler(logging.Handler):
    """Forward log records emitted on one thread into an event queue."""

    def __init__(self, events: "queue.Queue", thread_id: int):
        super().__init__(level=logging.INFO)
        self._events = events
        self._thread_id = thread_id

    def emit(self, record: logging.LogRecord) -> None:
        if record.thread != self._thread_id:
            return
        self._events.put({"type": "log", "level": record.levelname.lower(), "message": record.getMessage()})


class DeploymentService:
    """Parse, validate, convert and deploy Mermaid ERD content."""

    def __init__(
        self,
        client: DataverseClient,
        settings: Optional[DeploymentSettings] = None,
        history: Optional[Any] = None,
        cancellation: Optional[CancellationRegistry] = None,
        validation_service: Optional[ERDValidationService] = None,
        converter: Optional[ERDToDataverseConverter] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        self.cancellation = cancellation if cancellation is not None else CancellationRegistry()
        self.orchestrator = DeploymentOrchestrator(
            client, settings=settings, history=history, cancellation=self.cancellation, sleep=sleep,
        )
        self.validation_service = validation_service if validation_service is not None else ERDValidationService()
        self.converter = converter if converter is not None else ERDToDataverseConverter()

    def cancel(self, deployment_id: str) -> bool:
        return self.cancellation.cancel(deployment_id)

    async def deploy_erd(
        self,
        content: str,
        options: Dict[str, Any],
        progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """
        Deploy ERD content end to end.

        Validation errors and schema generation failures are returned as an
        unsuccessful result without touching the environment.

        Raises:
            ValueError: If content is empty or required options are missing.
        """
        deployment_options = DeploymentOptions.from_dict(options)
        outcome = self.validation_service.parse_and_validate(content, options)

        if not outcome.report.is_valid:
            errors = [w.message for w in outcome.report.errors]
            logger.warning(f"Deployment refused: {len(errors)} validation error(s)")
            return {
                "success": False,
                "deploymentId": options.get("deploymentId"),
                "errors": errors,
                "validation": outcome.report.to_dict(),
            }

        try:
            schema = self.converter.convert(
                outcome.parsed,
                deployment_options.publisher_prefix,
                outcome.detection.matches,
                selected_choices=options.get("selectedChoices"),
                custom_choices=options.get("customChoices"),
            )
        except SchemaGenerationError as e:
            logger.warning(f"Deployment refused: {e}")
            return {"success": False, "deploymentId": options.get("deploymentId"), "errors": [str(e)]}

        result = await self.orchestrator.deploy(
            schema,
            deployment_options,
            progress=progress,
            deployment_id=options.get("deploymentId"),
            erd_content=content,
        )
        return result.to_dict()

    def stream_deploy(
        self,
        content: str,
        options: Dict[str, Any],
        heartbeat_interval: float = DeploymentDefaults.STREAM_HEARTBEAT_SECONDS,
    ) -> Iterator[Dict[str, Any]]:
        """
        Yield ``connected``, ``progress``, ``log``, ``heartbeat`` and ``final`` events.

        A ``heartbeat`` is emitted whenever no other event arrives within
        ``heartbeat_interval`` seconds.

        The deployment runs on a worker thread with its own event loop; this
        generator returns after the ``final`` event.
        """
        deployment_id = options.get("deploymentId") or generate_deployment_id()
        options = {**options, "deploymentId": deployment_id}
        events: "queue.Queue" = queue.Queue()

        def progress(step: str, message: str, details: Dict[str, Any]) -> None:
            events.put({"type": "progress", "step": step, "message": message, "details": details})

        def worker() -> None:
            handler = _EventLogHandler(events, threading.get_ident())
            deployment_logger = logging.getLogger("core.deployment")
            deployment_logger.addHandler(handler)
            try:
                result = asyncio.run(self.deploy_erd(content, options, progress))
                events.put({"type": "final", **result})
            except Exception as e:
                logger.exception(f"Deployment {deployment_id} aborted: {e}")
                events.put({"type": "final", "success": False, "deploymentId": deployment_id, "errors": [str(e)]})
            finally:
                deployment_logger.removeHandler(handler)
                events.put(_STREAM_END)

        yield {"type": "connected", "deploymentId": deployment_id}
        thread = threading.Thread(target=worker, name=f"deploy-{deployment_id}", daemon=True)
        thread.start()

        while True:
            try:
                event = events.get(timeout=heartbeat_interval)
            except queue.Empty:
                yield {"type": "heartbeat", "deploymentId": deployment_id}
                continue
            if event is _STREAM_END:
                break
            yield event
        thread.join()
