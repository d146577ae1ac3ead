from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from dataclasses import dataclass, field
from datetime import datetime, timezone
import asyncio
import logging
import uuid

from knowflow.config import settings
from knowflow.core.exceptions import ConfigurationError, RollbackFailed, UnknownStepType
from knowflow.core.logging import get_logger
from knowflow.engine.context import RollbackResult, StepExecutionContext, StepExecutionResult
from knowflow.engine.control import ExecutionControl, ensure_transition
from knowflow.engine.graph import WorkflowGraph
from knowflow.engine.inputs import Connector, InputResolver, data_connectors
import knowflow.integrations.connectors  # Import to trigger registration
from knowflow.engine.steps import StepRegistry, step_registry  # Import to trigger registration
from knowflow.engine.steps.base import BaseStep, RollbackableStep
from knowflow.schemas.execution import (
    ExecutionProgress,
    ExecutionRecord,
    ExecutionStatus,
    NodeSnapshot,
    NodeStatus,
    RollbackStatus,
)
from knowflow.schemas.workflow import ErrorHandling, InputSourceType, WorkflowDefinition, WorkflowNode
from knowflow.services.notification_service import EXECUTION_COMPLETED, EXECUTION_FAILED, Notifier

logger = get_logger("engine.executor")

OnUpdate = Callable[[ExecutionRecord], Awaitable[None]]

SKIP_DISABLED = "disabled"
SKIP_UPSTREAM_STOP = "upstream stop"
SKIP_CANCELLED = "execution cancelled"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class NodeOutcome:
    node_id: str
    result: StepExecutionResult
    input: Any = None
    attempts: int = 0
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime = field(default_factory=utcnow)

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


class WorkflowExecutor:
    """
    Runs one workflow execution end to end.

    A fresh executor (and fresh step instances) is built per run. The
    execution record is mutated in place and handed to `on_update` after
    every state change so callers can persist or stream it.
    """

    def __init__(
        self,
        workflow: WorkflowDefinition,
        registry: StepRegistry = step_registry,
        *,
        notifier: Optional[Notifier] = None,
        connectors: Optional[Dict[str, Connector]] = None,
        control: Optional[ExecutionControl] = None,
        on_update: Optional[OnUpdate] = None,
        node_timeout: Optional[float] = None,
        retry_backoff: Optional[float] = None,
        retry_backoff_max: Optional[float] = None,
        notification_timeout: Optional[float] = None,
    ):
        self.workflow = workflow
        self.settings = workflow.settings
        self.graph = WorkflowGraph(workflow.nodes, workflow.edges)
        self.registry = registry
        self.notifier = notifier
        self.connectors = {**data_connectors, **(connectors or {})}
        self.control = control or ExecutionControl()
        self.control.add_cancel_listener(self._on_cancel_requested)
        self.on_update = on_update
        self.node_timeout = node_timeout or settings.NODE_TIMEOUT_SECONDS
        self.retry_backoff = settings.RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff
        self.retry_backoff_max = (
            settings.RETRY_BACKOFF_MAX_SECONDS if retry_backoff_max is None else retry_backoff_max
        )
        self.notification_timeout = notification_timeout or settings.NOTIFICATION_TIMEOUT_SECONDS

        self.steps: Dict[str, BaseStep] = {}
        self.outputs: Dict[str, Any] = {}  # node_id -> raw output segments
        self.execution: Optional[ExecutionRecord] = None
        self._prepared = False
        self._order: List[str] = []
        self._pending: List[str] = []
        self._in_flight: Dict[str, datetime] = {}
        self._rollback_data: Dict[str, Any] = {}
        self._resolver: Optional[InputResolver] = None
        self._notifications: Set[asyncio.Task] = set()

    # Setup

    def prepare(self) -> None:
        """
        Validate the graph and instantiate every enabled step. Raises a
        ConfigurationError subclass before any execution exists.
        """
        self.graph.validate()
        for node in self.graph.node_list:
            if not node.enabled:
                if not self.registry.has_step_type(node.type):
                    raise UnknownStepType(node.type)
                continue
            self.steps[node.id] = self.registry.create_and_validate(node.type, node.config)
            for source in node.input_sources:
                if source.type == InputSourceType.EXTERNAL and source.connector not in self.connectors:
                    raise ConfigurationError(
                        f"Node '{node.id}' uses unknown data connector '{source.connector}'"
                    )
        self._order = self.graph.execution_order()
        self._prepared = True

    def new_execution(
        self,
        input_data: Any = None,
        *,
        execution_id: Optional[str] = None,
        user_id: Optional[str] = None,
        trigger_source: str = "manual",
    ) -> ExecutionRecord:
        return ExecutionRecord(
            id=execution_id or str(uuid.uuid4()),
            workflow_id=self.workflow.id,
            user_id=user_id or self.workflow.user_id,
            input=input_data,
            trigger_source=trigger_source,
        )

    # Control surface

    def cancel(self, reason: Optional[str] = None) -> None:
        self.control.cancel(reason)

    def pause(self) -> None:
        self.control.pause()

    def resume(self) -> None:
        self.control.resume()

    # Run

    async def run(
        self,
        input_data: Any = None,
        *,
        execution: Optional[ExecutionRecord] = None,
        document_id: Optional[str] = None,
        dataset_id: Optional[str] = None,
    ) -> ExecutionRecord:
        if not self._prepared:
            self.prepare()

        record = execution or self.new_execution(input_data)
        if input_data is None:
            input_data = record.input
        self.execution = record
        if record.is_terminal:
            return record

        self._pending = list(self._order)
        await self.control.refresh()
        if self.control.cancelled:
            # Cancelled before it started
            self._on_cancel_requested(self.control.cancel_reason)
            await self._emit()
            return record

        self._transition(ExecutionStatus.RUNNING)
        record.started_at = record.started_at or utcnow()
        record.progress = ExecutionProgress(total_nodes=len(self._order), message="Execution started")
        for node_id in self.graph.disabled_nodes():
            node = self.graph.nodes[node_id]
            record.node_snapshots.append(self._skipped_snapshot(node, SKIP_DISABLED))
        logger.info(
            f"Starting execution {record.id} of workflow '{self.workflow.name}'",
            extra={"execution_id": record.id, "workflow_id": self.workflow.id},
        )
        await self._emit()

        self._resolver = InputResolver(self.graph, self.outputs, input_data, self.connectors)
        failure = await self._schedule(document_id, dataset_id)

        if failure is not None:
            # Already failed by _halt; compensate once in-flight siblings are done
            if self.settings.rollback_on_failure:
                await self._rollback(document_id, dataset_id)
        elif record.status == ExecutionStatus.CANCELLED:
            # Finalised by the cancel listener
            await self._emit()
            return record
        else:
            if record.progress.total_nodes == 0:
                record.progress.overall_progress = 100
            record.progress.current_node_name = None
            record.progress.message = "Execution completed"
            self._finish(ExecutionStatus.COMPLETED)

        logger.info(
            f"Execution {record.id} finished with status {record.status.value}",
            extra={"execution_id": record.id, "duration_ms": record.duration_ms},
        )
        await self._emit()
        self._notify()
        return record

    async def _schedule(self, document_id: Optional[str], dataset_id: Optional[str]) -> Optional[NodeSnapshot]:
        """
        Launch nodes once all of their enabled ancestors are terminal.
        Returns the snapshot that halted the run under stop/retry, if any.
        """
        record = self.execution
        parallel = self.settings.parallel_execution
        limit = (self.settings.max_concurrency or settings.MAX_PARALLEL_NODES) if parallel else 1
        deps = {node_id: self.graph.active_dependencies(node_id) for node_id in self._order}
        self._pending = list(self._order)
        done: Set[str] = set()
        running: Dict[asyncio.Task, str] = {}
        failure: Optional[NodeSnapshot] = None

        while self._pending or running:
            if failure is None and not self.control.cancelled and self.control.paused:
                await self._wait_while_paused()

            if failure is None and not self.control.cancelled:
                for node_id in list(self._pending):
                    if len(running) >= limit:
                        break
                    if deps[node_id] <= done:
                        self._pending.remove(node_id)
                        self._in_flight[node_id] = utcnow()
                        record.progress.current_node_name = self.graph.nodes[node_id].display_name
                        task = asyncio.create_task(self._run_node(node_id, document_id, dataset_id))
                        running[task] = node_id
                    elif not parallel:
                        break

            if not running:
                break

            finished, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
            for task in finished:
                node_id = running.pop(task)
                self._in_flight.pop(node_id, None)
                done.add(node_id)
                outcome = task.result()
                if record.is_terminal:
                    logger.info(f"Discarding result of node {node_id}; execution already {record.status.value}")
                    continue
                snapshot = self._record_outcome(outcome)
                if (
                    snapshot.status == NodeStatus.FAILED
                    and self.settings.error_handling != ErrorHandling.CONTINUE
                    and failure is None
                ):
                    failure = snapshot
                    self._halt(failure)

            await self._emit()
            await self.control.refresh()

        return failure

    async def _wait_while_paused(self) -> None:
        self._transition(ExecutionStatus.PAUSED)
        self.execution.progress.message = "Execution paused"
        await self._emit()
        logger.info(f"Execution {self.execution.id} paused")
        await self.control.wait_until_resumed()
        if self.control.cancelled:
            return
        self._transition(ExecutionStatus.RUNNING)
        self.execution.progress.message = "Execution resumed"
        await self._emit()
        logger.info(f"Execution {self.execution.id} resumed")

    async def _run_node(self, node_id: str, document_id: Optional[str], dataset_id: Optional[str]) -> NodeOutcome:
        node = self.graph.nodes[node_id]
        step = self.steps[node_id]
        started_at = utcnow()
        max_attempts = 1
        if self.settings.error_handling == ErrorHandling.RETRY:
            max_attempts += self.settings.max_retries

        context = self._build_context(node, 1, document_id, dataset_id)
        try:
            node_input = await self._resolver.resolve(node, context)
        except Exception as e:
            context.logger.error(f"Failed to resolve input: {e}", exc_info=True)
            result = StepExecutionResult(success=False, error=f"Failed to resolve input: {e}")
            return NodeOutcome(node_id, result, attempts=0, started_at=started_at)

        attempt = 0
        result = None
        while attempt < max_attempts:
            attempt += 1
            if attempt > 1:
                context = self._build_context(node, attempt, document_id, dataset_id)
            result = await self._invoke(step, node, node_input, context)
            if result.success or attempt >= max_attempts:
                break
            delay = min(self.retry_backoff * (2 ** (attempt - 1)), self.retry_backoff_max)
            context.logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {result.error}; retrying in {delay}s"
            )
            await asyncio.sleep(delay)
            if self.control.cancelled or self.execution.is_terminal:
                break

        if result.success and isinstance(step, RollbackableStep):
            if result.rollback_data is None:
                result.rollback_data = step.create_rollback_data(step.unwrap_input(node_input), node.config)

        return NodeOutcome(node_id, result, input=node_input, attempts=attempt, started_at=started_at)

    async def _invoke(
        self, step: BaseStep, node: WorkflowNode, node_input: Any, context: StepExecutionContext
    ) -> StepExecutionResult:
        try:
            return await step.execute_with_timeout(
                node_input, node.config, context, timeout=node.timeout or self.node_timeout
            )
        except Exception as e:
            context.logger.error(f"Step raised {type(e).__name__}: {e}", exc_info=True)
            return StepExecutionResult(success=False, error=f"{type(e).__name__}: {e}")

    def _build_context(
        self, node: WorkflowNode, attempt: int, document_id: Optional[str], dataset_id: Optional[str]
    ) -> StepExecutionContext:
        record = self.execution
        adapter = logging.LoggerAdapter(
            get_logger(f"steps.{node.type}"),
            {"execution_id": record.id, "node_id": node.id, "attempt": attempt},
        )
        return StepExecutionContext(
            execution_id=record.id,
            pipeline_config_id=self.workflow.id,
            user_id=record.user_id,
            logger=adapter,
            document_id=document_id,
            dataset_id=dataset_id,
            metadata={
                "node_id": node.id,
                "node_name": node.display_name,
                "attempt": attempt,
                "workflow_name": self.workflow.name,
            },
        )

    # Bookkeeping

    def _record_outcome(self, outcome: NodeOutcome) -> NodeSnapshot:
        node = self.graph.nodes[outcome.node_id]
        step = self.steps[outcome.node_id]
        result = outcome.result
        output = None
        warnings = list(result.warnings)

        if result.success:
            status = NodeStatus.SUCCEEDED
            self.outputs[node.id] = result.output_segments
            self._rollback_data[node.id] = result.rollback_data
            try:
                output = step.format_output(result, outcome.input)
            except Exception as e:
                logger.warning(f"format_output failed for node {node.id}: {e}", exc_info=True)
                output = result.output_segments
                warnings.append(f"Output formatting failed: {e}")
        else:
            status = NodeStatus.FAILED
            self.outputs[node.id] = []
            logger.warning(
                f"Node {node.id} failed after {outcome.attempts} attempt(s): {result.error}",
                extra={"execution_id": self.execution.id, "node_id": node.id},
            )

        snapshot = NodeSnapshot(
            node_id=node.id,
            node_name=node.display_name,
            node_type=node.type,
            status=status,
            output=output,
            metrics=result.metrics.to_dict(),
            error=result.error,
            warnings=warnings,
            attempts=outcome.attempts,
            started_at=outcome.started_at,
            completed_at=outcome.completed_at,
            duration_ms=outcome.duration_ms,
        )
        self.execution.node_snapshots.append(snapshot)
        self._update_progress(snapshot)
        return snapshot

    def _update_progress(self, snapshot: NodeSnapshot) -> None:
        progress = self.execution.progress
        executed = {s.node_id for s in self.execution.node_snapshots if s.skip_reason != SKIP_DISABLED}
        progress.completed_nodes = len(executed)
        if progress.total_nodes:
            progress.overall_progress = round(progress.completed_nodes / progress.total_nodes * 100)
        progress.message = (
            f"{snapshot.node_name} {snapshot.status.value} "
            f"({progress.completed_nodes}/{progress.total_nodes})"
        )

    def _skipped_snapshot(self, node: WorkflowNode, reason: str) -> NodeSnapshot:
        now = utcnow()
        return NodeSnapshot(
            node_id=node.id,
            node_name=node.display_name,
            node_type=node.type,
            status=NodeStatus.SKIPPED,
            skip_reason=reason,
            started_at=now,
            completed_at=now,
            duration_ms=0,
        )

    def _interrupt(self, in_flight_error: str, skip_reason: str) -> None:
        """Close out running and pending nodes; running tasks finish but their results are dropped."""
        record = self.execution
        now = utcnow()
        for node_id, started_at in self._in_flight.items():
            node = self.graph.nodes[node_id]
            record.node_snapshots.append(
                NodeSnapshot(
                    node_id=node.id,
                    node_name=node.display_name,
                    node_type=node.type,
                    status=NodeStatus.CANCELLED,
                    error=in_flight_error,
                    started_at=started_at,
                    completed_at=now,
                    duration_ms=int((now - started_at).total_seconds() * 1000),
                )
            )
        for node_id in self._pending:
            record.node_snapshots.append(self._skipped_snapshot(self.graph.nodes[node_id], skip_reason))
        self._pending = []

    def _halt(self, failure: NodeSnapshot) -> None:
        record = self.execution
        self._interrupt(f"Stopped after node '{failure.node_id}' failed", SKIP_UPSTREAM_STOP)
        record.error = f"Node '{failure.node_name}' failed: {failure.error}"
        record.progress.message = record.error
        self._finish(ExecutionStatus.FAILED)
        logger.info(f"Execution {record.id} failed at node {failure.node_id}")

    def _on_cancel_requested(self, reason: Optional[str]) -> None:
        record = self.execution
        if record is None or record.is_terminal:
            return
        self._interrupt("Cancelled while running", SKIP_CANCELLED)
        record.cancellation_reason = reason
        record.progress.message = "Execution cancelled"
        self._finish(ExecutionStatus.CANCELLED)
        logger.info(f"Execution {record.id} cancelled: {reason or 'no reason given'}")

    def _transition(self, target: ExecutionStatus) -> None:
        ensure_transition(self.execution.status, target)
        self.execution.status = target

    def _finish(self, status: ExecutionStatus) -> None:
        record = self.execution
        self._transition(status)
        record.completed_at = utcnow()
        if record.started_at:
            record.duration_ms = int((record.completed_at - record.started_at).total_seconds() * 1000)

    async def _emit(self) -> None:
        if self.on_update:
            await self.on_update(self.execution)

    # Failure handling

    async def _rollback(self, document_id: Optional[str], dataset_id: Optional[str]) -> None:
        succeeded = [s for s in self.execution.node_snapshots if s.status == NodeStatus.SUCCEEDED]
        for snapshot in reversed(succeeded):
            step = self.steps.get(snapshot.node_id)
            rollback_data = self._rollback_data.get(snapshot.node_id)
            if not isinstance(step, RollbackableStep) or rollback_data is None:
                continue

            node = self.graph.nodes[snapshot.node_id]
            context = self._build_context(node, snapshot.attempts, document_id, dataset_id)
            try:
                result = await step.rollback(rollback_data, context)
            except Exception as e:
                result = RollbackResult(success=False, error=f"{type(e).__name__}: {e}")

            if result.success:
                snapshot.rollback_status = RollbackStatus.ROLLED_BACK
                context.logger.info("Rolled back")
            else:
                snapshot.rollback_status = RollbackStatus.ROLLBACK_FAILED
                snapshot.rollback_error = result.error
                context.logger.error(str(RollbackFailed(snapshot.node_id, result.error)))

    def _notify(self) -> None:
        record = self.execution
        if self.notifier is None:
            return
        if record.status == ExecutionStatus.COMPLETED and self.settings.notify_on_completion:
            event = EXECUTION_COMPLETED
        elif record.status == ExecutionStatus.FAILED and self.settings.notify_on_failure:
            event = EXECUTION_FAILED
        else:
            return
        # Fire and forget; run() returns without waiting on the notifier
        task = asyncio.create_task(self._send_notification(event))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _send_notification(self, event: str) -> None:
        record = self.execution
        try:
            await asyncio.wait_for(
                self.notifier.notify(event, self.workflow, record), timeout=self.notification_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Notification {event} for execution {record.id} timed out after {self.notification_timeout}s"
            )
        except Exception as e:
            logger.warning(f"Notification {event} for execution {record.id} failed: {e}", exc_info=True)

    async def wait_for_notifications(self) -> None:
        """Let pending notifications finish (each is bounded by its own timeout)."""
        if self._notifications:
            await asyncio.gather(*list(self._notifications))
