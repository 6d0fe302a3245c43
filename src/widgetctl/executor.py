"""Execution engine: applies a plan through the provisioner.

GUARANTEES:
- Operations run in plan order; NoOps are skipped
- Transient provider failures are retried with bounded exponential
  backoff and jitter; permanent failures are never retried
- The state snapshot is saved after every successful step, including the
  destroy half of a Replace, so a crash resumes correctly on the next run
- A permanent failure halts the run. Completed operations stay applied:
  there is no automatic rollback, partial application is a reported outcome
- cancel() stops before the next operation starts, never in the middle of one

CONCURRENCY (opt-in, max_workers > 1):
Orphan destroys run first, sequentially. Remaining operations are grouped
per widget and the groups run on a thread pool, but only when no dependency
edge crosses widgets. Listener rules share one listener's priority space,
so their operations run last, sequentially. If the plan cannot be
partitioned safely, execution falls back to sequential.

LISTENER PRIORITIES:
The plan orders listener rule changes so priorities are vacated before
they are taken. When rules swap priorities, the rule about to take a held
priority first parks the holder on a spare priority; the holder's own
operation later moves it to its final one.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from .config import MAX_LISTENER_PRIORITY, RetryPolicy
from .diff_engine import Plan, listener_slot, resolve_references
from .models import Operation, OperationKind, Ref, ResourceKind, ResourceNode, StateRecord
from .provisioner import (
    PermanentProviderError,
    ProviderError,
    ProvisionerClient,
    TransientProviderError,
)
from .resource_graph import GraphError, UnresolvedReferenceError
from .state_store import StateError, StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Kinds sharing a resource across widgets (one listener, one priority space)
SHARED_RESOURCE_KINDS = frozenset({ResourceKind.LISTENER_RULE})


@dataclass
class ExecutionResult:
    """Outcome of applying a plan."""

    completed: list[Operation] = field(default_factory=list)
    failures: list[tuple[Operation, Exception]] = field(default_factory=list)
    skipped: list[Operation] = field(default_factory=list)
    cancelled: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def failed(self) -> Operation | None:
        return self.failures[0][0] if self.failures else None

    @property
    def error(self) -> Exception | None:
        return self.failures[0][1] if self.failures else None

    @property
    def success(self) -> bool:
        return not self.failures and not self.cancelled

    @property
    def partial(self) -> bool:
        """True when the run stopped before every operation was applied."""
        return not self.success

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def report(self) -> list[str]:
        """Human-readable completed/failed/skipped report."""
        lines = [f"Completed operations ({len(self.completed)}):"]
        lines += [f"  {op.kind.value:<13} {op.resource_id}" for op in self.completed]
        for op, error in self.failures:
            reason = getattr(error, "reason_code", type(error).__name__)
            lines.append(f"Failed: {op.kind.value} {op.resource_id} [{reason}]: {error}")
        if self.cancelled:
            lines.append("Execution cancelled before the next operation started.")
        if self.skipped:
            lines.append(f"Not started ({len(self.skipped)}):")
            lines += [f"  {op.kind.value:<13} {op.resource_id}" for op in self.skipped]
        return lines


class ExecutionEngine:
    """Applies plans and persists progress after every step."""

    def __init__(
        self,
        provisioner: ProvisionerClient,
        store: StateStore,
        retry: RetryPolicy | None = None,
        max_workers: int = 1,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        """Initialize the engine.

        Args:
            provisioner: Cloud API collaborator.
            store: State store updated after every successful step.
            retry: Backoff policy for transient failures.
            max_workers: Worker pool size; 1 keeps execution sequential.
            sleep: Sleep function (injectable for tests).
            jitter: Random source for backoff jitter (injectable for tests).
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._provisioner = provisioner
        self._store = store
        self._retry = retry or RetryPolicy()
        self._max_workers = max_workers
        self._sleep = sleep
        self._jitter = jitter

        self._cancel_event = threading.Event()
        self._halt_event = threading.Event()
        self._lock = threading.Lock()
        self._records: dict[str, StateRecord] = {}
        self._pending_rules: set[str] = set()
        self._reserved_slots: set[tuple[Any, Any]] = set()

    def cancel(self) -> None:
        """Stop before the next operation. The current one is allowed to finish."""
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def apply(self, plan: Plan, state: Mapping[str, StateRecord]) -> ExecutionResult:
        """Apply the plan's changes on top of the given state.

        Args:
            plan: Operations from the diff engine.
            state: State the plan was computed against.

        Returns:
            ExecutionResult describing completed, failed and skipped operations.
        """
        self._records = dict(state)
        self._halt_event.clear()
        result = ExecutionResult()
        operations = plan.changes
        self._reserve_listener_slots(operations)

        logger.info(
            "Applying plan",
            extra={"operation_count": len(operations), "max_workers": self._max_workers},
        )

        phases = self._partition(operations) if self._max_workers > 1 else None
        if phases is None:
            self._run_sequence(operations, result)
        else:
            leading, groups, trailing = phases
            self._run_sequence(leading, result)
            if groups and not self._should_stop():
                with ThreadPoolExecutor(
                    max_workers=min(self._max_workers, len(groups)),
                    thread_name_prefix="widgetctl",
                ) as pool:
                    futures = [
                        pool.submit(self._run_sequence, group, result) for group in groups
                    ]
                    for future in futures:
                        future.result()
            self._run_sequence(trailing, result)

        finished = {op.resource_id for op in result.completed}
        finished.update(op.resource_id for op, _ in result.failures)
        result.skipped = [op for op in operations if op.resource_id not in finished]
        result.cancelled = self.cancelled and bool(result.skipped)
        result.end_time = datetime.now(UTC)

        self._log_result(result)
        return result

    @property
    def records(self) -> dict[str, StateRecord]:
        """State as of the last completed step."""
        with self._lock:
            return dict(self._records)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _should_stop(self) -> bool:
        return self._cancel_event.is_set() or self._halt_event.is_set()

    def _run_sequence(self, operations: list[Operation], result: ExecutionResult) -> None:
        for op in operations:
            if self._should_stop():
                return
            try:
                self._execute(op)
            except (ProviderError, GraphError, StateError) as e:
                logger.error(
                    "Operation failed, halting execution",
                    extra={
                        "resource_id": op.resource_id,
                        "operation": op.kind.value,
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "reason_code": getattr(e, "reason_code", None),
                    },
                )
                with self._lock:
                    result.failures.append((op, e))
                self._halt_event.set()
                return
            with self._lock:
                result.completed.append(op)

    def _partition(
        self, operations: list[Operation]
    ) -> tuple[list[Operation], list[list[Operation]], list[Operation]] | None:
        """Split operations into (leading, per-widget groups, trailing).

        Returns None when some dependency crosses widgets or a widget-local
        operation depends on a shared-resource operation.
        """
        leading = [op for op in operations if op.target is None]
        rest = [op for op in operations if op.target is not None]
        trailing = [op for op in rest if op.resource_kind in SHARED_RESOURCE_KINDS]
        trailing_ids = {op.resource_id for op in trailing}

        widget_of = {rid: record.widget for rid, record in self._records.items()}
        widget_of.update({op.resource_id: op.widget for op in rest})

        groups: dict[str, list[Operation]] = {}
        for op in rest:
            assert op.target is not None
            for dep in op.target.depends_on:
                if widget_of.get(dep) != op.widget:
                    logger.info(
                        "Cross-widget dependency found, executing sequentially",
                        extra={"resource_id": op.resource_id, "dependency": dep},
                    )
                    return None
                if dep in trailing_ids and op.resource_id not in trailing_ids:
                    logger.info(
                        "Dependency on shared resource found, executing sequentially",
                        extra={"resource_id": op.resource_id, "dependency": dep},
                    )
                    return None
            if op.resource_id not in trailing_ids:
                groups.setdefault(op.widget, []).append(op)

        return leading, [groups[w] for w in sorted(groups)], trailing

    # -------------------------------------------------------------------------
    # Single operation
    # -------------------------------------------------------------------------

    def _execute(self, op: Operation) -> None:
        with self._lock:
            self._pending_rules.discard(op.resource_id)
        match op.kind:
            case OperationKind.CREATE:
                self._create(op)
            case OperationKind.UPDATE_IN_PLACE:
                node = self._resolve(op)
                self._vacate_slot(op, node)
                identity = self._with_retry(
                    op, self._provisioner.update, node, self._current_identity(op)
                )
                self._commit_record(node, identity)
            case OperationKind.REPLACE:
                self._with_retry(op, self._provisioner.destroy, self._current_identity(op))
                self._commit_removal(op.resource_id)
                self._create(op)
            case OperationKind.DESTROY:
                assert op.prior is not None
                self._with_retry(op, self._provisioner.destroy, op.prior.remote_identity)
                self._commit_removal(op.resource_id)
            case OperationKind.NO_OP:
                return

        logger.info(
            "Operation applied",
            extra={
                "resource_id": op.resource_id,
                "operation": op.kind.value,
                "widget": op.widget,
            },
        )

    def _create(self, op: Operation) -> None:
        node = self._resolve(op)
        self._vacate_slot(op, node)
        identity = self._with_retry(op, self._provisioner.create, node)
        self._commit_record(node, identity)

    def _resolve(self, op: Operation) -> ResourceNode:
        """Copy of the target node with every Ref replaced by a remote identity."""
        assert op.target is not None
        node = op.target

        def resolve(ref: Ref) -> str:
            with self._lock:
                record = self._records.get(ref.resource_id)
            if record is None:
                raise UnresolvedReferenceError(node.resource_id, ref.resource_id)
            return record.remote_identity

        return ResourceNode(
            kind=node.kind,
            name=node.name,
            widget=node.widget,
            attributes=resolve_references(node.attributes, resolve),
            depends_on=node.depends_on,
        )

    def _current_identity(self, op: Operation) -> str:
        """Identity as last recorded in this run, falling back to the plan's."""
        with self._lock:
            record = self._records.get(op.resource_id)
        if record is not None:
            return record.remote_identity
        assert op.prior is not None
        return op.prior.remote_identity

    # -------------------------------------------------------------------------
    # Listener rule priorities
    # -------------------------------------------------------------------------

    def _reserve_listener_slots(self, operations: list[Operation]) -> None:
        self._pending_rules = set()
        self._reserved_slots = set()
        for op in operations:
            if op.resource_kind != ResourceKind.LISTENER_RULE or op.target is None:
                continue
            self._pending_rules.add(op.resource_id)
            slot = listener_slot(op.target.attributes)
            if slot is not None:
                self._reserved_slots.add(slot)

    def _vacate_slot(self, op: Operation, node: ResourceNode) -> None:
        """Park a rule that still holds the priority node is taking.

        Only rules with their own pending operation are moved; that operation
        later puts them on their final priority.
        """
        if node.kind != ResourceKind.LISTENER_RULE:
            return
        slot = listener_slot(node.attributes)
        if slot is None:
            return

        with self._lock:
            rules = [
                r for r in self._records.values() if r.kind == ResourceKind.LISTENER_RULE
            ]
        holder = next(
            (
                r
                for r in rules
                if r.resource_id != node.resource_id
                and r.resource_id in self._pending_rules
                and listener_slot(r.last_known_attributes) == slot
            ),
            None,
        )
        if holder is None:
            return

        listener_arn = slot[0]
        used = {listener_slot(r.last_known_attributes) for r in rules} | self._reserved_slots
        spare = next(
            (p for p in range(MAX_LISTENER_PRIORITY, 0, -1) if (listener_arn, p) not in used),
            None,
        )
        if spare is None:
            raise PermanentProviderError(
                f"No spare listener priority to move '{holder.resource_id}' out of the way",
                reason_code="PriorityInUse",
                resource_id=node.resource_id,
            )

        parked = ResourceNode(
            kind=holder.kind,
            name=holder.resource_id.partition(".")[2],
            widget=holder.widget,
            attributes={**holder.last_known_attributes, "priority": spare},
            depends_on=frozenset(holder.depends_on),
        )
        logger.info(
            "Parking listener rule on a spare priority",
            extra={
                "resource_id": holder.resource_id,
                "priority": spare,
                "for_resource_id": node.resource_id,
            },
        )
        identity = self._with_retry(op, self._provisioner.update, parked, holder.remote_identity)
        self._commit_record(parked, identity)

    def _with_retry(self, op: Operation, call: Callable[..., T], *args: Any) -> T:
        """Invoke a provisioner call, retrying transient failures.

        Raises:
            TransientProviderError: When all attempts are exhausted.
            PermanentProviderError: Immediately, without retry.
        """
        max_attempts = self._retry.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return call(*args)
            except TransientProviderError as e:
                if attempt >= max_attempts:
                    logger.error(
                        "Transient failure persisted, giving up",
                        extra={
                            "resource_id": op.resource_id,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "error": str(e),
                        },
                    )
                    raise

                backoff = self._retry.delay_for(attempt)
                wait_time = min(self._retry.cap_seconds, backoff + self._jitter(0, backoff * 0.2))
                logger.warning(
                    "Transient provider error, retrying",
                    extra={
                        "resource_id": op.resource_id,
                        "operation": op.kind.value,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                self._sleep(wait_time)

        raise AssertionError("retry loop exited without result")  # pragma: no cover

    # -------------------------------------------------------------------------
    # State persistence
    # -------------------------------------------------------------------------

    def _commit_record(self, node: ResourceNode, identity: str) -> None:
        record = StateRecord(
            resource_id=node.resource_id,
            kind=node.kind,
            remote_identity=identity,
            last_known_attributes=node.attributes,
            depends_on=tuple(sorted(node.depends_on)),
            widget=node.widget,
        )
        with self._lock:
            self._records[node.resource_id] = record
            self._store.save(self._records)

    def _commit_removal(self, resource_id: str) -> None:
        with self._lock:
            self._records.pop(resource_id, None)
            self._store.save(self._records)

    def _log_result(self, result: ExecutionResult) -> None:
        extra: dict[str, Any] = {
            "completed": len(result.completed),
            "failed": len(result.failures),
            "skipped": len(result.skipped),
            "cancelled": result.cancelled,
            "duration_seconds": result.duration_seconds,
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Execution halted after failure", extra=extra)
        elif result.cancelled:
            logger.warning("Execution cancelled", extra=extra)
        else:
            logger.info("Execution complete", extra=extra)
