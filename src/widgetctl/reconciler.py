"""Reconciliation pipeline for a widget registry.

Data flow:
1. Compose the routing table and the desired resource graph
2. Validate invariants (tags, routing) and fail fast on violations
3. Load recorded state and diff it against the desired graph
4. Apply the plan through the execution engine
5. Re-validate the resulting state

plan, apply and validate each run this pipeline up to the step they need.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import Config
from .diff_engine import Plan, compute_plan
from .executor import ExecutionEngine, ExecutionResult
from .models import ListenerRuleAssignment, WidgetRegistry
from .provisioner import ProvisionerClient
from .resource_graph import ResourceGraph, build_desired_graph
from .routing import compose_routing_table
from .state_store import StateStore
from .validator import (
    DriftReport,
    ValidationReport,
    detect_drift,
    required_tags_by_widget,
    validate,
    validate_records,
)

logger = logging.getLogger(__name__)


class ApplyStatus(str, Enum):
    """Overall outcome of an apply run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    VALIDATION_FAILED = "validation_failed"


@dataclass
class DesiredState:
    """Composed routing table and resource graph."""

    assignments: list[ListenerRuleAssignment]
    graph: ResourceGraph
    required_tags: dict[str, dict[str, str]]


@dataclass
class PlanOutcome:
    """Validation report and, when validation passed, the plan."""

    validation: ValidationReport
    plan: Plan | None = None

    @property
    def ok(self) -> bool:
        return self.validation.ok and self.plan is not None


@dataclass
class ApplyOutcome:
    """Result of an apply run."""

    validation: ValidationReport
    plan: Plan | None = None
    execution: ExecutionResult | None = None
    post_validation: ValidationReport | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def status(self) -> ApplyStatus:
        if not self.validation.ok or self.plan is None:
            return ApplyStatus.VALIDATION_FAILED
        if self.execution is not None and not self.execution.success:
            return ApplyStatus.PARTIAL
        return ApplyStatus.SUCCESS

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


class Reconciler:
    """Drives plan, apply and validate for one registry.

    The reconciler is single-threaded; concurrency, if enabled, lives
    inside the execution engine.
    """

    def __init__(
        self,
        config: Config,
        registry: WidgetRegistry,
        store: StateStore,
        provisioner: ProvisionerClient | None = None,
        **engine_options: Any,
    ) -> None:
        """Initialize reconciler.

        Args:
            config: Validated configuration.
            registry: Widgets and discovered shared resources.
            store: State store.
            provisioner: Cloud collaborator, required for apply and verify.
            engine_options: Extra ExecutionEngine arguments (sleep, jitter).
        """
        self._config = config
        self._registry = registry
        self._store = store
        self._provisioner = provisioner
        self._engine: ExecutionEngine | None = None
        if provisioner is not None:
            self._engine = ExecutionEngine(
                provisioner,
                store,
                retry=config.retry,
                max_workers=config.max_workers,
                **engine_options,
            )

    @property
    def config(self) -> Config:
        return self._config

    @property
    def engine(self) -> ExecutionEngine | None:
        return self._engine

    def cancel(self) -> None:
        """Ask a running apply to stop before its next operation."""
        if self._engine is not None:
            self._engine.cancel()

    def compose(self) -> DesiredState:
        """Build the routing table and the desired graph.

        Raises:
            PriorityExhaustedError: If the priority band is exhausted.
            GraphError: If the composed graph is invalid.
        """
        widgets = self._registry.widgets
        assignments = compose_routing_table(widgets, self._config.priority_band)
        graph = build_desired_graph(
            widgets,
            assignments,
            self._registry.discovered,
            self._config.project,
            self._config.managed_by,
        )
        required = required_tags_by_widget(
            widgets, self._config.project, self._config.managed_by
        )
        return DesiredState(assignments=assignments, graph=graph, required_tags=required)

    def validate(self, desired: DesiredState | None = None) -> ValidationReport:
        """Run the invariant checks over the desired state."""
        desired = desired or self.compose()
        return validate(desired.graph, desired.assignments, desired.required_tags)

    def plan(self) -> PlanOutcome:
        """Validate, then diff the desired graph against recorded state.

        Raises:
            StateError: If recorded state cannot be loaded.
            GraphError: If the desired graph is invalid.
        """
        desired = self.compose()
        report = self.validate(desired)
        if not report.ok:
            return PlanOutcome(validation=report)

        state = self._store.load()
        return PlanOutcome(validation=report, plan=compute_plan(desired.graph, state))

    def apply(self) -> ApplyOutcome:
        """Validate, plan and execute.

        Nothing is executed when validation fails. A failure mid-run leaves
        completed operations applied and recorded.
        """
        if self._engine is None:
            raise RuntimeError("apply requires a provisioner")

        outcome = ApplyOutcome(validation=ValidationReport())
        desired = self.compose()
        outcome.validation = self.validate(desired)
        if not outcome.validation.ok:
            outcome.end_time = datetime.now(UTC)
            self._log_outcome(outcome)
            return outcome

        state = self._store.load()
        outcome.plan = compute_plan(desired.graph, state)
        outcome.execution = self._engine.apply(outcome.plan, state)
        outcome.post_validation = validate_records(self._engine.records, desired.required_tags)
        outcome.end_time = datetime.now(UTC)
        self._log_outcome(outcome)
        return outcome

    def verify(self) -> DriftReport:
        """Compare live resources with recorded state and re-run the checks."""
        if self._provisioner is None:
            raise RuntimeError("verify requires a provisioner")
        desired = self.compose()
        return detect_drift(self._store.load(), self._provisioner, desired.required_tags)

    def _log_outcome(self, outcome: ApplyOutcome) -> None:
        extra: dict[str, Any] = {
            "status": outcome.status.value,
            "duration_seconds": outcome.duration_seconds,
            "widgets": [spec.widget_name for spec in self._registry.widgets],
        }
        if outcome.execution is not None:
            extra["completed"] = len(outcome.execution.completed)
            extra["skipped"] = len(outcome.execution.skipped)
        if outcome.post_validation is not None:
            extra["post_validation_ok"] = outcome.post_validation.ok

        match outcome.status:
            case ApplyStatus.SUCCESS:
                logger.info("Reconciliation result", extra=extra)
            case ApplyStatus.PARTIAL:
                logger.error("Reconciliation partially applied", extra=extra)
            case ApplyStatus.VALIDATION_FAILED:
                logger.error("Reconciliation blocked by validation", extra=extra)
