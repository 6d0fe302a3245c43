"""Invariant validation for the composed desired state and live state.

Two independent checks, both pure functions:
1. Tag consistency: every taggable resource carries Project, Component,
   Environment and ManagedBy with the exact widget-scoped values
2. Routing non-collision: listener rule priorities are pairwise distinct
   and path patterns of different widgets never overlap

Both run before execution (fail fast) and again in verification mode
against live attributes, where they double as a drift detector.
Every violation is collected; nothing stops at the first one.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from itertools import combinations
from typing import Any

from .diff_engine import changed_attribute_names
from .models import (
    REQUIRED_TAG_KEYS,
    TAGGABLE_KINDS,
    ListenerRuleAssignment,
    ResourceKind,
    StateRecord,
    WidgetSpec,
)
from .provisioner import ProvisionerClient
from .resource_graph import ResourceGraph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TagViolation:
    """Missing or incorrect required tags on one resource."""

    resource_id: str
    widget: str
    missing: tuple[str, ...] = ()
    incorrect: tuple[tuple[str, str, str], ...] = ()  # (key, expected, actual)
    reason: str = ""

    def describe(self) -> str:
        parts = []
        if self.reason:
            parts.append(self.reason)
        if self.missing:
            parts.append(f"missing tags: {', '.join(self.missing)}")
        for key, expected, actual in self.incorrect:
            parts.append(f"{key}: expected '{expected}', got '{actual}'")
        return f"{self.resource_id}: {'; '.join(parts)}"


@dataclass(frozen=True)
class RoutingCollision:
    """Two widgets competing for the same priority or path."""

    widgets: tuple[str, str]
    priority: int | None = None
    patterns: tuple[str, str] | None = None

    def describe(self) -> str:
        first, second = self.widgets
        if self.priority is not None:
            return f"widgets '{first}' and '{second}' share listener priority {self.priority}"
        assert self.patterns is not None
        return (
            f"widgets '{first}' and '{second}' have overlapping path patterns "
            f"'{self.patterns[0]}' and '{self.patterns[1]}'"
        )


def _detail_lines(
    violations: Sequence[TagViolation], collisions: Sequence[RoutingCollision]
) -> list[str]:
    lines = [f"tag policy: {v.describe()}" for v in violations]
    lines += [f"routing: {c.describe()}" for c in collisions]
    return lines


class PolicyViolationError(Exception):
    """Raised when validation blocks apply.

    Carries every tag violation and routing collision found, so a failure
    in one check never hides the other.
    """

    title = "Validation failed"

    def __init__(
        self,
        violations: Sequence[TagViolation] = (),
        collisions: Sequence[RoutingCollision] = (),
    ) -> None:
        self.violations = list(violations)
        self.collisions = list(collisions)
        self.resource_ids = [v.resource_id for v in self.violations]
        super().__init__(
            f"{self.title}:\n  - "
            + "\n  - ".join(_detail_lines(self.violations, self.collisions))
        )


class TagPolicyError(PolicyViolationError):
    """Raised when resources are missing required tags."""

    title = "Tag policy violated"

    def __init__(self, violations: Sequence[TagViolation]) -> None:
        super().__init__(violations=violations)


class RoutingCollisionError(PolicyViolationError):
    """Raised when listener rule assignments collide."""

    title = "Routing collision"

    def __init__(self, collisions: Sequence[RoutingCollision]) -> None:
        super().__init__(collisions=collisions)


@dataclass
class ValidationReport:
    """Result of running both invariant checks."""

    tag_violations: list[TagViolation] = field(default_factory=list)
    routing_collisions: list[RoutingCollision] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.tag_violations and not self.routing_collisions

    def lines(self) -> list[str]:
        return _detail_lines(self.tag_violations, self.routing_collisions)

    def raise_for_violations(self) -> None:
        """Raise one error carrying every violation found.

        Raises:
            TagPolicyError: If only tag violations were found.
            RoutingCollisionError: If only routing collisions were found.
            PolicyViolationError: If both checks failed.
        """
        if self.tag_violations and self.routing_collisions:
            raise PolicyViolationError(self.tag_violations, self.routing_collisions)
        if self.tag_violations:
            raise TagPolicyError(self.tag_violations)
        if self.routing_collisions:
            raise RoutingCollisionError(self.routing_collisions)


# =============================================================================
# Tag consistency
# =============================================================================


def required_tags_by_widget(
    widgets: Iterable[WidgetSpec], project: str, managed_by: str
) -> dict[str, dict[str, str]]:
    return {spec.widget_name: spec.required_tags(project, managed_by) for spec in widgets}


def _check_tag_set(
    resource_id: str,
    widget: str,
    tags: Mapping[str, Any] | None,
    required: Mapping[str, Mapping[str, str]],
) -> TagViolation | None:
    expected = required.get(widget)
    if expected is None:
        return TagViolation(
            resource_id=resource_id,
            widget=widget,
            missing=REQUIRED_TAG_KEYS,
            reason=f"widget '{widget}' is not registered",
        )

    tags = tags or {}
    missing = tuple(key for key in REQUIRED_TAG_KEYS if key not in tags)
    incorrect = tuple(
        (key, expected[key], str(tags[key]))
        for key in REQUIRED_TAG_KEYS
        if key in tags and tags[key] != expected[key]
    )
    if missing or incorrect:
        return TagViolation(
            resource_id=resource_id, widget=widget, missing=missing, incorrect=incorrect
        )
    return None


def check_tags(
    graph: ResourceGraph, required: Mapping[str, Mapping[str, str]]
) -> list[TagViolation]:
    """Check realized tags of every taggable node in the desired graph.

    Args:
        graph: Desired resource graph.
        required: Required tag values keyed by widget name.

    Returns:
        All violations, ordered by resource identifier.
    """
    violations = []
    for node in graph.nodes:
        if not node.taggable:
            continue
        violation = _check_tag_set(
            node.resource_id, node.widget, node.attributes.get("tags"), required
        )
        if violation is not None:
            violations.append(violation)
    return violations


# =============================================================================
# Routing non-collision
# =============================================================================


def patterns_overlap(first: str, second: str) -> bool:
    """True if some request path could match both listener path patterns."""
    if first == second:
        return True
    return ("*" in first and fnmatchcase(second, first)) or (
        "*" in second and fnmatchcase(first, second)
    )


def check_routing(assignments: Sequence[ListenerRuleAssignment]) -> list[RoutingCollision]:
    """Check priorities and path patterns across all widgets on one listener.

    Returns:
        All collisions, ordered by widget pair.
    """
    collisions = []
    ordered = sorted(assignments, key=lambda a: a.widget_name)
    for first, second in combinations(ordered, 2):
        widgets = (first.widget_name, second.widget_name)
        if first.priority == second.priority:
            collisions.append(RoutingCollision(widgets=widgets, priority=first.priority))
        for p in sorted(first.path_patterns):
            for q in sorted(second.path_patterns):
                if patterns_overlap(p, q):
                    collisions.append(RoutingCollision(widgets=widgets, patterns=(p, q)))
    return collisions


def validate(
    graph: ResourceGraph,
    assignments: Sequence[ListenerRuleAssignment],
    required: Mapping[str, Mapping[str, str]],
) -> ValidationReport:
    """Run both checks against the composed desired state."""
    report = ValidationReport(
        tag_violations=check_tags(graph, required),
        routing_collisions=check_routing(assignments),
    )
    _log_report(report, mode="desired")
    return report


# =============================================================================
# Verification against live state
# =============================================================================


@dataclass
class DriftReport:
    """Differences between recorded state and live resources."""

    missing: list[str] = field(default_factory=list)
    drifted: dict[str, list[str]] = field(default_factory=dict)
    validation: ValidationReport = field(default_factory=ValidationReport)

    @property
    def ok(self) -> bool:
        return not self.missing and not self.drifted and self.validation.ok

    def lines(self) -> list[str]:
        lines = [f"missing: {rid}" for rid in self.missing]
        lines += [
            f"drifted: {rid} ({', '.join(attrs)})" for rid, attrs in sorted(self.drifted.items())
        ]
        return lines + self.validation.lines()


def detect_drift(
    records: Mapping[str, StateRecord],
    provisioner: ProvisionerClient,
    required: Mapping[str, Mapping[str, str]],
) -> DriftReport:
    """Compare live attributes with recorded state and re-run both checks.

    Args:
        records: Recorded resources keyed by identifier.
        provisioner: Source of live attributes.
        required: Required tag values keyed by widget name.
    """
    report = DriftReport()
    live: dict[str, tuple[StateRecord, dict[str, Any]]] = {}

    for rid in sorted(records):
        record = records[rid]
        attributes = provisioner.describe(record.remote_identity)
        if attributes is None:
            report.missing.append(rid)
            continue
        live[rid] = (record, attributes)
        changed = changed_attribute_names(attributes, record.last_known_attributes)
        if changed:
            report.drifted[rid] = changed

    report.validation = _validate_attribute_sets(
        [(record, attributes) for record, attributes in live.values()], required
    )
    _log_report(report.validation, mode="live")
    if report.missing or report.drifted:
        logger.warning(
            "Drift detected",
            extra={"missing": report.missing, "drifted": sorted(report.drifted)},
        )
    return report


def _log_report(report: ValidationReport, mode: str) -> None:
    for violation in report.tag_violations:
        logger.error(
            "Tag policy violation",
            extra={"mode": mode, "resource_id": violation.resource_id, "detail": violation.describe()},
        )
    for collision in report.routing_collisions:
        logger.error(
            "Routing collision",
            extra={"mode": mode, "widgets": list(collision.widgets), "detail": collision.describe()},
        )


def validate_records(
    records: Mapping[str, StateRecord],
    required: Mapping[str, Mapping[str, str]],
) -> ValidationReport:
    """Run both checks over the attributes recorded in state."""
    report = _validate_attribute_sets(
        [(records[rid], records[rid].last_known_attributes) for rid in sorted(records)], required
    )
    _log_report(report, mode="recorded")
    return report


def _validate_attribute_sets(
    items: Sequence[tuple[StateRecord, Mapping[str, Any]]],
    required: Mapping[str, Mapping[str, str]],
) -> ValidationReport:
    tag_violations = []
    assignments = []
    for record, attributes in items:
        if record.kind in TAGGABLE_KINDS:
            violation = _check_tag_set(
                record.resource_id, record.widget, attributes.get("tags"), required
            )
            if violation is not None:
                tag_violations.append(violation)
        if record.kind == ResourceKind.LISTENER_RULE:
            assignments.append(
                ListenerRuleAssignment(
                    widget_name=record.widget,
                    priority=int(attributes.get("priority", 0)),
                    path_patterns=frozenset(attributes.get("path_patterns") or ()),
                )
            )
    return ValidationReport(
        tag_violations=tag_violations,
        routing_collisions=check_routing(assignments),
    )
