"""Diff engine: desired resource graph versus persisted state.

Produces a minimal, dependency-ordered list of operations:
- Destroy for every recorded resource no longer desired, dependents first
- Create, UpdateInPlace, Replace or NoOp for every desired node, in
  topological order
- Listener rule changes last, ordered so a priority is vacated before
  another rule takes it

REFERENCES:
A node's attributes may hold Ref placeholders for another node's remote
identity. When the referenced node keeps its identity (NoOp or
UpdateInPlace), the Ref resolves to the recorded identity. When it is
created or replaced, the identity is unknown until apply and the
attribute counts as changed, but a pending identity alone never replaces
the dependent: it is updated in place to point at the new identity. Only a
concrete change to an attribute in the node's replacement set forces
Replace.

DETERMINISM:
Ties in both orderings are broken by resource identifier, so identical
inputs always produce identical plans. State is never mutated here.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .models import (
    Operation,
    OperationKind,
    Ref,
    ResourceKind,
    StateRecord,
)
from .resource_graph import CyclicDependencyError, ResourceGraph

logger = logging.getLogger(__name__)


# Attributes whose change forces destroy-then-create. Everything else,
# including tags, updates in place.
REPLACEMENT_ATTRIBUTES: dict[ResourceKind, frozenset[str]] = {
    ResourceKind.ECR_REPOSITORY: frozenset({"repository_name"}),
    ResourceKind.IAM_ROLE: frozenset({"role_name"}),
    ResourceKind.IAM_ROLE_POLICY: frozenset({"policy_name", "role"}),
    ResourceKind.LOG_GROUP: frozenset({"log_group_name"}),
    ResourceKind.LAMBDA_FUNCTION: frozenset({"function_name", "package_type"}),
    # Lambda permissions cannot be modified, only re-added
    ResourceKind.LAMBDA_PERMISSION: frozenset(
        {"statement_id", "action", "function", "principal", "source_arn"}
    ),
    ResourceKind.TARGET_GROUP: frozenset({"name", "target_type", "vpc_id"}),
    ResourceKind.TARGET_GROUP_ATTACHMENT: frozenset({"target_group_arn", "target_id"}),
    ResourceKind.LISTENER_RULE: frozenset({"listener_arn"}),
}

# Operations after which the node keeps its remote identity
_IDENTITY_PRESERVING = frozenset({OperationKind.NO_OP, OperationKind.UPDATE_IN_PLACE})

_SYMBOLS: dict[OperationKind, str] = {
    OperationKind.CREATE: "+",
    OperationKind.UPDATE_IN_PLACE: "~",
    OperationKind.REPLACE: "-/+",
    OperationKind.DESTROY: "-",
    OperationKind.NO_OP: " ",
}


class _KnownAfterApply:
    """Marker for a reference whose identity is only known after apply."""

    def __eq__(self, other: object) -> bool:
        return False

    def __hash__(self) -> int:
        return id(self)

    def __repr__(self) -> str:
        return "(known after apply)"


KNOWN_AFTER_APPLY = _KnownAfterApply()


def normalize_value(value: Any) -> Any:
    """Normalize a value for comparison.

    - Tuples and sets become lists (state round-trips through JSON)
    - Empty containers and empty strings are equivalent to missing
    """
    if isinstance(value, dict):
        normalized = {k: normalize_value(v) for k, v in value.items()}
        return normalized or None
    if isinstance(value, list | tuple):
        items = [normalize_value(v) for v in value]
        return items or None
    if isinstance(value, set | frozenset):
        items = sorted(normalize_value(v) for v in value)
        return items or None
    if value == "":
        return None
    return value


def changed_attribute_names(desired: Mapping[str, Any], recorded: Mapping[str, Any]) -> list[str]:
    """Names of attributes whose normalized values differ, sorted."""
    changed = []
    for key in sorted(set(desired) | set(recorded)):
        if normalize_value(desired.get(key)) != normalize_value(recorded.get(key)):
            changed.append(key)
    return changed


def resolve_references(value: Any, resolve: Any) -> Any:
    """Replace every Ref inside value with resolve(ref)."""
    if isinstance(value, Ref):
        return resolve(value)
    if isinstance(value, dict):
        return {k: resolve_references(v, resolve) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [resolve_references(v, resolve) for v in value]
    return value


def render_value(value: Any) -> Any:
    """JSON-friendly rendering of attributes that may still hold Refs."""
    return resolve_references(value, str)


def _holds_unknown(value: Any) -> bool:
    if value is KNOWN_AFTER_APPLY:
        return True
    if isinstance(value, dict):
        return any(_holds_unknown(v) for v in value.values())
    if isinstance(value, list | tuple):
        return any(_holds_unknown(v) for v in value)
    return False


@dataclass
class Plan:
    """Ordered operations produced by the diff engine."""

    operations: list[Operation] = field(default_factory=list)

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def counts(self) -> dict[OperationKind, int]:
        counts = {kind: 0 for kind in OperationKind}
        for op in self.operations:
            counts[op.kind] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return any(op.kind != OperationKind.NO_OP for op in self.operations)

    @property
    def changes(self) -> list[Operation]:
        return [op for op in self.operations if op.kind != OperationKind.NO_OP]

    def summary(self) -> str:
        counts = self.counts()
        return (
            f"Plan: {counts[OperationKind.CREATE]} to create, "
            f"{counts[OperationKind.UPDATE_IN_PLACE]} to update, "
            f"{counts[OperationKind.REPLACE]} to replace, "
            f"{counts[OperationKind.DESTROY]} to destroy, "
            f"{counts[OperationKind.NO_OP]} unchanged."
        )

    def render(self) -> list[str]:
        """Human-readable plan lines."""
        lines = []
        for op in self.operations:
            line = f"{_SYMBOLS[op.kind]:>3} {op.kind.value:<13} {op.resource_id}"
            if op.changed_attributes:
                line += f"  ({', '.join(op.changed_attributes)})"
            lines.append(line)
        lines.append(self.summary())
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "operations": [
                {
                    "kind": op.kind.value,
                    "resource_id": op.resource_id,
                    "resource_kind": op.resource_kind.value,
                    "widget": op.widget,
                    "changed_attributes": list(op.changed_attributes),
                    "prior_identity": op.prior.remote_identity if op.prior else None,
                    "attributes": render_value(op.target.attributes) if op.target else None,
                }
                for op in self.operations
            ],
            "counts": {kind.value: count for kind, count in self.counts().items()},
        }


def compute_plan(graph: ResourceGraph, state: Mapping[str, StateRecord]) -> Plan:
    """Compare the desired graph with recorded state.

    Args:
        graph: Desired resource graph.
        state: Recorded resources keyed by identifier (read-only).

    Returns:
        Plan with orphan destroys first, then one operation per desired node.
        Listener rules nothing depends on come last, in an order that frees
        each priority before another rule takes it.

    Raises:
        GraphError: If the desired graph has dangling dependencies or cycles.
        CyclicDependencyError: If recorded dependencies of orphans form a cycle.
    """
    orphans = {rid: record for rid, record in state.items() if rid not in graph}
    operations = [
        Operation(kind=OperationKind.DESTROY, target=None, prior=record)
        for record in _reverse_dependency_order(orphans)
    ]

    planned: dict[str, OperationKind] = {}
    listener_rules: list[Operation] = []

    def resolve(ref: Ref) -> Any:
        record = state.get(ref.resource_id)
        if record is not None and planned.get(ref.resource_id) in _IDENTITY_PRESERVING:
            return record.remote_identity
        return KNOWN_AFTER_APPLY

    for node in graph.topological_order():
        prior = state.get(node.resource_id)
        changed: tuple[str, ...] = ()

        if prior is None:
            kind = OperationKind.CREATE
        else:
            desired = resolve_references(node.attributes, resolve)
            changed = tuple(changed_attribute_names(desired, prior.last_known_attributes))
            if not changed:
                kind = OperationKind.NO_OP
            elif REPLACEMENT_ATTRIBUTES.get(node.kind, frozenset()).intersection(
                name for name in changed if not _holds_unknown(desired.get(name))
            ):
                kind = OperationKind.REPLACE
            else:
                kind = OperationKind.UPDATE_IN_PLACE

        planned[node.resource_id] = kind
        op = Operation(kind=kind, target=node, prior=prior, changed_attributes=changed)
        if node.kind == ResourceKind.LISTENER_RULE and not graph.dependents_of(node.resource_id):
            listener_rules.append(op)
        else:
            operations.append(op)

    plan = Plan(operations + schedule_listener_rules(listener_rules))
    logger.info(
        "Plan computed",
        extra={
            "operation_count": len(plan),
            **{f"{kind.value.lower()}_count": n for kind, n in plan.counts().items()},
        },
    )
    return plan


def _reverse_dependency_order(records: Mapping[str, StateRecord]) -> list[StateRecord]:
    """Order records so dependents come before their dependencies.

    Only dependencies among the given records are considered.
    """
    # blockers[x] = number of records in the set that depend on x
    blockers: dict[str, int] = {rid: 0 for rid in records}
    for record in records.values():
        for dep in set(record.depends_on):
            if dep in blockers:
                blockers[dep] += 1

    ready = [rid for rid, count in blockers.items() if count == 0]
    heapq.heapify(ready)
    ordered: list[StateRecord] = []

    while ready:
        current = heapq.heappop(ready)
        ordered.append(records[current])
        for dep in set(records[current].depends_on):
            if dep in blockers:
                blockers[dep] -= 1
                if blockers[dep] == 0:
                    heapq.heappush(ready, dep)

    if len(ordered) != len(records):
        raise CyclicDependencyError(sorted(rid for rid, n in blockers.items() if n > 0))
    return ordered


# =============================================================================
# Listener rule priorities
# =============================================================================


def listener_slot(attributes: Mapping[str, Any]) -> tuple[Any, Any] | None:
    """(listener, priority) a listener rule occupies, or None if unset."""
    priority = attributes.get("priority")
    if priority is None:
        return None
    return attributes.get("listener_arn"), priority


def schedule_listener_rules(operations: Sequence[Operation]) -> list[Operation]:
    """Order listener rule operations so no two rules hold a priority at once.

    A listener rejects a rule whose priority is still held by another rule,
    so a rule moving or being created onto a priority must wait until the
    current holder has moved away. At each step the first waiting operation
    (by identifier) whose target priority is free runs next. When every
    remaining operation waits on another one (priorities swapped in a
    cycle), the first runs anyway; the execution engine parks the holder on
    a spare priority first.

    NoOps keep their priority and are listed first.
    """
    held: dict[tuple[Any, Any], str] = {}
    for op in operations:
        if op.prior is not None:
            slot = listener_slot(op.prior.last_known_attributes)
            if slot is not None:
                held[slot] = op.resource_id

    unchanged = [op for op in operations if op.kind == OperationKind.NO_OP]
    pending = sorted(
        (op for op in operations if op.kind != OperationKind.NO_OP),
        key=lambda op: op.resource_id,
    )
    ordered: list[Operation] = []

    while pending:
        chosen = pending[0]
        for op in pending:
            target = _target_slot(op)
            if target is None or held.get(target, op.resource_id) == op.resource_id:
                chosen = op
                break
        pending.remove(chosen)
        ordered.append(chosen)

        if chosen.prior is not None:
            current = listener_slot(chosen.prior.last_known_attributes)
            if current is not None and held.get(current) == chosen.resource_id:
                del held[current]
        target = _target_slot(chosen)
        if target is not None:
            held[target] = chosen.resource_id

    return sorted(unchanged, key=lambda op: op.resource_id) + ordered


def _target_slot(op: Operation) -> tuple[Any, Any] | None:
    if op.target is None:
        return None
    return listener_slot(op.target.attributes)
