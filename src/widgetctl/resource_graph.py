"""Resource graph construction and dependency ordering.

This module implements the desired-state side of reconciliation:
1. Graph construction from a WidgetSpec (one node per resource kind)
2. Topological ordering for execution
3. Cycle and dangling-reference detection

DESIGN:
- Node names are derived deterministically from the widget name
- Shared infrastructure (VPC, listener, account) is injected as constants
  from DiscoveredResources, never as nodes
- Cross-node values are expressed as Ref placeholders and resolved to
  remote identities by the diff and execution engines

EXAMPLE (widget "clubhouse"):
    ecr_repository.widget-clubhouse
    iam_role.lambda-widget-clubhouse-role
    iam_role_policy.lambda-widget-clubhouse-logs   -> role, log group
    log_group./aws/lambda/lambda-widget-clubhouse
    lambda_function.lambda-widget-clubhouse        -> ecr, role, policy, log group
    lambda_permission.alb-invoke-widget-clubhouse  -> lambda, target group
    target_group.tg-widget-clubhouse
    target_group_attachment.tg-widget-clubhouse-lambda -> tg, lambda, permission
    listener_rule.rule-widget-clubhouse            -> target group
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Iterator, Sequence

from .models import (
    TAGGABLE_KINDS,
    DiscoveredResources,
    ListenerRuleAssignment,
    Ref,
    ResourceKind,
    ResourceNode,
    WidgetSpec,
    make_resource_id,
)

logger = logging.getLogger(__name__)

LAMBDA_ASSUME_ROLE_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "lambda.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}

LOG_WRITE_ACTIONS = ["logs:CreateLogStream", "logs:PutLogEvents"]
ALB_INVOKE_PRINCIPAL = "elasticloadbalancing.amazonaws.com"


class GraphError(Exception):
    """Raised when the resource graph is structurally invalid."""

    def __init__(self, message: str, resource_id: str | None = None) -> None:
        super().__init__(message)
        self.resource_id = resource_id


class CyclicDependencyError(GraphError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, cycle_nodes: Sequence[str]) -> None:
        self.cycle_nodes = list(cycle_nodes)
        super().__init__(
            f"Circular dependency detected involving: {self.cycle_nodes}",
            resource_id=self.cycle_nodes[0] if self.cycle_nodes else None,
        )


class DanglingDependencyError(GraphError):
    """Raised when a node depends on an identifier absent from the graph."""

    def __init__(self, resource_id: str, missing: str) -> None:
        self.missing = missing
        super().__init__(
            f"Resource '{resource_id}' depends on '{missing}' which is not in the graph",
            resource_id=resource_id,
        )


class UnresolvedReferenceError(GraphError):
    """Raised when a Ref cannot be resolved to a remote identity."""

    def __init__(self, resource_id: str, reference: str) -> None:
        self.reference = reference
        super().__init__(
            f"Resource '{resource_id}' references '{reference}' which has no remote identity",
            resource_id=resource_id,
        )


class _TopologicalOrder:
    """Restartable lazy view of a graph in dependency order.

    Each iteration runs Kahn's algorithm from scratch, popping the smallest
    identifier among ready nodes so the order is deterministic.
    """

    def __init__(self, graph: ResourceGraph) -> None:
        self._graph = graph

    def __iter__(self) -> Iterator[ResourceNode]:
        graph = self._graph
        graph.check_dependencies()

        in_degree: dict[str, int] = {}
        dependents: dict[str, list[str]] = {rid: [] for rid in graph.resource_ids}
        for node in graph.nodes:
            in_degree[node.resource_id] = len(node.depends_on)
            for dep in node.depends_on:
                dependents[dep].append(node.resource_id)

        ready = [rid for rid, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        emitted = 0

        while ready:
            current = heapq.heappop(ready)
            emitted += 1
            yield graph.get(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if emitted != len(graph):
            cycle_nodes = sorted(rid for rid, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(cycle_nodes)


class ResourceGraph:
    """Directed acyclic graph of desired resources."""

    def __init__(self, nodes: Iterable[ResourceNode] = ()) -> None:
        self._nodes: dict[str, ResourceNode] = {}
        for node in nodes:
            self.add(node)

    def add(self, node: ResourceNode) -> None:
        """Add a node to the graph.

        Raises:
            GraphError: If a node with the same identifier already exists.
        """
        rid = node.resource_id
        if rid in self._nodes:
            raise GraphError(f"Duplicate resource identifier '{rid}'", resource_id=rid)
        self._nodes[rid] = node

    def merge(self, other: ResourceGraph) -> None:
        for node in other.nodes:
            self.add(node)

    def get(self, resource_id: str) -> ResourceNode:
        return self._nodes[resource_id]

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> list[ResourceNode]:
        """Nodes sorted by identifier."""
        return [self._nodes[rid] for rid in sorted(self._nodes)]

    @property
    def resource_ids(self) -> list[str]:
        return sorted(self._nodes)

    def dependents_of(self, resource_id: str) -> list[str]:
        """Identifiers of nodes that directly depend on the given node."""
        return sorted(
            node.resource_id for node in self._nodes.values() if resource_id in node.depends_on
        )

    def check_dependencies(self) -> None:
        """Verify every dependency points at a node in this graph.

        Raises:
            DanglingDependencyError: On the first missing dependency, in identifier order.
        """
        for node in self.nodes:
            for dep in sorted(node.depends_on):
                if dep not in self._nodes:
                    raise DanglingDependencyError(node.resource_id, dep)

    def topological_order(self) -> _TopologicalOrder:
        """Nodes in dependency order (dependencies first).

        The returned iterable is lazy and may be iterated repeatedly.
        CyclicDependencyError or DanglingDependencyError surface on iteration.
        """
        return _TopologicalOrder(self)

    def validate(self) -> None:
        """Check the graph for dangling dependencies and cycles."""
        for _ in self.topological_order():
            pass


# =============================================================================
# Widget graph construction
# =============================================================================


def resource_names(widget_name: str) -> dict[ResourceKind, str]:
    """Deterministic resource names derived from a widget name."""
    function_name = f"lambda-widget-{widget_name}"
    return {
        ResourceKind.ECR_REPOSITORY: f"widget-{widget_name}",
        ResourceKind.IAM_ROLE: f"{function_name}-role",
        ResourceKind.IAM_ROLE_POLICY: f"{function_name}-logs",
        ResourceKind.LOG_GROUP: f"/aws/lambda/{function_name}",
        ResourceKind.LAMBDA_FUNCTION: function_name,
        ResourceKind.LAMBDA_PERMISSION: f"alb-invoke-widget-{widget_name}",
        ResourceKind.TARGET_GROUP: f"tg-widget-{widget_name}",
        ResourceKind.TARGET_GROUP_ATTACHMENT: f"tg-widget-{widget_name}-lambda",
        ResourceKind.LISTENER_RULE: f"rule-widget-{widget_name}",
    }


def build_widget_graph(
    spec: WidgetSpec,
    assignment: ListenerRuleAssignment,
    discovered: DiscoveredResources,
    project: str,
    managed_by: str,
) -> ResourceGraph:
    """Build the nine-node resource graph for one widget.

    Args:
        spec: Widget configuration.
        assignment: Listener priority and path patterns for this widget.
        discovered: Shared infrastructure constants.
        project: Required Project tag value.
        managed_by: Required ManagedBy tag value.

    Returns:
        Graph with one node per ResourceKind.
    """
    if assignment.widget_name != spec.widget_name:
        raise ValueError(
            f"Assignment for '{assignment.widget_name}' passed for widget '{spec.widget_name}'"
        )

    names = resource_names(spec.widget_name)
    ids = {kind: make_resource_id(kind, name) for kind, name in names.items()}
    tags = spec.default_tags(project, managed_by)
    registry_host = f"{discovered.account_id}.dkr.ecr.{discovered.region}.amazonaws.com"

    def node(kind: ResourceKind, attributes: dict, *depends: ResourceKind) -> ResourceNode:
        if kind in TAGGABLE_KINDS:
            attributes = {**attributes, "tags": dict(tags)}
        return ResourceNode(
            kind=kind,
            name=names[kind],
            widget=spec.widget_name,
            attributes=attributes,
            depends_on=frozenset(ids[dep] for dep in depends),
        )

    nodes = [
        node(
            ResourceKind.ECR_REPOSITORY,
            {
                "repository_name": names[ResourceKind.ECR_REPOSITORY],
                "image_tag_mutability": "IMMUTABLE",
                "scan_on_push": True,
            },
        ),
        node(
            ResourceKind.IAM_ROLE,
            {
                "role_name": names[ResourceKind.IAM_ROLE],
                "assume_role_policy": LAMBDA_ASSUME_ROLE_POLICY,
            },
        ),
        node(
            ResourceKind.LOG_GROUP,
            {
                "log_group_name": names[ResourceKind.LOG_GROUP],
                "retention_in_days": spec.log_retention_days,
            },
        ),
        node(
            ResourceKind.IAM_ROLE_POLICY,
            {
                "policy_name": names[ResourceKind.IAM_ROLE_POLICY],
                "role": Ref(ids[ResourceKind.IAM_ROLE]),
                "actions": list(LOG_WRITE_ACTIONS),
                "resource": Ref(ids[ResourceKind.LOG_GROUP]),
            },
            ResourceKind.IAM_ROLE,
            ResourceKind.LOG_GROUP,
        ),
        node(
            ResourceKind.LAMBDA_FUNCTION,
            {
                "function_name": names[ResourceKind.LAMBDA_FUNCTION],
                "package_type": "Image",
                "image_repository": Ref(ids[ResourceKind.ECR_REPOSITORY]),
                "image_uri": (
                    f"{registry_host}/{names[ResourceKind.ECR_REPOSITORY]}:{spec.image_tag}"
                ),
                "role": Ref(ids[ResourceKind.IAM_ROLE]),
                "memory_size": spec.memory_size,
                "timeout": spec.timeout_seconds,
                "environment": dict(spec.environment_variables),
                "log_group": Ref(ids[ResourceKind.LOG_GROUP]),
            },
            ResourceKind.ECR_REPOSITORY,
            ResourceKind.IAM_ROLE,
            ResourceKind.IAM_ROLE_POLICY,
            ResourceKind.LOG_GROUP,
        ),
        node(
            ResourceKind.TARGET_GROUP,
            {
                "name": names[ResourceKind.TARGET_GROUP],
                "target_type": "lambda",
                "vpc_id": discovered.vpc_id,
                "health_check_path": spec.health_check_path,
            },
        ),
        node(
            ResourceKind.LAMBDA_PERMISSION,
            {
                "statement_id": names[ResourceKind.LAMBDA_PERMISSION],
                "action": "lambda:InvokeFunction",
                "function": Ref(ids[ResourceKind.LAMBDA_FUNCTION]),
                "principal": ALB_INVOKE_PRINCIPAL,
                "source_arn": Ref(ids[ResourceKind.TARGET_GROUP]),
            },
            ResourceKind.LAMBDA_FUNCTION,
            ResourceKind.TARGET_GROUP,
        ),
        node(
            ResourceKind.TARGET_GROUP_ATTACHMENT,
            {
                "target_group_arn": Ref(ids[ResourceKind.TARGET_GROUP]),
                "target_id": Ref(ids[ResourceKind.LAMBDA_FUNCTION]),
            },
            ResourceKind.TARGET_GROUP,
            ResourceKind.LAMBDA_FUNCTION,
            ResourceKind.LAMBDA_PERMISSION,
        ),
        node(
            ResourceKind.LISTENER_RULE,
            {
                "listener_arn": discovered.listener_arn,
                "priority": assignment.priority,
                "path_patterns": sorted(assignment.path_patterns),
                "target_group_arn": Ref(ids[ResourceKind.TARGET_GROUP]),
            },
            ResourceKind.TARGET_GROUP,
        ),
    ]

    graph = ResourceGraph(nodes)
    logger.debug(
        "Built widget graph",
        extra={"widget": spec.widget_name, "node_count": len(graph)},
    )
    return graph


def build_desired_graph(
    widgets: Sequence[WidgetSpec],
    assignments: Sequence[ListenerRuleAssignment],
    discovered: DiscoveredResources,
    project: str,
    managed_by: str,
) -> ResourceGraph:
    """Merge the graphs of all registered widgets and validate the result.

    Raises:
        GraphError: On duplicate identifiers, dangling dependencies or cycles.
        KeyError: If a widget has no listener rule assignment.
    """
    by_widget = {a.widget_name: a for a in assignments}
    graph = ResourceGraph()
    for spec in widgets:
        graph.merge(
            build_widget_graph(spec, by_widget[spec.widget_name], discovered, project, managed_by)
        )
    graph.validate()
    return graph
