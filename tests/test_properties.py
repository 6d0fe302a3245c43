"""Property-based tests for reconciliation invariants."""

from __future__ import annotations

import dataclasses
import tempfile
from pathlib import Path

from conftest import (
    LISTENER_ARN,
    MANAGED_BY,
    PROJECT,
    applied_state,
    desired_graph,
    no_jitter,
    no_sleep,
)
from hypothesis import given, settings
from hypothesis import strategies as st
from provisioner_mock import MockProvisioner

from widgetctl.config import RetryPolicy
from widgetctl.diff_engine import REPLACEMENT_ATTRIBUTES, compute_plan
from widgetctl.executor import ExecutionEngine
from widgetctl.models import (
    REQUIRED_TAG_KEYS,
    DiscoveredResources,
    OperationKind,
    Ref,
    WidgetSpec,
)
from widgetctl.routing import compose_routing_table
from widgetctl.state_store import StateStore
from widgetctl.validator import check_routing, check_tags, required_tags_by_widget

DISCOVERED = DiscoveredResources(
    account_id="123456789012",
    region="us-east-1",
    vpc_id="vpc-0abc123",
    listener_arn=LISTENER_ARN,
)

widget_names = st.from_regex(r"[a-z][a-z0-9]{1,12}", fullmatch=True)
user_tags = st.dictionaries(
    st.from_regex(r"[A-Z][a-z]{1,8}", fullmatch=True).filter(lambda k: k not in REQUIRED_TAG_KEYS),
    st.text(min_size=1, max_size=8),
    max_size=3,
)


@st.composite
def widget_specs(draw: st.DrawFn, name: str, priority: int | None = None) -> WidgetSpec:
    return WidgetSpec(
        widget_name=name,
        environment=draw(st.sampled_from(["production", "staging", "dev"])),
        memory_size=draw(st.integers(min_value=128, max_value=10240)),
        timeout_seconds=draw(st.integers(min_value=1, max_value=900)),
        environment_variables=draw(
            st.dictionaries(
                st.from_regex(r"[A-Z]{1,6}", fullmatch=True), st.text(max_size=6), max_size=2
            )
        ),
        priority=priority,
        tags=draw(user_tags),
    )


@st.composite
def registries(draw: st.DrawFn, max_widgets: int = 5) -> list[WidgetSpec]:
    names = draw(st.lists(widget_names, min_size=1, max_size=max_widgets, unique=True))
    explicit = draw(
        st.lists(
            st.integers(min_value=1, max_value=50000),
            min_size=len(names),
            max_size=len(names),
            unique=True,
        )
    )
    use_explicit = draw(st.lists(st.booleans(), min_size=len(names), max_size=len(names)))
    return [
        draw(widget_specs(name, priority if chosen else None))
        for name, priority, chosen in zip(names, explicit, use_explicit, strict=True)
    ]


@given(registries())
def test_every_taggable_resource_carries_exact_required_tags(widgets: list[WidgetSpec]) -> None:
    """Required tags are present with exact values on every taggable resource."""
    graph = desired_graph(widgets, DISCOVERED)
    required = required_tags_by_widget(widgets, PROJECT, MANAGED_BY)

    assert check_tags(graph, required) == []
    for node in graph.nodes:
        if node.taggable:
            tags = node.attributes["tags"]
            assert {k: tags[k] for k in REQUIRED_TAG_KEYS} == required[node.widget]


@given(registries())
def test_listener_priorities_distinct_and_paths_disjoint(widgets: list[WidgetSpec]) -> None:
    """Composed listener rules never collide."""
    assignments = compose_routing_table(widgets)

    priorities = [a.priority for a in assignments]
    assert len(set(priorities)) == len(priorities)
    assert check_routing(assignments) == []


@given(registries())
def test_plan_after_apply_is_all_noop(widgets: list[WidgetSpec]) -> None:
    """Planning against freshly applied state changes nothing."""
    graph = desired_graph(widgets, DISCOVERED)

    plan = compute_plan(graph, applied_state(graph))

    assert all(op.kind == OperationKind.NO_OP for op in plan)


@given(registries(), registries())
def test_plan_deterministic(widgets: list[WidgetSpec], previous: list[WidgetSpec]) -> None:
    """Identical inputs give identical operation lists in identical order."""
    previous_names = {w.widget_name for w in previous}
    if previous_names & {w.widget_name for w in widgets}:
        previous = []
    state = applied_state(desired_graph(previous, DISCOVERED)) if previous else {}
    graph = desired_graph(widgets, DISCOVERED)

    first = compute_plan(graph, state)
    second = compute_plan(graph, dict(sorted(state.items(), reverse=True)))

    assert first.to_dict() == second.to_dict()


@settings(max_examples=25, deadline=None)
@given(st.integers(min_value=0, max_value=8))
def test_partial_failure_is_durable(failing_index: int) -> None:
    """Operations completed before a permanent failure are NoOp on the next run."""
    spec = WidgetSpec(widget_name="clubhouse", environment="production")
    graph = desired_graph([spec], DISCOVERED)
    first_plan = compute_plan(graph, {})
    failing_id = list(first_plan)[failing_index].resource_id

    with tempfile.TemporaryDirectory() as tmp:
        store = StateStore.from_path(Path(tmp) / "state.json")
        provisioner = MockProvisioner()
        provisioner.fail_permanently(failing_id)
        engine = ExecutionEngine(
            provisioner,
            store,
            retry=RetryPolicy(base_seconds=0.0, cap_seconds=0.0, max_attempts=2),
            sleep=no_sleep,
            jitter=no_jitter,
        )

        result = engine.apply(first_plan, {})
        replan = compute_plan(graph, store.load())

        completed = {op.resource_id for op in result.completed}
        assert len(completed) == failing_index
        for op in replan:
            expected = OperationKind.NO_OP if op.resource_id in completed else OperationKind.CREATE
            assert op.kind == expected

        provisioner.clear_failures()
        engine.apply(replan, store.load())
        assert not compute_plan(graph, store.load()).has_changes


@settings(max_examples=25, deadline=None)
@given(registries(max_widgets=4), registries(max_widgets=4))
def test_routing_changes_apply_on_unique_priority_listener(
    previous: list[WidgetSpec], widgets: list[WidgetSpec]
) -> None:
    """Moving from one registry to another never takes a priority that is still held."""
    with tempfile.TemporaryDirectory() as tmp:
        store = StateStore.from_path(Path(tmp) / "state.json")
        engine = ExecutionEngine(
            MockProvisioner(unique_priorities=True), store, sleep=no_sleep, jitter=no_jitter
        )

        for registry in (previous, widgets):
            graph = desired_graph(registry, DISCOVERED)
            state = store.load()
            result = engine.apply(compute_plan(graph, state), state)
            assert result.success, result.error

        assert not compute_plan(graph, store.load()).has_changes


CLUBHOUSE_GRAPH = desired_graph(
    [WidgetSpec(widget_name="clubhouse", environment="production")], DISCOVERED
)
REPLACEABLE = sorted(
    (node.resource_id, attribute)
    for node in CLUBHOUSE_GRAPH.nodes
    for attribute in REPLACEMENT_ATTRIBUTES[node.kind]
    if not isinstance(node.attributes.get(attribute), Ref)
)


@given(st.sampled_from(REPLACEABLE))
def test_replacement_updates_dependents_in_place(target: tuple[str, str]) -> None:
    """Changing an immutable attribute replaces only that resource."""
    resource_id, attribute = target
    state = applied_state(CLUBHOUSE_GRAPH)
    record = state[resource_id]
    state[resource_id] = dataclasses.replace(
        record, last_known_attributes={**record.last_known_attributes, attribute: "legacy"}
    )

    plan = compute_plan(CLUBHOUSE_GRAPH, state)

    assert {op.resource_id for op in plan if op.kind == OperationKind.REPLACE} == {resource_id}
    for op in plan.changes:
        if op.resource_id != resource_id:
            assert op.kind == OperationKind.UPDATE_IN_PLACE
            assert op.target is not None and resource_id in op.target.references()
