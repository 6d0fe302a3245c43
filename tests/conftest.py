"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provisioner_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from provisioner_mock import MockProvisioner  # noqa: E402

from widgetctl.config import Config, RetryPolicy  # noqa: E402
from widgetctl.diff_engine import resolve_references  # noqa: E402
from widgetctl.models import (  # noqa: E402
    DiscoveredResources,
    StateRecord,
    WidgetRegistry,
    WidgetSpec,
)
from widgetctl.resource_graph import ResourceGraph, build_desired_graph  # noqa: E402
from widgetctl.routing import compose_routing_table  # noqa: E402
from widgetctl.state_store import StateStore  # noqa: E402

PROJECT = "slugger"
MANAGED_BY = "terraform"
LISTENER_ARN = (
    "arn:aws:elasticloadbalancing:us-east-1:123456789012:"
    "listener/app/slugger-alb/50dc6c495c0c9188/f2f7dc8efc522ab2"
)

REGISTRY_YAML = f"""\
discovered:
  accountId: "123456789012"
  region: us-east-1
  vpcId: vpc-0abc123
  listenerArn: {LISTENER_ARN}
widgets:
  - widgetName: clubhouse
    environment: production
    memorySize: 512
    timeoutSeconds: 30
  - widgetName: flashcard
    environment: production
"""


@pytest.fixture
def discovered() -> DiscoveredResources:
    return DiscoveredResources(
        account_id="123456789012",
        region="us-east-1",
        vpc_id="vpc-0abc123",
        listener_arn=LISTENER_ARN,
    )


@pytest.fixture
def clubhouse() -> WidgetSpec:
    return WidgetSpec(widget_name="clubhouse", environment="production")


@pytest.fixture
def flashcard() -> WidgetSpec:
    return WidgetSpec(widget_name="flashcard", environment="production")


@pytest.fixture
def registry(
    discovered: DiscoveredResources, clubhouse: WidgetSpec, flashcard: WidgetSpec
) -> WidgetRegistry:
    return WidgetRegistry(discovered=discovered, widgets=[clubhouse, flashcard])


@pytest.fixture
def registry_file(tmp_path: Path) -> Path:
    path = tmp_path / "registry.yaml"
    path.write_text(REGISTRY_YAML)
    return path


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "widgetctl.state.json"


@pytest.fixture
def store(state_path: Path) -> StateStore:
    state_path.parent.mkdir(parents=True, exist_ok=True)
    return StateStore.from_path(state_path)


@pytest.fixture
def config(state_path: Path) -> Config:
    return Config(
        state_path=state_path,
        retry=RetryPolicy(base_seconds=0.0, cap_seconds=0.0, max_attempts=3),
    )


@pytest.fixture
def provisioner() -> MockProvisioner:
    return MockProvisioner()


def desired_graph(
    widgets: list[WidgetSpec], discovered: DiscoveredResources
) -> ResourceGraph:
    """Desired graph for the given widgets with default routing and tag policy."""
    assignments = compose_routing_table(widgets)
    return build_desired_graph(widgets, assignments, discovered, PROJECT, MANAGED_BY)


def no_sleep(_seconds: float) -> None:
    return None


def no_jitter(_low: float, _high: float) -> float:
    return 0.0


def applied_state(graph: ResourceGraph) -> dict[str, StateRecord]:
    """State as recorded after a successful apply of the whole graph."""
    records: dict[str, StateRecord] = {}
    for node in graph.topological_order():
        records[node.resource_id] = StateRecord(
            resource_id=node.resource_id,
            kind=node.kind,
            remote_identity=f"id:{node.resource_id}",
            last_known_attributes=resolve_references(
                node.attributes, lambda ref: records[ref.resource_id].remote_identity
            ),
            depends_on=tuple(sorted(node.depends_on)),
            widget=node.widget,
        )
    return records
