"""Data model for widget infrastructure reconciliation.

Two layers live here:
1. Pydantic models for configuration input (validated at the boundary)
2. Plain dataclasses for the in-memory resource graph, persisted state
   records and planned operations
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# Widget names end up in every derived resource name. The tightest limit is
# the 32 character ALB target group name, so "tg-widget-{name}" caps names at 22.
VALID_WIDGET_NAME_PATTERN = r"^[a-z][a-z0-9-]{0,20}[a-z0-9]$"

# Retention values accepted by CloudWatch Logs
VALID_LOG_RETENTION_DAYS = frozenset(
    {1, 3, 5, 7, 14, 30, 60, 90, 120, 150, 180, 365, 400, 545, 731,
     1096, 1827, 2192, 2557, 2922, 3288, 3653}
)

REQUIRED_TAG_KEYS = ("Project", "Component", "Environment", "ManagedBy")


# =============================================================================
# Configuration Input
# =============================================================================


class DiscoveredResources(BaseModel):
    """Shared infrastructure referenced but never managed by this tool.

    The VPC, load balancer listener and account are looked up once and
    treated as constants by the resource graph.
    """

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    account_id: str = Field(alias="accountId", pattern=r"^\d{12}$")
    region: str = Field(pattern=r"^[a-z]{2}(-[a-z]+)+-\d$")
    vpc_id: str = Field(alias="vpcId", pattern=r"^vpc-[0-9a-f]+$")
    listener_arn: str = Field(alias="listenerArn", min_length=1)

    @field_validator("listener_arn")
    @classmethod
    def validate_listener_arn(cls, v: str) -> str:
        if not v.startswith("arn:aws:elasticloadbalancing:"):
            raise ValueError("listenerArn must be an elasticloadbalancing ARN")
        return v


class WidgetSpec(BaseModel):
    """One independently deployable widget.

    Immutable once loaded; a reconfiguration replaces the spec wholesale.
    """

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    widget_name: str = Field(alias="widgetName", pattern=VALID_WIDGET_NAME_PATTERN)
    environment: Annotated[str, Field(min_length=1, max_length=32)]
    memory_size: Annotated[int, Field(gt=0, le=10240, alias="memorySize")] = 512
    timeout_seconds: Annotated[int, Field(gt=0, le=900, alias="timeoutSeconds")] = 30
    log_retention_days: int = Field(14, alias="logRetentionDays")
    image_tag: Annotated[str, Field(min_length=1, max_length=128, alias="imageTag")] = "latest"
    environment_variables: dict[str, str] = Field(
        default_factory=dict, alias="environmentVariables"
    )
    # Explicit listener priority; omitted widgets get the next free slot in the band
    priority: Annotated[int, Field(ge=1, le=50000)] | None = None
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("log_retention_days")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        if v not in VALID_LOG_RETENTION_DAYS:
            raise ValueError(f"logRetentionDays must be one of {sorted(VALID_LOG_RETENTION_DAYS)}")
        return v

    @property
    def component(self) -> str:
        return f"widget-{self.widget_name}"

    @property
    def path_patterns(self) -> tuple[str, str]:
        """Exact and wildcard listener path patterns."""
        return (f"/widgets/{self.widget_name}", f"/widgets/{self.widget_name}/*")

    @property
    def health_check_path(self) -> str:
        return f"/widgets/{self.widget_name}/api/health"

    def required_tags(self, project: str, managed_by: str) -> dict[str, str]:
        """Tags every taggable resource of this widget must carry."""
        return {
            "Project": project,
            "Component": self.component,
            "Environment": self.environment,
            "ManagedBy": managed_by,
        }

    def default_tags(self, project: str, managed_by: str) -> dict[str, str]:
        """Widget-level default tags: required tags with user tags merged over."""
        return {**self.required_tags(project, managed_by), **self.tags}


class WidgetRegistry(BaseModel):
    """Ordered list of widgets sharing one load balancer listener."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    discovered: DiscoveredResources
    widgets: list[WidgetSpec] = Field(default_factory=list)

    @field_validator("widgets")
    @classmethod
    def validate_unique_names(cls, v: list[WidgetSpec]) -> list[WidgetSpec]:
        seen: set[str] = set()
        for spec in v:
            if spec.widget_name in seen:
                raise ValueError(f"duplicate widgetName: {spec.widget_name}")
            seen.add(spec.widget_name)
        return v

    def get(self, widget_name: str) -> WidgetSpec | None:
        for spec in self.widgets:
            if spec.widget_name == widget_name:
                return spec
        return None


# =============================================================================
# Resource Graph
# =============================================================================


class ResourceKind(str, Enum):
    """Resource kinds managed per widget."""

    ECR_REPOSITORY = "ecr_repository"
    IAM_ROLE = "iam_role"
    IAM_ROLE_POLICY = "iam_role_policy"
    LOG_GROUP = "log_group"
    LAMBDA_FUNCTION = "lambda_function"
    LAMBDA_PERMISSION = "lambda_permission"
    TARGET_GROUP = "target_group"
    TARGET_GROUP_ATTACHMENT = "target_group_attachment"
    LISTENER_RULE = "listener_rule"


# Kinds that carry a tag set
TAGGABLE_KINDS = frozenset(
    {
        ResourceKind.ECR_REPOSITORY,
        ResourceKind.IAM_ROLE,
        ResourceKind.LOG_GROUP,
        ResourceKind.LAMBDA_FUNCTION,
        ResourceKind.TARGET_GROUP,
        ResourceKind.LISTENER_RULE,
    }
)


def make_resource_id(kind: ResourceKind, name: str) -> str:
    return f"{kind.value}.{name}"


@dataclass(frozen=True)
class Ref:
    """Reference to another node's remote identity, known only after apply."""

    resource_id: str

    def __str__(self) -> str:
        return f"${{{self.resource_id}}}"


@dataclass
class ResourceNode:
    """A desired resource and the identifiers of the nodes it depends on."""

    kind: ResourceKind
    name: str
    widget: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        # Referenced nodes are always dependencies
        self.depends_on = frozenset(self.depends_on) | self.references()

    @property
    def resource_id(self) -> str:
        return make_resource_id(self.kind, self.name)

    @property
    def taggable(self) -> bool:
        return self.kind in TAGGABLE_KINDS

    def references(self) -> set[str]:
        """Identifiers referenced by Ref values in the attributes."""
        return {ref.resource_id for ref in _iter_refs(self.attributes)}


def _iter_refs(value: Any) -> Any:
    if isinstance(value, Ref):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_refs(item)
    elif isinstance(value, list | tuple):
        for item in value:
            yield from _iter_refs(item)


# =============================================================================
# State and Operations
# =============================================================================


@dataclass(frozen=True)
class StateRecord:
    """Persisted identity and last-known attributes of a created resource."""

    resource_id: str
    kind: ResourceKind
    remote_identity: str
    last_known_attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    widget: str = ""


class OperationKind(str, Enum):
    """Planned change for a single resource."""

    CREATE = "Create"
    UPDATE_IN_PLACE = "UpdateInPlace"
    REPLACE = "Replace"
    DESTROY = "Destroy"
    NO_OP = "NoOp"


@dataclass(frozen=True)
class Operation:
    """A planned change. Orphan destroys carry no target node."""

    kind: OperationKind
    target: ResourceNode | None
    prior: StateRecord | None = None
    changed_attributes: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.target is None and self.prior is None:
            raise ValueError("operation needs a target node or a prior state record")

    @property
    def resource_id(self) -> str:
        if self.target is not None:
            return self.target.resource_id
        assert self.prior is not None
        return self.prior.resource_id

    @property
    def resource_kind(self) -> ResourceKind:
        if self.target is not None:
            return self.target.kind
        assert self.prior is not None
        return self.prior.kind

    @property
    def widget(self) -> str:
        if self.target is not None:
            return self.target.widget
        assert self.prior is not None
        return self.prior.widget


@dataclass(frozen=True)
class ListenerRuleAssignment:
    """Priority and path patterns of one widget on the shared listener."""

    widget_name: str
    priority: int
    path_patterns: frozenset[str]
