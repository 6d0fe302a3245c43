"""Provisioner client contract and a local simulated implementation.

The provisioner is the only component that talks to the cloud. The
reconciler hands it fully resolved nodes (no Ref placeholders left) and
records the remote identity it returns.

ERRORS:
- TransientProviderError: throttling or eventual-consistency delays; the
  execution engine retries these with bounded backoff
- PermanentProviderError: validation or permission failures; never retried,
  carries a machine-readable reason code
"""

from __future__ import annotations

import copy
import hashlib
import importlib
import logging
from typing import Any, Protocol, runtime_checkable

from .models import DiscoveredResources, ResourceKind, ResourceNode, StateRecord

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base class for provisioner failures."""

    def __init__(self, message: str, resource_id: str | None = None) -> None:
        super().__init__(message)
        self.resource_id = resource_id


class TransientProviderError(ProviderError):
    """Retryable failure (rate limiting, propagation delay)."""

    pass


class PermanentProviderError(ProviderError):
    """Non-retryable failure (validation, permissions)."""

    def __init__(self, message: str, reason_code: str, resource_id: str | None = None) -> None:
        super().__init__(message, resource_id=resource_id)
        self.reason_code = reason_code


@runtime_checkable
class ProvisionerClient(Protocol):
    """Cloud API collaborator."""

    def create(self, node: ResourceNode) -> str:
        """Create the resource and return its remote identity."""
        ...

    def update(self, node: ResourceNode, prior_identity: str) -> str:
        """Update the resource in place and return its remote identity."""
        ...

    def destroy(self, remote_identity: str) -> None:
        """Delete the resource."""
        ...

    def describe(self, remote_identity: str) -> dict[str, Any] | None:
        """Live attributes of the resource, or None if it no longer exists."""
        ...


class SimulatedProvisioner:
    """In-process provisioner producing ARN-shaped identities.

    Used to rehearse an apply locally. Identities are deterministic so a
    rehearsal against a copy of the state file produces the same snapshot
    as the real run would, modulo identities.
    """

    def __init__(
        self,
        discovered: DiscoveredResources,
        records: dict[str, StateRecord] | None = None,
    ) -> None:
        self._discovered = discovered
        self._resources: dict[str, dict[str, Any]] = {}
        for record in (records or {}).values():
            self._resources[record.remote_identity] = copy.deepcopy(
                record.last_known_attributes
            )

    def create(self, node: ResourceNode) -> str:
        identity = self.identity_for(node)
        if identity in self._resources:
            raise PermanentProviderError(
                f"Resource already exists: {identity}",
                reason_code="AlreadyExists",
                resource_id=node.resource_id,
            )
        self._claim_priority(node, identity)
        self._resources[identity] = copy.deepcopy(node.attributes)
        logger.debug(
            "Simulated create",
            extra={"resource_id": node.resource_id, "remote_identity": identity},
        )
        return identity

    def update(self, node: ResourceNode, prior_identity: str) -> str:
        if prior_identity not in self._resources:
            raise PermanentProviderError(
                f"Resource not found: {prior_identity}",
                reason_code="NotFound",
                resource_id=node.resource_id,
            )
        self._claim_priority(node, prior_identity)
        self._resources[prior_identity] = copy.deepcopy(node.attributes)
        return prior_identity

    def destroy(self, remote_identity: str) -> None:
        # Deleting an already-deleted resource is not an error
        self._resources.pop(remote_identity, None)

    def describe(self, remote_identity: str) -> dict[str, Any] | None:
        attributes = self._resources.get(remote_identity)
        return copy.deepcopy(attributes) if attributes is not None else None

    def _claim_priority(self, node: ResourceNode, identity: str) -> None:
        """Reject a listener rule whose priority another rule still holds."""
        if node.kind != ResourceKind.LISTENER_RULE:
            return
        slot = (node.attributes.get("listener_arn"), node.attributes.get("priority"))
        for other, attributes in self._resources.items():
            if other == identity or ":listener-rule/" not in other:
                continue
            if (attributes.get("listener_arn"), attributes.get("priority")) == slot:
                raise PermanentProviderError(
                    f"Priority {slot[1]} is already in use by {other}",
                    reason_code="PriorityInUse",
                    resource_id=node.resource_id,
                )

    def identity_for(self, node: ResourceNode) -> str:
        """ARN (or provider id) the resource would be given."""
        account = self._discovered.account_id
        region = self._discovered.region
        suffix = hashlib.sha256(node.resource_id.encode("utf-8")).hexdigest()[:16]

        match node.kind:
            case ResourceKind.ECR_REPOSITORY:
                return f"arn:aws:ecr:{region}:{account}:repository/{node.name}"
            case ResourceKind.IAM_ROLE:
                return f"arn:aws:iam::{account}:role/{node.name}"
            case ResourceKind.IAM_ROLE_POLICY:
                return f"arn:aws:iam::{account}:role-policy/{node.name}"
            case ResourceKind.LOG_GROUP:
                return f"arn:aws:logs:{region}:{account}:log-group:{node.name}"
            case ResourceKind.LAMBDA_FUNCTION:
                return f"arn:aws:lambda:{region}:{account}:function:{node.name}"
            case ResourceKind.LAMBDA_PERMISSION:
                return f"arn:aws:lambda:{region}:{account}:permission:{node.name}"
            case ResourceKind.TARGET_GROUP:
                return (
                    f"arn:aws:elasticloadbalancing:{region}:{account}:"
                    f"targetgroup/{node.name}/{suffix}"
                )
            case ResourceKind.TARGET_GROUP_ATTACHMENT:
                return f"{node.name}-{suffix}"
            case ResourceKind.LISTENER_RULE:
                listener = self._discovered.listener_arn.replace(":listener/", ":listener-rule/")
                return f"{listener}/{suffix}"
            case _:
                raise ValueError(f"Unsupported resource kind: {node.kind}")


def load_provisioner(target: str, discovered: DiscoveredResources) -> ProvisionerClient:
    """Instantiate a provisioner from a "module:factory" path.

    The factory is called with the discovered resources as its only
    keyword argument.

    Raises:
        ValueError: If the path is malformed or the result does not satisfy
            the provisioner contract.
        ImportError: If the module cannot be imported.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Provisioner must be given as 'module:factory', got '{target}'")

    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError as e:
        raise ValueError(f"Module '{module_name}' has no attribute '{attr}'") from e

    provisioner = factory(discovered=discovered)
    if not isinstance(provisioner, ProvisionerClient):
        raise ValueError(f"'{target}' did not return a provisioner client")
    return provisioner
