"""Widget registry loading with validation.

File size is capped before reading and all input is validated at the
boundary, so nothing downstream sees an unchecked value.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_REGISTRY_FILE_SIZE_BYTES, MAX_WIDGETS_PER_REGISTRY
from .models import WidgetRegistry

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when registry loading or validation fails."""

    pass


def load_registry(registry_path: Path) -> WidgetRegistry:
    """Load and validate a widget registry from YAML.

    Expected layout::

        discovered:
          accountId: "123456789012"
          region: us-east-1
          vpcId: vpc-0abc
          listenerArn: arn:aws:elasticloadbalancing:...
        widgets:
          - widgetName: clubhouse
            environment: production
            memorySize: 512
            timeoutSeconds: 30

    Widget order in the file is the registration order used for listener
    priorities.

    Raises:
        SpecLoadError: If the registry cannot be loaded or fails validation.
    """
    registry_path = Path(registry_path)
    if not registry_path.exists():
        raise SpecLoadError(f"Registry file not found: {registry_path}")

    try:
        file_size = registry_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat registry file {registry_path}: {e}") from e

    if file_size > MAX_REGISTRY_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Registry file exceeds maximum size of {MAX_REGISTRY_FILE_SIZE_BYTES} bytes: "
            f"{registry_path}"
        )

    try:
        content = registry_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read registry file {registry_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {registry_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Registry file must contain a YAML mapping: {registry_path}")

    widgets = raw_data.get("widgets") or []
    if isinstance(widgets, list) and len(widgets) > MAX_WIDGETS_PER_REGISTRY:
        raise SpecLoadError(
            f"Registry declares {len(widgets)} widgets, limit is {MAX_WIDGETS_PER_REGISTRY}: "
            f"{registry_path}"
        )

    try:
        registry = WidgetRegistry.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {registry_path}:\n{error_list}") from e

    logger.info(
        "Loaded widget registry",
        extra={
            "registry_path": str(registry_path),
            "widgets": [spec.widget_name for spec in registry.widgets],
        },
    )
    return registry
