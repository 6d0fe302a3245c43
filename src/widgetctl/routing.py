"""Listener rule priority and path assignment for registered widgets."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from .config import PriorityBand
from .models import ListenerRuleAssignment, WidgetSpec

logger = logging.getLogger(__name__)


class PriorityExhaustedError(Exception):
    """Raised when no free priority is left in the reserved band."""

    def __init__(self, widget_name: str, band: PriorityBand) -> None:
        self.widget_name = widget_name
        self.band = band
        super().__init__(
            f"No free listener priority for widget '{widget_name}' in band "
            f"{band.base}..{band.ceiling} (step {band.step})"
        )


def compose_routing_table(
    widgets: Sequence[WidgetSpec], band: PriorityBand | None = None
) -> list[ListenerRuleAssignment]:
    """Assign a listener priority and path patterns to every widget.

    Explicit priorities are honoured as given (collisions among them are
    left to the validator). Every other widget, in registration order, gets
    the lowest band slot not already taken.

    Args:
        widgets: Registered widgets in registration order.
        band: Reserved priority band.

    Returns:
        Assignments in registration order.

    Raises:
        PriorityExhaustedError: If the band has no free slot for a widget.
    """
    band = band or PriorityBand()
    taken = {spec.priority for spec in widgets if spec.priority is not None}
    free = (slot for slot in band.slots() if slot not in taken)

    assignments = []
    for spec in widgets:
        priority = spec.priority
        if priority is None:
            priority = next(free, None)
            if priority is None:
                raise PriorityExhaustedError(spec.widget_name, band)
        assignments.append(
            ListenerRuleAssignment(
                widget_name=spec.widget_name,
                priority=priority,
                path_patterns=frozenset(spec.path_patterns),
            )
        )

    logger.debug(
        "Composed routing table",
        extra={"assignments": {a.widget_name: a.priority for a in assignments}},
    )
    return assignments
