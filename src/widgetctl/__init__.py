"""widgetctl: declarative reconciliation of per-widget cloud infrastructure."""

__version__ = "0.1.0"
