"""PlanTracker calendar availability and meeting scheduling engine."""

__version__ = "0.1.0"
