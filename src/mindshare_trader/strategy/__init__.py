"""Strategy package exports."""

from .signals import SignalEvaluator

__all__ = ["SignalEvaluator"]
