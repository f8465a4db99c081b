"""Cognition — the familiar's internal drives."""
from familiar.cognition.desires import Desire, DesireState

__all__ = ["Desire", "DesireState"]
