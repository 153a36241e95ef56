"""Strategy package exports."""

from .positions import MonitorOutcome, PositionLifecycle
from .risk import RiskCheckResult, RiskGate
from .sniper import LaunchSniper

__all__ = [
    "LaunchSniper",
    "MonitorOutcome",
    "PositionLifecycle",
    "RiskCheckResult",
    "RiskGate",
]
