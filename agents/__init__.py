"""Control plane agents."""
from agents.base import BaseAgent
from agents.control_plane_agent import (
    ControlPlaneAgent,
    CycleReport,
    EntryRequest,
    ExitAction,
    ExitCandidate,
    ScanCycle,
)

__all__ = [
    "BaseAgent",
    "ControlPlaneAgent",
    "CycleReport",
    "EntryRequest",
    "ExitAction",
    "ExitCandidate",
    "ScanCycle",
]
