"""Health supervisor: probes one service, restarts it when critical, and alerts on transitions."""

from .classifier import classify
from .models import HealthClassification, ProbeResult, SupervisorState, TickOutcome
from .supervisor import Supervisor

__all__ = ["Supervisor", "classify", "HealthClassification", "ProbeResult", "SupervisorState", "TickOutcome"]
