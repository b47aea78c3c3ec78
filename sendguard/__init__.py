"""Outbound notification safety gate."""

from sendguard.gate import SafetyGate, build_safety_stack
from sendguard.recorder import Recorder
from sendguard.schemas import Decision, GateState, ReasonCode, RecordResult

__version__ = "1.0.0"

__all__ = [
    "Decision",
    "GateState",
    "ReasonCode",
    "RecordResult",
    "Recorder",
    "SafetyGate",
    "build_safety_stack",
]
