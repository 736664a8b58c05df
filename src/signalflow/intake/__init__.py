"""Signal intake: hub adapters and the admission gate."""

from signalflow.intake.adapters import SignalIntake
from signalflow.intake.gate import AdmissionGate

__all__ = ["AdmissionGate", "SignalIntake"]
