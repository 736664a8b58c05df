"""SignalFlow: the control plane that turns operational signals into audited actions."""

__version__ = "0.1.0"
