"""fleetform: declarative resource provisioning and fleet reconciliation."""

__version__ = "0.1.0"
