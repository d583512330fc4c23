"""Long-running-operation reconciliation for Azure Resource Manager."""

__version__ = "0.1.0"
