"""PeeLog: offline-first hydration event log with sync and analytics."""

__version__ = "0.1.0"
