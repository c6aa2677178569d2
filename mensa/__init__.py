"""mensa — multi-thread conversation orchestrator."""

__version__ = "0.1.0"
