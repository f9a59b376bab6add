"""Progressive delivery orchestrator for blue-green, canary and rolling deployments."""

__version__ = "0.1.0"
