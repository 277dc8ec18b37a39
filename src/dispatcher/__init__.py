"""Task dispatch, worker liveness and blocker analysis for agent worker pools."""

__version__ = "0.3.0"
