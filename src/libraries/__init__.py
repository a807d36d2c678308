"""Runtime package for the FrameFleet render orchestrator."""

from . import aws, render

__all__ = ["__version__", "aws", "render"]

__version__ = "1.0.0"
