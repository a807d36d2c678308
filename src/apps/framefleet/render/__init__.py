"""Render job commands for the FrameFleet CLI."""

from apps.framefleet.render.commands import app

__all__ = ["app"]
