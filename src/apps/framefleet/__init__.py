"""FrameFleet command line interface and HTTP service."""

from apps.framefleet.app import app, web_app

__all__ = ["app", "web_app"]
