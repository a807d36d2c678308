"""Shared helpers for the FrameFleet CLI."""
