"""HTTP surface for the FrameFleet render orchestrator."""
