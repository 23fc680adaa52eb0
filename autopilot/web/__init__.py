"""HTTP surface for autopilot."""
