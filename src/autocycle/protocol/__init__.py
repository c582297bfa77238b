"""Run-state data model and filesystem persistence helpers."""
