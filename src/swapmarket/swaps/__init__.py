"""Swap state machine, slot lifecycle, read projections and reconciliation."""
