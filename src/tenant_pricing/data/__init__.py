"""Seed catalog loading."""
