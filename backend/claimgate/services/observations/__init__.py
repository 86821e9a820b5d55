"""Observation read model."""
