"""Relay executor and its status store."""
