"""Claimgate services: ledger engine, guardian, relay, observations, claims."""
