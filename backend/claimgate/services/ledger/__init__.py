"""Local ledger engine and the gateway that fronts it."""
