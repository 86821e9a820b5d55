"""Trust gate and observation evaluator."""
