"""Task lifecycle: allocation checks, state machine, registry and reconciliation."""
