"""Agent harness — retries, permission gating and the turn loop."""
