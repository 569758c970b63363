"""HTTP API for cellsync."""
