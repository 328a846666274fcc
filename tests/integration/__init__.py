"""Integration tests that drive story-scheduler through its entrypoints."""
