"""Core primitives: error taxonomy, archive crypto and timestamp parsing."""
