"""CRDT operation ids, causal sync document, snapshot storage and reference oracles."""

__version__ = "0.1.0"
__all__ = ["ids", "oracle", "storage", "sync"]