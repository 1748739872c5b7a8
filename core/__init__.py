"""Core models and safety primitives."""
