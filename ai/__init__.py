"""LLM-facing phases of the self-improvement loop."""
