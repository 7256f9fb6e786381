"""Tool host channel."""
