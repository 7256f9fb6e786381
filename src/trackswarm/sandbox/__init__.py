"""Container executors."""
