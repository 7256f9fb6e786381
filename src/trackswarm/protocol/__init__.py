"""Plan, progress and on-disk artifact types."""
