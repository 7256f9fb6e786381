"""YAML configuration."""
