"""YAML configuration for autocycle runs."""
