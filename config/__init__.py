"""YAML settings with environment substitution."""
