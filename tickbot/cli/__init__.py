"""CLI module for tickbot."""
