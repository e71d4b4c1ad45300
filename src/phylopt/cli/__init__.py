"""Command-line interface for phylopt."""
