"""Command-line interface for familiar."""
