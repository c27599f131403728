"""Command-line interface for edulicense."""
