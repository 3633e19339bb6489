"""Command-line interface for foundrylink."""
