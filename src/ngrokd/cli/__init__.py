"""Command-line interface for ngrokd."""
