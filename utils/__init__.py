"""Helpers shared by the CLI and the API: output formatting and input validation."""
