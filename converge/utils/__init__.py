"""Shared utilities: logging, error handling, exit codes and constants."""
