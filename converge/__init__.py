"""converge - reconcile a declared resource graph against a remote API."""

__version__ = "0.4.0"
