"""Event system for apply observers.

Decouples the executor from presentation logic.
Adheres to ZERO FALLBACK POLICY: Observers must handle their own exceptions.
"""

import sys
from typing import Protocol


class ApplyObserver(Protocol):
    """Observer interface for apply events."""

    def on_apply_start(self, total: int) -> None:
        """Called once before the first change starts."""
        ...

    def on_change_start(self, address: str, action: str) -> None:
        """Called when a change begins."""
        ...

    def on_change_complete(self, address: str, action: str, elapsed: float) -> None:
        """Called when a change succeeds."""
        ...

    def on_change_failed(self, address: str, action: str, error: str) -> None:
        """Called when a change fails for good."""
        ...

    def on_change_skipped(self, address: str, action: str, reason: str) -> None:
        """Called when a change is skipped or cancelled."""
        ...

    def on_retry(self, address: str, attempt: int, delay: float, error: str) -> None:
        """Called before a transient failure is retried."""
        ...

    def on_log(self, message: str, is_error: bool = False) -> None:
        """Called for generic messages."""
        ...


class ConsoleLogger:
    """ASCII-safe console logger (Windows CP1252 compatible).

    This is the DEFAULT observer, used when stdout is not a terminal.
    """

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

    def on_apply_start(self, total: int) -> None:
        if not self.quiet:
            print(f"Applying {total} change(s)...", flush=True)

    def on_change_start(self, address: str, action: str) -> None:
        if not self.quiet:
            print(f"[{action.upper()}] {address}...", flush=True)

    def on_change_complete(self, address: str, action: str, elapsed: float) -> None:
        if not self.quiet:
            print(f"[OK] {address}: {action} complete after {elapsed:.1f}s", flush=True)

    def on_change_failed(self, address: str, action: str, error: str) -> None:
        # Errors print even in quiet mode
        print(f"[FAILED] {address}: {action} failed", file=sys.stderr, flush=True)
        if error:
            display_err = error.strip()[:200]
            if len(error) > 200:
                display_err += "..."
            print(f"  Error: {display_err}", file=sys.stderr, flush=True)

    def on_change_skipped(self, address: str, action: str, reason: str) -> None:
        if not self.quiet:
            print(f"[SKIPPED] {address}: {reason}", flush=True)

    def on_retry(self, address: str, attempt: int, delay: float, error: str) -> None:
        if not self.quiet:
            print(f"[RETRY] {address}: attempt {attempt} failed ({error}), retrying in {delay:.1f}s", flush=True)

    def on_log(self, message: str, is_error: bool = False) -> None:
        if not self.quiet or is_error:
            msg = str(message) if message is not None else ""
            print(msg, file=sys.stderr if is_error else sys.stdout, flush=True)
