"""Rich-based apply renderer with a live progress table."""
import sys
import time

from rich.console import Console, ConsoleOptions, RenderResult
from rich.live import Live
from rich.table import Table

from converge.events import ApplyObserver
from converge.utils.logging import restore_stderr_sink, swap_to_rich_sink

from .ui import CONVERGE_THEME


class DynamicTable:
    """Wrapper that builds a fresh table on each Rich render cycle.

    Rich calls __rich_console__ on each refresh (4x/second), so elapsed
    times of running changes tick live.
    """

    def __init__(self, renderer: "RichRenderer"):
        self.renderer = renderer

    def __rich_console__(self, console: Console, options: ConsoleOptions) -> RenderResult:
        yield self.renderer._build_live_table()


class RichRenderer(ApplyObserver):
    """Live dashboard of an apply run.

    In a terminal the table stays at the bottom and log lines print above
    it; otherwise every event is printed as a plain line.
    """

    STATUS_STYLES = {
        "pending": "dim white",
        "running": "bold cyan",
        "applied": "bold green",
        "failed": "bold red",
        "skipped": "yellow",
        "cancelled": "yellow",
    }

    def __init__(self, quiet: bool = False):
        self.quiet = quiet
        self.is_tty = sys.stdout.isatty()
        self.console = Console(theme=CONVERGE_THEME, force_terminal=self.is_tty)

        self._changes: dict[str, dict] = {}
        self._total = 0
        self._live: Live | None = None
        self._log_handler_id: int | None = None

    def _build_live_table(self) -> Table:
        done = sum(1 for info in self._changes.values() if info["status"] != "running")
        table = Table(title=f"Apply Progress ({done}/{self._total})", expand=True)
        table.add_column("Address", style="cyan", no_wrap=True)
        table.add_column("Action", width=10)
        table.add_column("Status", width=10)
        table.add_column("Time", justify="right", width=8)

        now = time.time()
        for address, info in self._changes.items():
            status = info["status"]
            if status == "running":
                time_str = f"{now - info['start_time']:.1f}s"
            elif info.get("elapsed", 0) > 0:
                time_str = f"{info['elapsed']:.1f}s"
            else:
                time_str = "-"
            action = info["action"]
            table.add_row(
                address,
                f"[{action.replace('-', '')}]{action}[/]",
                f"[{self.STATUS_STYLES.get(status, 'white')}]{status}[/]",
                time_str,
            )
        return table

    def _write(self, text: str, is_error: bool = False):
        if self.quiet and not is_error:
            return
        if self._live:
            self._live.console.print(text, style="bold red" if is_error else None, markup=False)
        else:
            print(text, file=sys.stderr if is_error else sys.stdout, flush=True)

    def start(self):
        """Start the live display (call before the executor runs)."""
        if self.is_tty and not self.quiet:
            self._live = Live(DynamicTable(self), refresh_per_second=4, console=self.console)
            self._live.__enter__()
            self._log_handler_id = swap_to_rich_sink(
                lambda message: self._live.console.print(message.rstrip("\n"), markup=False)
                if self._live
                else None
            )

    def stop(self):
        """Stop the live display (call after the executor finishes)."""
        if self._live:
            self._live.__exit__(None, None, None)
            self._live = None
            restore_stderr_sink(self._log_handler_id)
            self._log_handler_id = None

    # ApplyObserver implementation

    def on_apply_start(self, total: int) -> None:
        self._total = total
        if not self._live:
            self._write(f"Applying {total} change(s)...")

    def on_change_start(self, address: str, action: str) -> None:
        self._changes[address] = {"status": "running", "action": action, "start_time": time.time()}
        if not self._live:
            self._write(f"[{action.upper()}] {address}...")

    def on_change_complete(self, address: str, action: str, elapsed: float) -> None:
        self._changes[address] = {"status": "applied", "action": action, "elapsed": elapsed}
        if not self._live:
            self._write(f"[OK] {address}: {action} complete after {elapsed:.1f}s")

    def on_change_failed(self, address: str, action: str, error: str) -> None:
        self._changes[address] = {"status": "failed", "action": action, "elapsed": 0}
        truncated = error[:200] + "..." if len(error) > 200 else error
        self._write(f"[FAILED] {address}: {action} failed: {truncated}", is_error=True)

    def on_change_skipped(self, address: str, action: str, reason: str) -> None:
        status = "cancelled" if "cancel" in reason else "skipped"
        self._changes[address] = {"status": status, "action": action, "elapsed": 0}
        if not self._live:
            self._write(f"[{status.upper()}] {address}: {reason}")

    def on_retry(self, address: str, attempt: int, delay: float, error: str) -> None:
        self._write(f"[RETRY] {address}: attempt {attempt} failed ({error}), retrying in {delay:.1f}s")

    def on_log(self, message: str, is_error: bool = False) -> None:
        self._write(str(message) if message else "", is_error=is_error)
