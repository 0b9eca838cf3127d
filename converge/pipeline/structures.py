"""Data contracts for apply execution."""
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ChangeStatus(Enum):
    """Status of one planned change during apply."""
    PENDING = "pending"
    RUNNING = "running"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class ChangeResult:
    """Outcome of a single change.

    JSON-serializable for ``apply --json``.
    """
    address: str
    action: str
    status: ChangeStatus
    elapsed: float = 0.0
    attempts: int = 0
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        d = asdict(self)
        d['status'] = self.status.value
        return d

    @property
    def success(self) -> bool:
        """True if the change was applied."""
        return self.status == ChangeStatus.APPLIED


@dataclass
class ApplyResult:
    """Outcome of a whole apply run."""
    results: list[ChangeResult] = field(default_factory=list)
    elapsed: float = 0.0
    cancelled: bool = False
    run_id: int | None = None

    def count(self, status: ChangeStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def complete(self) -> bool:
        """True if every change was applied."""
        return not self.cancelled and all(r.success for r in self.results)

    @property
    def status(self) -> str:
        if self.complete:
            return "succeeded"
        if self.cancelled:
            return "cancelled"
        return "incomplete"

    def summary(self) -> dict[str, int]:
        return {status.value: self.count(status) for status in ChangeStatus}

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "elapsed": round(self.elapsed, 3),
            "run_id": self.run_id,
            "summary": self.summary(),
            "results": [r.to_dict() for r in self.results],
        }
