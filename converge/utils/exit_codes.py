"""Centralized exit codes for the converge CLI."""


class ExitCodes:
    """Standard exit codes for converge CLI commands."""

    SUCCESS = 0

    HIGH_SEVERITY = 1
    CRITICAL_SEVERITY = 2

    APPLY_INCOMPLETE = 3

    CHANGES_PRESENT = 4

    STATE_LOCKED = 10

    @classmethod
    def get_description(cls, code: int) -> str:
        """Get human-readable description for an exit code."""
        descriptions = {
            cls.SUCCESS: "Success - nothing to report",
            cls.HIGH_SEVERITY: "High severity topology findings detected",
            cls.CRITICAL_SEVERITY: "Critical topology findings detected",
            cls.APPLY_INCOMPLETE: "Apply finished with failed, skipped or cancelled changes",
            cls.CHANGES_PRESENT: "Plan contains changes",
            cls.STATE_LOCKED: "State is locked by another process",
        }
        return descriptions.get(code, f"Unknown exit code: {code}")

    @classmethod
    def should_fail_pipeline(cls, code: int) -> bool:
        """Determine if an exit code should fail a CI/CD pipeline."""

        return code in (cls.APPLY_INCOMPLETE, cls.STATE_LOCKED)
