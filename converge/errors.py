"""Exception hierarchy for converge.

Library code raises these; CLI commands translate them into
``click.ClickException`` through ``utils.error_handler.handle_exceptions``.
Nothing here is caught and silently swallowed: a malformed declaration, an
unresolved reference or a dependency cycle fails before any remote call.
"""


class ConvergeError(Exception):
    """Base class for every error raised by converge."""


class DeclarationError(ConvergeError):
    """A configuration file is malformed or declares something twice."""

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        super().__init__(f"{source}: {message}" if source else message)


class VariableError(ConvergeError):
    """A variable is missing a value or its value cannot take the declared type."""


class ExpressionError(ConvergeError):
    """An interpolation failed to parse or evaluate."""

    def __init__(self, message: str, expression: str | None = None):
        self.expression = expression
        if expression:
            message = f"{message} (in {expression!r})"
        super().__init__(message)


class UnresolvedReferenceError(ConvergeError):
    """An expression references something that is not declared."""

    def __init__(self, reference: str, referrer: str, source: str | None = None):
        self.reference = reference
        self.referrer = referrer
        self.source = source
        where = f" ({source})" if source else ""
        super().__init__(f"{referrer} references undeclared {reference}{where}")


class GraphError(ConvergeError):
    """The dependency graph cannot be built or expanded."""


class CycleError(GraphError):
    """The dependency graph contains at least one cycle."""

    def __init__(self, cycles: list[list[str]]):
        self.cycles = cycles
        rendered = "; ".join(" -> ".join(cycle) for cycle in cycles)
        super().__init__(f"Dependency cycle detected: {rendered}")


class PlanError(ConvergeError):
    """A change-set cannot be produced (e.g. prevent_destroy violated)."""


class StalePlanError(PlanError):
    """A saved plan was computed against an older state than the current one."""


class StateError(ConvergeError):
    """The state store is missing, malformed or inconsistent."""


class StateLockedError(StateError):
    """Another process holds the state lock."""

    def __init__(self, lock_id: str, holder: str, acquired_at: str):
        self.lock_id = lock_id
        self.holder = holder
        self.acquired_at = acquired_at
        super().__init__(
            f"State is locked by {holder} since {acquired_at} (lock id {lock_id}). "
            "Use 'converge state unlock <lock id>' if that process is gone."
        )


class ProviderError(ConvergeError):
    """A provider call failed permanently."""


class TransientProviderError(ProviderError):
    """A provider call failed in a way that is worth retrying."""


class ResourceNotFoundError(ProviderError):
    """The remote object a state entry points at no longer exists."""


class ApplyError(ConvergeError):
    """A change could not be applied."""
