"""Error taxonomy for plan validation and resource actions."""


class ValidationError(Exception):
    """Plan is invalid (duplicate id, missing dependency, cycle).

    Raised before any state is touched; the plan never runs.
    """


class CycleError(ValidationError):
    """Dependency cycle detected.

    Attributes:
        cycle: Resource ids along the cycle, first id repeated at the end
    """

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class ActionError(Exception):
    """Base class for failures of an apply/destroy action."""

    classification = 'permanent'


class TransientActionError(ActionError):
    """Action failed in a way a retry may fix (network blip, timeout)."""

    classification = 'transient'


class PermanentActionError(ActionError):
    """Action failed in a way only external intervention can fix."""


class StateLockedError(Exception):
    """Another run holds the state lock for this stack."""
