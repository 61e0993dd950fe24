"""
Error taxonomy for rule handling and command delivery.

Routers translate these into HTTP responses; the rule engine records
gate rejections instead of raising them.
"""
from typing import Optional


class RelayHubError(Exception):
    """Base class for domain errors."""
    pass


class RuleValidationError(RelayHubError):
    """Raised when a rule document fails structural validation."""

    def __init__(self, report):
        self.report = report
        super().__init__("; ".join(report.errors) or "Invalid rule")


class GateRejection(RelayHubError):
    """A fired rule was refused by cooldown, cap, safety, lock or override."""

    def __init__(self, reason: str, category: str = "gate", critical: bool = False):
        self.reason = reason
        self.category = category
        self.critical = critical
        super().__init__(reason)


class InvalidCommandError(RelayHubError):
    """Raised for out-of-range relays, unknown actions or statuses."""
    pass


class CommandNotFoundError(RelayHubError):
    pass


class DeviceNotFoundError(RelayHubError):
    pass


class AlertNotFoundError(RelayHubError):
    pass


class DeliveryTimeout(RelayHubError):
    """A command stayed pending/sent past the staleness horizon."""

    def __init__(self, command_id: str, status: str, age_seconds: float):
        self.command_id = command_id
        self.status = status
        self.age_seconds = age_seconds
        super().__init__(f"Command {command_id} still '{status}' after {int(age_seconds)}s")


class ExecutionFailure(RelayHubError):
    """The device reported a command as failed."""

    def __init__(self, command_id: str, error_message: Optional[str]):
        self.command_id = command_id
        self.error_message = error_message
        super().__init__(f"Command {command_id} failed on device: {error_message}")


class StoreError(RelayHubError):
    """A store read or write failed or timed out."""
    pass
