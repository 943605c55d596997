"""Event types the plugin handles and the tri-state result it returns to the host."""
from enum import Enum


class EventType(str, Enum):
    """Lifecycle events, valued by the OpenVPN ``script_type`` that triggers them."""

    AUTH_USER_PASS_VERIFY = "user-pass-verify"
    CLIENT_CONNECT = "client-connect"
    CLIENT_DISCONNECT = "client-disconnect"

    @classmethod
    def from_script_type(cls, script_type: str | None) -> "EventType | None":
        """Return the event for ``script_type``, or ``None`` when it is not handled."""
        try:
            return cls(script_type)
        except ValueError:
            return None


class Outcome(Enum):
    """
    Result of one invocation.

    FAILURE is an explicit negative decision (bad password, no required group);
    ERROR means the check could not be completed. The host rejects on both; only
    the logs tell them apart.
    """

    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"

    @property
    def exit_code(self) -> int:
        """Script exit status expected by OpenVPN: 0 accepts, anything else rejects."""
        return 0 if self is Outcome.SUCCESS else 1
