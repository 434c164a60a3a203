"""
Errors raised by the broadcast harness.

Workers never terminate the process themselves: they hand one of these to the
orchestrator, and main() decides the exit status.
"""


class HarnessError(Exception):
    """Base class for every failure that aborts a harness run."""


class ConfigError(HarnessError):
    """Invocation arguments could not be turned into a usable configuration."""


class DialError(HarnessError):
    """Connecting to the system under test failed."""

    def __init__(self, address, index=None, cause=None):
        self.address = address
        self.index = index
        self.cause = cause
        who = "sender" if index is None else f"receiver {index}"
        super().__init__(f"Connection failed! ({who} -> {address}: {cause})")


class ReceiveError(HarnessError):
    """A receiver's connection broke before any data arrived."""

    def __init__(self, index, reason):
        self.index = index
        super().__init__(f"[{index}] {reason}")


class HarnessTimeout(HarnessError):
    """An opt-in deadline elapsed. `phase` names the wait that timed out."""

    def __init__(self, phase, message):
        self.phase = phase
        super().__init__(f"timeout during {phase}: {message}")
