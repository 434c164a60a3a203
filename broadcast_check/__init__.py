"""Integration test client for TCP broadcast (fan-out) servers."""

from .errors import ConfigError, DialError, HarnessError, HarnessTimeout, ReceiveError
from .harness import (
    Address,
    HarnessConfig,
    Receiver,
    Report,
    Signal,
    main,
    run,
    send_message,
)

__version__ = "0.1.0"
