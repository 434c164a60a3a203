"""
Check that a TCP broadcast server relays one client's message to every other
connected client.

N receivers connect and wait. Once all of them are connected, a separate
sender connection writes one message split across two writes ("Hello!" and
"\\r\\n"). The receivers are then released and each must read at least one byte.

Usage:
    python3 -m broadcast_check <ip> <port> <conn_number> [--timeout SECONDS]

Examples:
    # 100 receivers against a chat server on localhost
    python3 -m broadcast_check 127.0.0.1 8080 100

    # Fail instead of hanging if the server never relays anything
    python3 -m broadcast_check 127.0.0.1 8080 100 --timeout 10
"""

import argparse
import logging
import os
import queue
import socket
import threading
import time
from collections import namedtuple
from enum import Enum

from .errors import ConfigError, DialError, HarnessError, HarnessTimeout, ReceiveError

log = logging.getLogger(__name__)

# Message is sent as two separate writes
MESSAGE_PARTS = (b"Hello!", b"\r\n")
BUFFER_SIZE = 64

TIMEOUT_ENV = "BROADCAST_CHECK_TIMEOUT"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


class Address(namedtuple("Address", ["host", "port"])):
    __slots__ = ()

    def __str__(self):
        return f"{self.host}:{self.port}"


class Signal(Enum):
    """Tokens passed between the orchestrator and its receivers."""
    CONNECTION_ESTABLISHED = "connected"
    WORK_COMPLETE = "done"
    RELEASE = "release"


# What a receiver pushes onto the completion queue. `error` is set instead of
# `signal` when the receiver failed.
Report = namedtuple("Report", ["index", "signal", "error"])


class HarnessConfig:
    """Parameters of a single harness run."""

    def __init__(self, address, total, timeout=None, launch_delay=0.0, buffer_size=BUFFER_SIZE):
        self.address = address
        self.total = total
        self.timeout = timeout
        self.launch_delay = launch_delay
        self.buffer_size = buffer_size

    def __repr__(self):
        return (f"HarnessConfig(address={self.address}, total={self.total}, "
                f"timeout={self.timeout}, launch_delay={self.launch_delay})")


def dial(address, timeout=None, index=None):
    """
    Open a TCP connection to address.

    The returned socket keeps `timeout` for later reads (None = blocking).
    Raises DialError on any connect failure; there are no retries.
    """
    try:
        return socket.create_connection(tuple(address), timeout=timeout)
    except (OSError, ValueError) as e:
        # ValueError covers hosts the idna codec rejects, e.g. "a..b"
        raise DialError(address, index=index, cause=e) from e


def send_message(address, timeout=None):
    """Connect to address and write the test message in two separate writes."""
    sock = dial(address, timeout=timeout)
    with sock:
        # Keep the two writes as separate segments on the wire
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        for part in MESSAGE_PARTS:
            sock.sendall(part)


class Receiver(threading.Thread):
    """
    One passive client of the system under test.

    Connects, reports CONNECTION_ESTABLISHED on `done`, waits for exactly one
    token on `ready`, then reads until data arrives and reports WORK_COMPLETE.
    Failures are reported on `done` as well.
    """

    def __init__(self, index, address, done, ready, timeout=None, buffer_size=BUFFER_SIZE):
        super().__init__(name=f"receiver-{index}")
        self.daemon = True
        self.index = index
        self.address = address
        self.done = done
        self.ready = ready
        self.timeout = timeout
        self.buffer_size = buffer_size
        self.received = 0

    def run(self):
        try:
            self._run()
        except HarnessError as e:
            self.done.put(Report(self.index, None, e))
        except Exception as e:
            self.done.put(Report(self.index, None,
                                 HarnessError(f"[{self.index}] receiver failed: {e!r}")))

    def _run(self):
        sock = dial(self.address, timeout=self.timeout, index=self.index)
        with sock:
            self.done.put(Report(self.index, Signal.CONNECTION_ESTABLISHED, None))

            # Parked here until the message has been sent
            self.ready.get()
            log.info("[%d] ready!", self.index)

            self.received = self._read(sock)
            log.info("[%d] receive: %d bytes", self.index, self.received)

        self.done.put(Report(self.index, Signal.WORK_COMPLETE, None))

    def _read(self, sock):
        try:
            data = sock.recv(self.buffer_size)
        except socket.timeout:
            raise HarnessTimeout("receive", f"[{self.index}] no data within {self.timeout}s")
        except OSError as e:
            raise ReceiveError(self.index, f"read failed: {e}") from e
        if not data:
            raise ReceiveError(self.index, "connection closed before any data arrived")
        return len(data)


def _drain(done, total, expected, label, timeout=None):
    """Take exactly `total` reports off the completion queue."""
    for i in range(total):
        try:
            report = done.get(timeout=timeout)
        except queue.Empty:
            raise HarnessTimeout(label, f"{i}/{total} receivers after {timeout}s")
        if report.error is not None:
            raise report.error
        if report.signal is not expected:
            raise HarnessError(f"[{report.index}] unexpected {report.signal} while waiting for {expected}")
        log.info("[main]: %s, i = %d", label, i)


def run(config):
    """
    Run the harness once.

    Returns the number of connections handled. Raises the first HarnessError
    reported by any receiver or by the sender.
    """
    total = config.total
    if total <= 0:
        log.info("Test passed, 0 connections handled!")
        return 0

    done = queue.Queue(maxsize=total)
    ready = queue.Queue(maxsize=total)

    for i in range(total):
        log.info("[main]: creating client, i = %d", i)
        Receiver(i, config.address, done, ready,
                 timeout=config.timeout, buffer_size=config.buffer_size).start()
        if config.launch_delay:
            time.sleep(config.launch_delay)

    log.info("[main]: making sure all clients are connected")
    _drain(done, total, Signal.CONNECTION_ESTABLISHED, "connected", timeout=config.timeout)

    log.info("[main]: starting test")
    send_message(config.address, timeout=config.timeout)
    log.info("[main]: message sent")

    log.info("[main]: writing to the ready queue...")
    for _ in range(total):
        ready.put_nowait(Signal.RELEASE)

    _drain(done, total, Signal.WORK_COMPLETE, "done", timeout=config.timeout)

    log.info("Test passed, %d connections handled!", total)
    return total


def _parse_int(name, value):
    try:
        return int(value, 10)
    except ValueError:
        raise ConfigError(f"{name} must be a base-10 integer, got {value!r}")


def _parse_seconds(name, value):
    if value is None or value == "":
        return None
    try:
        seconds = float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number of seconds, got {value!r}")
    if seconds <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")
    return seconds


def build_parser():
    parser = argparse.ArgumentParser(
        prog="broadcast-check",
        description="Check that a TCP broadcast server relays a message to every client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('ip', nargs='?', help='server host')
    parser.add_argument('port', nargs='?', help='server port')
    parser.add_argument('conn_number', nargs='?', help='number of receiving clients')
    parser.add_argument('--timeout', default=os.environ.get(TIMEOUT_ENV),
                        help=f'fail after SECONDS without progress (default: ${TIMEOUT_ENV} or no limit)')
    parser.add_argument('--launch-delay', type=float, default=0.0,
                        help='pause between starting receivers, in seconds (default: 0)')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='enable debug logging')
    return parser


def parse_args(argv=None):
    """
    Parse command line arguments.

    Returns (config, verbose). config is None when positional arguments are
    missing, in which case the caller should print usage and stop.
    Raises ConfigError for values that do not parse.
    """
    args = build_parser().parse_args(argv)
    return config_from_args(args), args.verbose


def config_from_args(args):
    """Build a HarnessConfig from parsed arguments, or None if any positional is missing."""
    if args.ip is None or args.port is None or args.conn_number is None:
        return None

    port = _parse_int("port", args.port)
    if not 0 <= port <= 65535:
        raise ConfigError(f"port must be in 0-65535, got {port}")
    total = _parse_int("conn_number", args.conn_number)
    timeout = _parse_seconds("timeout", args.timeout)
    if args.launch_delay < 0:
        raise ConfigError(f"launch delay must not be negative, got {args.launch_delay}")

    return HarnessConfig(Address(args.ip, port), total,
                         timeout=timeout, launch_delay=args.launch_delay)


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(message)s",
        datefmt="%Y/%m/%d %H:%M:%S"
    )

    try:
        config = config_from_args(args)
    except ConfigError as e:
        log.error("%s", e)
        return EXIT_CONFIG

    if config is None:
        log.info("Usage: broadcast-check ip port conn_number")
        return EXIT_OK

    log.debug("%r", config)
    try:
        run(config)
    except HarnessError as e:
        log.error("%s", e)
        return EXIT_FAILED
    return EXIT_OK
