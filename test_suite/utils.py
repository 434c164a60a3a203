import socket
import time

from broadcast_check import Address

DEFAULT_TIMEOUT = 10


def get_free_port():
    """
    Get a free port on localhost.
    Note: There's an inherent race condition between this function returning
    and the caller binding to the port. We use SO_REUSEADDR to mitigate this.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


def wait_for_port(port, host='127.0.0.1', timeout=5.0):
    """Wait for a port to accept connections."""
    start_time = time.time()
    while time.time() - start_time < timeout:
        try:
            with socket.create_connection((host, port), timeout=0.1):
                return True
        except (socket.timeout, ConnectionRefusedError, OSError):
            time.sleep(0.1)
    return False


def dead_address():
    """An address nothing is listening on."""
    return Address('127.0.0.1', get_free_port())


def server_address(server):
    return Address(server.host, server.actual_port)


def recv_line(sock, limit=4096):
    """Read from sock until a newline arrives or the peer closes."""
    data = b""
    while b"\n" not in data and len(data) < limit:
        chunk = sock.recv(limit)
        if not chunk:
            break
        data += chunk
    return data


def wait_for_clients(server, n, timeout=DEFAULT_TIMEOUT):
    """Wait until a stub server has accepted at least n connections."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        with server.lock:
            if len(server.clients) >= n:
                return True
        time.sleep(0.01)
    return False
