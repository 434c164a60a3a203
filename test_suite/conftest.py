import pytest
import os
import subprocess
import time
from .servers import TcpFanoutServer, TcpChatServer, EagerServer, SilentServer, RecordingServer
from .utils import get_free_port, wait_for_port
from broadcast_check import Address


def pytest_addoption(parser):
    parser.addoption("--chat-server", action="store", default=None,
                     help="Path to an external broadcast server executable, run as '<path> <host> <port>'")


def _start(server_cls):
    server = server_cls()
    server.start()
    server.wait_ready()
    return server


@pytest.fixture
def fanout_server():
    server = _start(TcpFanoutServer)
    yield server
    server.stop()


@pytest.fixture
def chat_stub():
    server = _start(TcpChatServer)
    yield server
    server.stop()


@pytest.fixture
def eager_server():
    server = _start(EagerServer)
    yield server
    server.stop()


@pytest.fixture
def silent_server():
    server = _start(SilentServer)
    yield server
    server.stop()


@pytest.fixture
def recording_server():
    server = _start(RecordingServer)
    yield server
    server.stop()


@pytest.fixture
def chat_server(request):
    """
    Run the external server given with --chat-server.
    Yields its Address; skips the test when no server was given.
    """
    path = request.config.getoption("--chat-server")
    if not path:
        pytest.skip("no --chat-server given")
    path = os.path.abspath(path)
    if not (os.path.exists(path) and os.access(path, os.X_OK)):
        pytest.fail(f"--chat-server {path} is not an executable")

    port = get_free_port()
    process = subprocess.Popen(
        [path, "127.0.0.1", str(port)],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        universal_newlines=True
    )

    if not wait_for_port(port):
        process.kill()
        stdout, stderr = process.communicate()
        pytest.fail(f"chat server failed to start:\nStdout: {stdout}\nStderr: {stderr}")

    # Let the probe connection from wait_for_port go away
    time.sleep(0.1)

    yield Address("127.0.0.1", port)

    if process.poll() is None:
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()

    stdout, stderr = process.communicate()
    if stdout:
        print(f"\n[chat server stdout]:\n{stdout}")
    if stderr:
        print(f"\n[chat server stderr]:\n{stderr}")
