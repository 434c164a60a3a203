"""
Stub broadcast servers the harness is pointed at.

Every server accepts connections on a single accept thread, in backlog order,
and registers a connection before its handler thread starts. A sender that
connects after all receivers therefore always finds them registered.
"""
import socket
import threading
import select
import sys

BACKLOG = 512
CHAT_LINE_LIMIT = 128


class BaseStubServer(threading.Thread):
    def __init__(self, host='127.0.0.1', port=0):
        super().__init__()
        self.host = host
        self.port = port
        self.actual_port = 0
        self.running = True
        self.ready = threading.Event()
        self.sock = None
        self.daemon = True
        self.lock = threading.Lock()
        self.clients = []

    @property
    def address(self):
        return (self.host, self.actual_port)

    def stop(self):
        self.running = False
        if self.sock:
            try:
                self.sock.close()
            except OSError:
                pass
        with self.lock:
            clients = list(self.clients)
        for conn in clients:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()
        self.join(timeout=2)

    def wait_ready(self, timeout=5):
        return self.ready.wait(timeout)

    def run(self):
        try:
            self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.sock.bind((self.host, self.port))
            self.actual_port = self.sock.getsockname()[1]
            self.sock.listen(BACKLOG)
            self.ready.set()

            while self.running:
                try:
                    r, _, _ = select.select([self.sock], [], [], 0.5)
                    if not r:
                        continue

                    conn, addr = self.sock.accept()
                    with self.lock:
                        self.clients.append(conn)
                    self.on_connect(conn)
                    client_thread = threading.Thread(target=self._serve, args=(conn,))
                    client_thread.daemon = True
                    client_thread.start()
                except OSError:
                    break
        except Exception as e:
            print(f"{type(self).__name__} error: {e}", file=sys.stderr)
        finally:
            if self.sock:
                self.sock.close()

    def _serve(self, conn):
        try:
            while True:
                data = conn.recv(4096)
                if not data:
                    break
                if not self.on_data(conn, data):
                    break
        except OSError:
            pass  # Expected when client disconnects or server stops
        finally:
            with self.lock:
                if conn in self.clients:
                    self.clients.remove(conn)
            conn.close()

    def on_connect(self, conn):
        pass

    def on_data(self, conn, data):
        """Handle one received chunk. Return False to close the connection."""
        return True

    def others(self, conn):
        with self.lock:
            return [c for c in self.clients if c is not conn]

    def relay(self, conn, payload):
        """Write payload to every live connection except conn."""
        for peer in self.others(conn):
            try:
                peer.sendall(payload)
            except OSError:
                pass  # Peer went away; its own handler cleans up


class TcpFanoutServer(BaseStubServer):
    """
    On any bytes from one connection, writes b"X" to every other live
    connection. "Other" means every connection except the one that sent, so
    each receiver of the harness gets the byte, not just total - 1 of them.
    """
    FANOUT_BYTE = b"X"

    def on_data(self, conn, data):
        self.relay(conn, self.FANOUT_BYTE)
        return True


class TcpChatServer(BaseStubServer):
    """
    Line-oriented chat relay.

    Buffers input per client until b"\\n", drops one trailing b"\\r" and sends
    the line plus b"\\n" to every other client. A client that fills
    CHAT_LINE_LIMIT bytes without a newline is disconnected.
    """

    def __init__(self, host='127.0.0.1', port=0):
        super().__init__(host, port)
        self.buffers = {}
        self.lines = []

    def on_data(self, conn, data):
        buf = self.buffers.setdefault(conn, bytearray())
        buf.extend(data)
        while b"\n" in buf:
            line, _, rest = bytes(buf).partition(b"\n")
            buf[:] = rest
            if line.endswith(b"\r"):
                line = line[:-1]
            with self.lock:
                self.lines.append(line)
            self.relay(conn, line + b"\n")
        if len(buf) >= CHAT_LINE_LIMIT:
            del self.buffers[conn]
            return False
        return True


class EagerServer(BaseStubServer):
    """Writes a greeting to every client as soon as it is accepted."""
    GREETING = b"early"

    def __init__(self, host='127.0.0.1', port=0):
        super().__init__(host, port)
        self.greeted = threading.Semaphore(0)

    def on_connect(self, conn):
        conn.sendall(self.GREETING)
        self.greeted.release()


class SilentServer(BaseStubServer):
    """Accepts and reads, never writes anything back."""


class RecordingServer(BaseStubServer):
    """Records every recv() chunk, per connection, in accept order."""

    def __init__(self, host='127.0.0.1', port=0):
        super().__init__(host, port)
        self.chunks = {}
        self.order = []
        self.closed = threading.Event()

    def on_connect(self, conn):
        with self.lock:
            self.order.append(conn)
            self.chunks[conn] = []

    def on_data(self, conn, data):
        with self.lock:
            self.chunks[conn].append(data)
        return True

    def _serve(self, conn):
        super()._serve(conn)
        self.closed.set()

    def received(self, n=0):
        """All chunks recorded for the n-th accepted connection."""
        with self.lock:
            return list(self.chunks[self.order[n]])
