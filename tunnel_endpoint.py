"""
Tunnel Endpoint - byte relay between a websocket client and a TCP upstream.

    ws://proxy/tunnel?host=example.com&port=443
    ws://proxy/tunnel?target=example.com:443

Frames from the client are written to the upstream socket verbatim and
whatever the upstream sends comes back as binary frames. Nothing is parsed
or rewritten.
"""
import logging
import socket
import threading
import uuid

from flask import request
from simple_websocket import ConnectionClosed

from proxy_errors import InvalidTarget
from url_resolver import normalize_host

logger = logging.getLogger(__name__)

BUFFER_SIZE = 65536
CLOSE_POLICY_VIOLATION = 1008
CLOSE_UPSTREAM_FAILED = 1011


class TunnelSession:
    """Owns both ends of one tunnel; closing either side closes both, once."""

    def __init__(self, client, upstream, session_id=None):
        self.id = session_id or uuid.uuid4().hex[:12]
        self.client = client
        self.upstream = upstream
        self.bytes_up = 0
        self.bytes_down = 0
        self._closed = threading.Event()
        self._close_lock = threading.Lock()

    @property
    def closed(self):
        return self._closed.is_set()

    def run(self):
        """Relay in both directions until one side goes away. Blocks the caller."""
        pump = threading.Thread(
            target=self._upstream_to_client,
            name=f'tunnel-{self.id}',
            daemon=True,
        )
        pump.start()
        try:
            self._client_to_upstream()
        finally:
            self.close()
            pump.join(timeout=5)

    def _client_to_upstream(self):
        while not self.closed:
            try:
                data = self.client.receive()
            except ConnectionClosed:
                break
            if data is None:
                break
            if isinstance(data, str):
                data = data.encode('utf-8')
            try:
                self.upstream.sendall(data)
            except OSError as e:
                logger.info(f"[TUNNEL] {self.id} upstream write failed: {e}")
                break
            self.bytes_up += len(data)

    def _upstream_to_client(self):
        try:
            while not self.closed:
                try:
                    data = self.upstream.recv(BUFFER_SIZE)
                except OSError as e:
                    if not self.closed:
                        logger.info(f"[TUNNEL] {self.id} upstream read failed: {e}")
                    break
                if not data:
                    break
                try:
                    self.client.send(data)
                except ConnectionClosed:
                    break
                self.bytes_down += len(data)
        finally:
            self.close()

    def close(self):
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()
        try:
            self.upstream.shutdown(socket.SHUT_RDWR)
        except OSError:
            # already disconnected
            pass
        self.upstream.close()
        try:
            self.client.close()
        except ConnectionClosed:
            pass
        logger.info(f"[TUNNEL] {self.id} closed (↑{self.bytes_up}b ↓{self.bytes_down}b)")


def parse_tunnel_target(args, allowed_ports):
    """Read host/port from the upgrade request's query args. Raises InvalidTarget."""
    target = args.get('target')
    if target:
        host, sep, port = target.rpartition(':')
        if not sep:
            raise InvalidTarget("Tunnel target must be host:port", url=target)
        host = host.strip('[]')
    else:
        host = args.get('host', '')
        port = args.get('port', '')
        target = f'{host}:{port}'

    host = normalize_host(host)
    try:
        port = int(port)
    except ValueError:
        raise InvalidTarget(f"Invalid tunnel port: {port!r}", url=target)
    if not 0 < port < 65536:
        raise InvalidTarget(f"Invalid tunnel port: {port}", url=target)
    if allowed_ports is not None and port not in allowed_ports:
        raise InvalidTarget(f"Tunnel port {port} is not allowed", url=target)
    return host, port


def open_tunnel(client, host, port, timeout):
    """Connect to the upstream and wrap both ends in a TunnelSession."""
    upstream = socket.create_connection((host, port), timeout=timeout)
    # the timeout only bounds connecting; an idle tunnel is not an error
    upstream.settimeout(None)
    return TunnelSession(client, upstream)


def register_tunnel(sock, config):
    """Attach the /tunnel websocket route to a flask_sock.Sock."""

    @sock.route('/tunnel')
    def tunnel(ws):
        try:
            host, port = parse_tunnel_target(request.args, config.tunnel_allowed_ports)
        except InvalidTarget as e:
            logger.warning(f"[TUNNEL] refused: {e.message}")
            ws.close(reason=CLOSE_POLICY_VIOLATION, message=e.message)
            return

        try:
            session = open_tunnel(ws, host, port, config.timeout)
        except OSError as e:
            logger.warning(f"[TUNNEL] could not reach {host}:{port}: {e}")
            ws.close(reason=CLOSE_UPSTREAM_FAILED, message='Upstream unreachable')
            return

        logger.info(f"[TUNNEL] {session.id} open → {host}:{port}")
        session.run()

    return tunnel
