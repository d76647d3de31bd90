"""
TLS Transport
=============

Owns a single TLS-wrapped TCP connection to one IMAP server. Raw bytes only;
no IMAP knowledge lives here.

Certificates are verified against the system CA store with hostname checking.
There is no plaintext mode.
"""

from __future__ import annotations

import logging
import socket
import ssl

from contracts import ConnectionFailedError

logger = logging.getLogger(__name__)

RECV_SIZE = 65536


class Transport:
    """Blocking TLS socket with deadline-aware reads."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        connect_timeout: float = 15.0,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self._ssl_context = ssl_context or ssl.create_default_context()
        self._sock: ssl.SSLSocket | None = None

    @property
    def is_open(self) -> bool:
        return self._sock is not None

    def open(self) -> None:
        """Connect and complete the TLS handshake."""
        if self._sock is not None:
            return
        try:
            raw = socket.create_connection((self.host, self.port), timeout=self.connect_timeout)
        except OSError as e:
            raise ConnectionFailedError(f"{self.host}:{self.port}: {e}") from e

        try:
            self._sock = self._ssl_context.wrap_socket(raw, server_hostname=self.host)
        except (ssl.SSLError, OSError) as e:
            raw.close()
            raise ConnectionFailedError(f"TLS handshake with {self.host} failed: {e}") from e

        logger.debug(f"TLS connection open to {self.host}:{self.port} ({self._sock.version()})")

    def send(self, data: bytes) -> None:
        sock = self._require_socket()
        try:
            sock.sendall(data)
        except OSError as e:
            # Includes a stalled write hitting the socket timeout left by recv.
            raise ConnectionFailedError(f"send failed: {e}") from e

    def recv(self, timeout: float) -> bytes:
        """
        Read whatever the server has sent, waiting at most ``timeout`` seconds.

        Raises TimeoutError when nothing arrives in time and
        ConnectionFailedError when the server closed the connection.
        """
        sock = self._require_socket()
        try:
            sock.settimeout(max(timeout, 0.0))
            data = sock.recv(RECV_SIZE)
        except TimeoutError:
            raise
        except OSError as e:
            raise ConnectionFailedError(f"receive failed: {e}") from e

        if not data:
            raise ConnectionFailedError("connection closed by server")
        return data

    def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.close()
        except OSError as e:
            logger.debug(f"Ignoring error while closing {self.host}: {e}")

    def _require_socket(self) -> ssl.SSLSocket:
        if self._sock is None:
            raise ConnectionFailedError("transport is not open")
        return self._sock
