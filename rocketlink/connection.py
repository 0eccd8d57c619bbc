"""TCP connections to servers."""

from __future__ import annotations

import socket
import ssl
import threading
from dataclasses import dataclass
from typing import Optional


@dataclass
class RemotingClientConfig:
    """Connection settings; durations are in seconds."""

    keep_alive: float = 0.0
    connection_timeout: float = 15.0
    read_timeout: float = 120.0
    write_timeout: float = 120.0
    use_tls: bool = False


def parse_address(addr: str) -> tuple[str, int]:
    """Split ``host:port``; an empty host means the local machine."""
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"too many colons in address {addr!r}")
    if not port.isdigit():
        raise ValueError(f"invalid port in address {addr!r}")
    number = int(port)
    if number > 65535:
        raise ValueError(f"invalid port in address {addr!r}")
    return host or "127.0.0.1", number


class TcpConnection:
    """A socket with serialised writes and a closed flag."""

    def __init__(self, sock: socket.socket, addr: str) -> None:
        self._sock = sock
        self.addr = addr
        self._write_lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, addr: str, config: Optional[RemotingClientConfig] = None) -> "TcpConnection":
        config = config or RemotingClientConfig()
        host, port = parse_address(addr)
        sock = socket.create_connection((host, port), timeout=config.connection_timeout)
        try:
            if config.keep_alive >= 0:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
                if config.keep_alive > 0 and hasattr(socket, "TCP_KEEPIDLE"):
                    sock.setsockopt(
                        socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, max(1, int(config.keep_alive))
                    )
            if config.use_tls:
                context = ssl.create_default_context()
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
                sock = context.wrap_socket(sock, server_hostname=host)
            sock.settimeout(config.read_timeout if config.read_timeout > 0 else None)
        except BaseException:
            sock.close()
            raise
        return cls(sock, addr)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def remote_addr(self) -> str:
        try:
            peer = self._sock.getpeername()
        except OSError:
            return self.addr
        return f"{peer[0]}:{peer[1]}"

    @property
    def local_addr(self) -> str:
        try:
            local = self._sock.getsockname()
        except OSError:
            return ""
        return f"{local[0]}:{local[1]}"

    def send(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionError("use of closed network connection")
        with self._write_lock:
            self._sock.sendall(data)

    def read_exact(self, size: int) -> bytes:
        """Read exactly ``size`` bytes; EOFError if the peer closes first."""
        if size < 0:
            raise ValueError(f"negative read size: {size}")
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = self._sock.recv(remaining)
            if not chunk:
                raise EOFError("connection closed by peer")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def destroy(self) -> None:
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()

    def __enter__(self) -> "TcpConnection":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.destroy()