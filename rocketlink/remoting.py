"""Client that sends framed commands to servers and dispatches replies."""

from __future__ import annotations

import logging
import struct
import threading
from typing import BinaryIO, Callable, Iterator, Optional

from rocketlink.codec import CodecType, RemotingCommand, decode, encode
from rocketlink.connection import RemotingClientConfig, TcpConnection
from rocketlink.future import ResponseFuture

logger = logging.getLogger(__name__)

RequestFunc = Callable[[RemotingCommand, str], Optional[RemotingCommand]]
Invoker = Callable[[RemotingCommand, object], object]
Interceptor = Callable[[RemotingCommand, object, Invoker], object]


def _read_fully(stream: BinaryIO, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def iter_frames(stream: BinaryIO) -> Iterator[bytes]:
    """Yield each complete frame (without its size word) read from a stream."""
    while True:
        head = _read_fully(stream, 4)
        if len(head) < 4:
            return
        (length,) = struct.unpack(">i", head)
        if length < 0:
            raise ValueError(f"negative frame length: {length}")
        payload = _read_fully(stream, length)
        if len(payload) < length:
            return
        yield payload


def chain_interceptors(*interceptors: Interceptor) -> Optional[Interceptor]:
    """Combine interceptors so that the first given runs outermost."""
    if not interceptors:
        return None
    if len(interceptors) == 1:
        return interceptors[0]

    def chained(request: RemotingCommand, reply: object, invoker: Invoker) -> object:
        def call(index: int, req: RemotingCommand, rep: object) -> object:
            if index == len(interceptors):
                return invoker(req, rep)
            return interceptors[index](req, rep, lambda r, p: call(index + 1, r, p))

        return call(0, request, reply)

    return chained


def _spawn(target: Callable[[], None]) -> None:
    def run() -> None:
        try:
            target()
        except Exception:
            logger.exception("background task failed")

    threading.Thread(target=run, daemon=True).start()


class RemotingClient:
    """Keeps one connection per address and matches responses by opaque id."""

    def __init__(
        self,
        config: Optional[RemotingClientConfig] = None,
        codec_type: CodecType = CodecType.JSON,
    ) -> None:
        self.config = config or RemotingClientConfig()
        self.codec_type = codec_type
        self._processors: dict[int, RequestFunc] = {}
        self._responses: dict[int, ResponseFuture] = {}
        self._responses_lock = threading.Lock()
        self._connections: dict[str, TcpConnection] = {}
        self._connections_lock = threading.Lock()
        self._interceptor: Optional[Interceptor] = None

    def register_request_func(self, code: int, func: RequestFunc) -> None:
        self._processors[code] = func

    def register_interceptor(self, *interceptors: Interceptor) -> None:
        self._interceptor = chain_interceptors(*interceptors)

    def invoke_sync(
        self, addr: str, request: RemotingCommand, timeout: Optional[float] = None
    ) -> Optional[RemotingCommand]:
        conn = self._connect(addr)
        future = ResponseFuture(request.opaque, timeout=timeout)
        self._store(future)
        try:
            self._send_request(conn, request)
            return future.wait_response()
        finally:
            self._remove(request.opaque)

    def invoke_async(
        self,
        addr: str,
        request: RemotingCommand,
        callback: Callable[[ResponseFuture], None],
        timeout: Optional[float] = None,
    ) -> None:
        """Send without blocking; the callback receives the finished future."""
        future = ResponseFuture(request.opaque, callback, timeout)
        self._store(future)

        def work() -> None:
            try:
                try:
                    conn = self._connect(addr)
                    self._send_request(conn, request)
                except Exception as exc:
                    future.error = exc
                    return
                try:
                    future.wait_response()
                except Exception:
                    future.execute_invoke_callback()
            finally:
                self._remove(request.opaque)
                future.execute_invoke_callback()

        _spawn(work)

    def invoke_one_way(self, addr: str, request: RemotingCommand) -> None:
        conn = self._connect(addr)
        self._send_request(conn, request)

    def shutdown(self) -> None:
        with self._responses_lock:
            self._responses.clear()
        with self._connections_lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for conn in connections:
            try:
                conn.destroy()
            except OSError as exc:
                logger.warning("close remoting conn %s error: %s", conn.addr, exc)

    def _store(self, future: ResponseFuture) -> None:
        with self._responses_lock:
            self._responses[future.opaque] = future

    def _remove(self, opaque: int) -> Optional[ResponseFuture]:
        with self._responses_lock:
            return self._responses.pop(opaque, None)

    def _connect(self, addr: str) -> TcpConnection:
        with self._connections_lock:
            conn = self._connections.get(addr)
            if conn is not None:
                return conn
            conn = TcpConnection.open(addr, self.config)
            self._connections[addr] = conn
        threading.Thread(target=self._receive_response, args=(conn,), daemon=True).start()
        return conn

    def _receive_response(self, conn: TcpConnection) -> None:
        while True:
            try:
                (length,) = struct.unpack(">i", conn.read_exact(4))
                payload = conn.read_exact(length)
            except (OSError, EOFError, ValueError) as exc:
                if conn.closed:
                    return
                if isinstance(exc, (EOFError, TimeoutError)):
                    logger.debug("conn error, close connection %s: %s", conn.addr, exc)
                else:
                    logger.error("conn error, close connection %s: %s", conn.addr, exc)
                self._close_connection(conn)
                conn.destroy()
                return
            try:
                command = decode(payload)
            except (ValueError, struct.error, TypeError) as exc:
                logger.error("decode RemotingCommand error: %s", exc)
                continue
            self._process_command(command, conn)

    def _process_command(self, command: RemotingCommand, conn: TcpConnection) -> None:
        if command.is_response_type():
            future = self._remove(command.opaque)
            if future is not None:

                def complete() -> None:
                    future.set_response(command)
                    future.execute_invoke_callback()

                _spawn(complete)
            return

        func = self._processors.get(command.code)
        if func is None:
            logger.warning("receive request code %d, but no func to handle", command.code)
            return

        def handle() -> None:
            response = func(command, conn.remote_addr)
            if response is None:
                return
            response.opaque = command.opaque
            response.flag |= 1
            try:
                self._send_request(conn, response)
            except OSError as exc:
                logger.warning("send response code %d error: %s", response.code, exc)

        _spawn(handle)

    def _send_request(self, conn: TcpConnection, request: RemotingCommand) -> None:
        if self._interceptor is not None:
            self._interceptor(request, None, lambda req, reply: self._do_request(conn, req))
        else:
            self._do_request(conn, request)

    def _do_request(self, conn: TcpConnection, request: RemotingCommand) -> None:
        try:
            conn.send(encode(request, self.codec_type))
        except OSError as exc:
            logger.error("conn error, close connection %s: %s", conn.addr, exc)
            self._close_connection(conn)
            conn.destroy()
            raise

    def _close_connection(self, conn: TcpConnection) -> None:
        with self._connections_lock:
            for key, value in list(self._connections.items()):
                if value is conn:
                    del self._connections[key]
                    break