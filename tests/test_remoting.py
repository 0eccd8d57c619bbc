import io
import os
import socket
import struct
import threading

import pytest

from rocketlink.codec import RESPONSE_TYPE, decode, encode, new_remoting_command
from rocketlink.future import RequestTimeoutError
from rocketlink.remoting import RemotingClient, chain_interceptors, iter_frames


class _Header:
    def encode(self):
        return {"alpha": "one", "beta": "two", "gamma": ""}


@pytest.fixture
def server():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen()
    sock.settimeout(5)
    yield sock
    sock.close()


def _addr(sock):
    return f"127.0.0.1:{sock.getsockname()[1]}"


def _recv_exact(conn, size):
    data = b""
    while len(data) < size:
        chunk = conn.recv(size - len(data))
        if not chunk:
            raise EOFError
        data += chunk
    return data


def _read_raw_frame(conn):
    (length,) = struct.unpack(">i", _recv_exact(conn, 4))
    return _recv_exact(conn, length)


def _read_frame(conn):
    return decode(_read_raw_frame(conn))


def test_iter_frames_decodes_command():
    command = new_remoting_command(33, _Header(), b"payload")
    frames = list(iter_frames(io.BytesIO(encode(command))))
    assert len(frames) == 1
    decoded = decode(frames[0])
    assert decoded.code == command.code
    assert decoded.version == command.version
    assert decoded.opaque == command.opaque
    assert decoded.flag == command.flag
    assert decoded.ext_fields == command.ext_fields


def test_iter_frames_skips_partial_tail():
    first = encode(new_remoting_command(1, None, b"a"))
    second = encode(new_remoting_command(2, None, b"b"))
    stream = io.BytesIO(first + second + second[:5])
    codes = [decode(frame).code for frame in iter_frames(stream)]
    assert codes == [1, 2]


def test_chain_interceptors_order():
    calls = []

    def make(name):
        def interceptor(req, reply, invoker):
            calls.append(name)
            return invoker(req, reply)

        return interceptor

    chained = chain_interceptors(make("a"), make("b"))
    result = chained("req", None, lambda req, reply: req + "!")
    assert result == "req!"
    assert calls == ["a", "b"]
    assert chain_interceptors() is None


def test_invoke_sync(server):
    client = RemotingClient()
    request = new_remoting_command(10, None, b"Hello RocketMQ")
    reply = new_remoting_command(20, None, b"Welcome native")
    reply.opaque = request.opaque
    reply.flag = RESPONSE_TYPE
    received = []

    def serve():
        conn, _ = server.accept()
        with conn:
            received.append(_read_frame(conn))
            conn.sendall(encode(reply))

    thread = threading.Thread(target=serve)
    thread.start()
    result = client.invoke_sync(_addr(server), request, timeout=5)
    thread.join()
    client.shutdown()
    assert received[0].code == 10
    assert result.code == 20
    assert result.body == b"Welcome native"
    assert result.opaque == request.opaque
    assert result.ext_fields == {}


def test_invoke_sync_timeout(server):
    client = RemotingClient()
    stop = threading.Event()

    def serve():
        conn, _ = server.accept()
        with conn:
            _read_frame(conn)
            stop.wait(5)

    thread = threading.Thread(target=serve)
    thread.start()
    with pytest.raises(RequestTimeoutError):
        client.invoke_sync(_addr(server), new_remoting_command(10, None, b"x"), timeout=0.2)
    stop.set()
    thread.join()
    client.shutdown()


def test_invoke_async(server):
    client = RemotingClient()
    count = 20
    sent = {}
    results = {}
    raw_requests = []
    finished = threading.Event()
    lock = threading.Lock()

    def serve():
        conn, _ = server.accept()
        with conn:
            for _ in range(count):
                raw = _read_raw_frame(conn)
                raw_requests.append(raw)
                command = decode(raw)
                command.mark_response_type()
                conn.sendall(encode(command))
            finished.wait(5)

    thread = threading.Thread(target=serve)
    thread.start()

    def callback(future):
        with lock:
            results[future.opaque] = future.response_command.body
            if len(results) == count:
                finished.set()

    for _ in range(count):
        command = new_remoting_command(5, _Header(), os.urandom(16))
        sent[command.opaque] = command.body
        client.invoke_async(_addr(server), command, callback, timeout=5)

    assert finished.wait(5)
    thread.join()
    client.shutdown()
    assert results == sent
    decoded = [decode(raw) for raw in raw_requests]
    assert {cmd.opaque: cmd.body for cmd in decoded} == sent
    assert all(cmd.ext_fields == {"alpha": "one", "beta": "two", "gamma": ""} for cmd in decoded)


def test_invoke_async_timeout(server):
    client = RemotingClient()
    errors = []
    called = threading.Event()
    stop = threading.Event()

    def serve():
        conn, _ = server.accept()
        with conn:
            _read_frame(conn)
            stop.wait(5)

    thread = threading.Thread(target=serve)
    thread.start()

    def callback(future):
        errors.append(future.error)
        called.set()

    client.invoke_async(_addr(server), new_remoting_command(10, None, b"Hello"), callback, timeout=0.3)
    assert called.wait(5)
    with pytest.raises(RequestTimeoutError):
        client.invoke_sync(_addr(server), new_remoting_command(10, None, b"again"), timeout=0.2)
    stop.set()
    thread.join()
    client.shutdown()
    assert len(errors) == 1
    assert isinstance(errors[0], RequestTimeoutError)


def test_invoke_async_connect_failure():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    addr = _addr(sock)
    sock.close()
    client = RemotingClient()
    errors = []
    called = threading.Event()

    def callback(future):
        errors.append(future.error)
        called.set()

    client.invoke_async(addr, new_remoting_command(10, None, b"x"), callback)
    assert called.wait(5)
    assert len(errors) == 1
    assert isinstance(errors[0], OSError)
    with pytest.raises(OSError):
        client.invoke_sync(addr, new_remoting_command(10, None, b"x"), timeout=1)


def test_invoke_one_way(server):
    client = RemotingClient()
    request = new_remoting_command(10, None, b"Hello RocketMQ")
    raw_frames = []

    def serve():
        conn, _ = server.accept()
        with conn:
            raw_frames.append(_read_raw_frame(conn))

    thread = threading.Thread(target=serve)
    thread.start()
    client.invoke_one_way(_addr(server), request)
    thread.join()
    client.shutdown()
    received = decode(raw_frames[0])
    assert received.code == 10
    assert received.opaque == request.opaque
    assert received.body == b"Hello RocketMQ"


def test_interceptor_sees_request(server):
    client = RemotingClient()
    seen = []

    def interceptor(req, reply, invoker):
        seen.append(req.opaque)
        return invoker(req, reply)

    client.register_interceptor(interceptor)
    request = new_remoting_command(11, None, b"x")
    received = []

    def serve():
        conn, _ = server.accept()
        with conn:
            received.append(_read_frame(conn))

    thread = threading.Thread(target=serve)
    thread.start()
    client.invoke_one_way(_addr(server), request)
    thread.join()
    client.shutdown()
    assert seen == [request.opaque]
    assert received[0].opaque == request.opaque


def test_server_request_is_answered(server):
    client = RemotingClient()
    addrs = []

    def handler(command, addr):
        addrs.append(addr)
        return new_remoting_command(100, None, command.body + b"-pong")

    client.register_request_func(99, handler)
    answers = []

    def serve():
        conn, _ = server.accept()
        with conn:
            _read_frame(conn)
            push = new_remoting_command(99, None, b"ping")
            push.opaque = 77
            conn.sendall(encode(push))
            answers.append(_read_frame(conn))

    thread = threading.Thread(target=serve)
    thread.start()
    client.invoke_one_way(_addr(server), new_remoting_command(1, None, b""))
    thread.join()
    client.shutdown()
    answer = answers[0]
    assert answer.opaque == 77
    assert answer.code == 100
    assert answer.body == b"ping-pong"
    assert answer.is_response_type()
    assert addrs[0] == _addr(server)


def test_shutdown_closes_connection(server):
    client = RemotingClient()
    tail = []
    raw_frames = []
    sent = threading.Event()

    def serve():
        conn, _ = server.accept()
        with conn:
            raw_frames.append(_read_raw_frame(conn))
            sent.set()
            tail.append(conn.recv(1))

    thread = threading.Thread(target=serve)
    thread.start()
    request = new_remoting_command(1, None, b"x")
    client.invoke_one_way(_addr(server), request)
    assert sent.wait(5)
    client.shutdown()
    thread.join()
    assert decode(raw_frames[0]).opaque == request.opaque
    assert tail == [b""]