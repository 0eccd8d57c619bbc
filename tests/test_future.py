import threading
import time

import pytest

from rocketlink.codec import new_remoting_command
from rocketlink.future import RequestTimeoutError, ResponseFuture


def test_new_response_future():
    future = ResponseFuture(10)
    assert future.opaque == 10
    assert future.error is None
    assert future.callback is None
    assert future.done.is_set() is False


def test_callback_runs_once_across_threads():
    def callback(r):
        if r.response_command.remark == "":
            r.response_command.remark = "Hello RocketMQ."
        else:
            r.response_command.remark = r.response_command.remark + "Go Client"

    future = ResponseFuture(10, callback)
    future.response_command = new_remoting_command(200, None, None)
    threads = [threading.Thread(target=future.execute_invoke_callback) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert future.response_command.remark == "Hello RocketMQ."


def test_wait_response_times_out():
    future = ResponseFuture(10, timeout=0.000001)
    with pytest.raises(RequestTimeoutError):
        future.wait_response()
    assert isinstance(future.error, RequestTimeoutError)


def test_wait_response_raises_set_error():
    future = ResponseFuture(10)
    error = RuntimeError("response error")

    def later():
        time.sleep(0.1)
        future.set_error(error)

    threading.Thread(target=later).start()
    with pytest.raises(RuntimeError) as info:
        future.wait_response()
    assert info.value is error


def test_wait_response_returns_command():
    future = ResponseFuture(10)
    command = new_remoting_command(202, None, None)

    def later():
        time.sleep(0.1)
        future.set_response(command)

    threading.Thread(target=later).start()
    assert future.wait_response() is command