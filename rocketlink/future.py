"""Pending response bookkeeping for remote calls."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from rocketlink.codec import RemotingCommand


class RequestTimeoutError(Exception):
    """Raised when no response arrives before the request deadline."""

    def __init__(self, message: str = "request timeout") -> None:
        super().__init__(message)


class ResponseFuture:
    """A response that a request is still waiting for."""

    def __init__(
        self,
        opaque: int,
        callback: Optional[Callable[["ResponseFuture"], None]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.opaque = opaque
        self.callback = callback
        self.response_command: Optional[RemotingCommand] = None
        self.error: Optional[BaseException] = None
        self.done = threading.Event()
        self._deadline = None if timeout is None else time.monotonic() + timeout
        self._callback_lock = threading.Lock()
        self._callback_ran = False

    def execute_invoke_callback(self) -> None:
        """Run the callback, at most once however often this is called."""
        with self._callback_lock:
            if self._callback_ran:
                return
            self._callback_ran = True
            if self.callback is not None:
                self.callback(self)

    def wait_response(self) -> Optional[RemotingCommand]:
        """Block until the response arrives; raise on error or timeout."""
        remaining = None
        if self._deadline is not None:
            remaining = max(0.0, self._deadline - time.monotonic())
        if not self.done.wait(remaining):
            self.error = RequestTimeoutError()
            raise self.error
        if self.error is not None:
            raise self.error
        return self.response_command

    def set_response(self, command: RemotingCommand) -> None:
        self.response_command = command
        self.done.set()

    def set_error(self, error: BaseException) -> None:
        self.error = error
        self.done.set()