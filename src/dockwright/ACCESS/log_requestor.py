"""
Background log following for containers.
"""
import logging
import threading
from typing import Callable, Iterable, Optional

from .docker_access import LogCallback, LogHandle

logger = logging.getLogger(__name__)


class LogRequestor(LogHandle):
    """
    Follows a log stream on a daemon thread and hands every line to a callback.

    The stream is stopped when the callback returns True, when the stream
    ends or when cancel() is called.
    """

    def __init__(self, name: str, stream: Iterable[bytes], callback: LogCallback,
                 close: Optional[Callable[[], None]] = None):
        """
        :param name: Identifier for the thread, usually the container id.
        :param stream: Chunks of log output.
        :param callback: Receives each complete line.
        :param close: Closes the underlying stream, unblocking a pending read.
        """
        self.stream = stream
        self.callback = callback
        self._close = close
        self._cancelled = threading.Event()
        self.thread = threading.Thread(target=self._run, name=f"log-{name[:12]}", daemon=True)

    def start(self) -> "LogRequestor":
        self.thread.start()
        return self

    def cancel(self):
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        if self._close is not None:
            try:
                self._close()
            except Exception as e:
                logger.debug("Error while closing log stream: %s", e)

    @property
    def is_alive(self) -> bool:
        return self.thread.is_alive()

    def join(self, timeout: Optional[float] = None):
        self.thread.join(timeout)

    def _run(self):
        buffer = ""
        try:
            for chunk in self.stream:
                if self._cancelled.is_set():
                    return
                buffer += chunk.decode("utf-8", errors="replace") if isinstance(chunk, bytes) else chunk
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    if self._deliver(line):
                        return
            if buffer and not self._cancelled.is_set():
                self._deliver(buffer)
        except Exception as e:
            # Closing the stream from cancel() ends a blocking read with an error
            if not self._cancelled.is_set():
                logger.error("Error while following log: %s", e)
        finally:
            self.cancel()

    def _deliver(self, line: str) -> bool:
        if self._cancelled.is_set():
            return True
        return bool(self.callback(line.rstrip("\r")))
