"""
Live tailing of a single access log.

A daemon thread reads the file and pushes complete lines onto a queue that a
single consumer drains. The follower starts at the current end of the file
and keeps going across logrotate-style rotation:

    - inode at the path changed: drain the old handle, read the new file from 0
    - file shrank below our offset (copytruncate): restart at offset 0
    - path missing: wait up to ``reopen_timeout`` for a replacement

Anything else that stops the reader is terminal and is reported once through
the ``on_error`` callback.
"""
from __future__ import annotations

import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterator, List, Optional

from tailpoint.errors import FollowerError, OpenError

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[FollowerError], None]


@dataclass(frozen=True)
class Line:
    text: str
    offset: int


class _Closed:
    def __repr__(self) -> str:
        return "Follower.CLOSED"


class Follower:
    CLOSED = _Closed()

    def __init__(
        self,
        path: str,
        *,
        poll_interval: float = 0.25,
        reopen_timeout: float = 5.0,
        max_pending: int = 10000,
    ):
        self.path = path
        self.poll_interval = poll_interval
        self.reopen_timeout = reopen_timeout
        self.q: "queue.Queue[object]" = queue.Queue(maxsize=max_pending)

        self._file: Optional[BinaryIO] = None
        self._inode: Optional[int] = None
        self._offset = 0
        self._partial = b""
        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()

        self._error_lock = threading.Lock()
        self._error: Optional[FollowerError] = None
        self._callbacks: List[ErrorCallback] = []
        self._closed = False

    # ----------------------------
    # Public API
    # ----------------------------
    def start(self) -> "Follower":
        """Open the file at its end and start the reader thread."""
        try:
            f = open(self.path, "rb")
        except OSError as e:
            raise OpenError(f"cannot open {self.path}: {e.strerror or e}") from e
        f.seek(0, os.SEEK_END)
        self._attach(f)
        logger.info("Following %s from offset %d", self.path, self._offset)

        self._thread = threading.Thread(target=self._worker, name="tailpoint-follower", daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = 2.0) -> None:
        self._stopping.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def on_error(self, callback: ErrorCallback) -> None:
        """Register a callback for the terminal read error.

        The callback runs at most once, on the reader thread. If the follower
        has already failed it runs immediately on the caller's thread.
        """
        with self._error_lock:
            err = self._error
            if err is None:
                self._callbacks.append(callback)
                return
        callback(err)

    @property
    def error(self) -> Optional[FollowerError]:
        return self._error

    def get(self, timeout: Optional[float] = None) -> object:
        """Next Line, ``None`` on timeout, or ``Follower.CLOSED`` once the reader ended."""
        if self._closed:
            return self.CLOSED
        try:
            item = self.q.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self.CLOSED:
            self._closed = True
        return item

    def __iter__(self) -> Iterator[Line]:
        while True:
            item = self.get()
            if item is self.CLOSED:
                return
            if item is not None:
                yield item

    # ----------------------------
    # Reader thread
    # ----------------------------
    def _attach(self, f: BinaryIO) -> None:
        if self._file is not None:
            self._file.close()
        if self._partial:
            logger.debug(
                "Dropping unterminated line from previous %s (%d bytes): %r",
                self.path, len(self._partial), self._partial[:200],
            )
        self._file = f
        self._offset = f.tell()
        self._inode = os.fstat(f.fileno()).st_ino
        self._partial = b""

    def _worker(self) -> None:
        try:
            self._run()
        except FollowerError as e:
            self._fail(e)
        except OSError as e:
            self._fail(FollowerError(f"error reading {self.path}: {e}"))
        finally:
            if self._file is not None:
                self._file.close()
                self._file = None
            self._put(self.CLOSED)

    def _run(self) -> None:
        while not self._stopping.is_set():
            if self._read_available():
                continue
            self._check_rotation()
            self._stopping.wait(self.poll_interval)

    def _read_available(self) -> bool:
        """Push every complete line currently readable. Returns True if any bytes were read."""
        got = False
        while not self._stopping.is_set():
            chunk = self._file.readline()
            if not chunk:
                return got
            got = True
            start = self._offset - len(self._partial)
            self._offset += len(chunk)
            if not chunk.endswith(b"\n"):
                # writer hasn't finished this line yet
                self._partial += chunk
                continue
            data = self._partial + chunk
            self._partial = b""
            text = data.decode("utf-8", errors="replace").rstrip("\r\n")
            self._put(Line(text=text, offset=start))
        return got

    def _check_rotation(self) -> None:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            self._wait_for_replacement()
            return

        if st.st_ino != self._inode:
            self._reopen("rotated")
        elif st.st_size < self._offset:
            logger.info("%s was truncated, restarting from offset 0", self.path)
            self._file.seek(0)
            self._offset = 0
            self._partial = b""

    def _wait_for_replacement(self) -> None:
        deadline = time.monotonic() + self.reopen_timeout
        while not self._stopping.is_set():
            if os.path.exists(self.path):
                self._reopen("recreated")
                return
            if time.monotonic() >= deadline:
                raise FollowerError(
                    f"{self.path} was removed and not recreated within {self.reopen_timeout}s"
                )
            self._stopping.wait(self.poll_interval)

    def _reopen(self, why: str) -> None:
        # finish whatever was written to the old file before switching
        self._read_available()
        try:
            f = open(self.path, "rb")
        except FileNotFoundError:
            # replaced again between stat and open; next poll retries
            return
        except OSError as e:
            raise FollowerError(f"cannot reopen {self.path}: {e.strerror or e}") from e
        self._attach(f)
        logger.info("%s was %s, following new file", self.path, why)

    def _put(self, item: object) -> None:
        while True:
            try:
                self.q.put(item, timeout=self.poll_interval)
                return
            except queue.Full:
                if self._stopping.is_set() and item is not self.CLOSED:
                    return

    def _fail(self, err: FollowerError) -> None:
        with self._error_lock:
            if self._error is not None:
                return
            self._error = err
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        logger.error("Follower stopped: %s", err)
        for cb in callbacks:
            cb(err)
