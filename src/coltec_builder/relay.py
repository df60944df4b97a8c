"""Background relays that copy container output into a log sink.

A relay never gates the build: read failures are logged and, where the source
can be re-attached, retried after a fixed backoff. During cleanup the owner
signals its relays, removes the container (which closes their streams) and
then joins them, so none outlives its container.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable, Optional

from .errors import BuilderError
from .logs import LogSink

logger = logging.getLogger(__name__)


class LogRelay:
    def __init__(
        self,
        name: str,
        open_stream: Callable[[], Iterable[str]],
        sink: Optional[LogSink],
        backoff: float = 0.1,
        reattach: bool = True,
    ) -> None:
        self.name = name
        self.open_stream = open_stream
        self.sink = sink
        self.backoff = backoff
        self.reattach = reattach
        self.errors = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "LogRelay":
        if self._thread is not None:
            raise RuntimeError(f"relay {self.name} already started")
        self._thread = threading.Thread(
            target=self._run, name=f"relay-{self.name}", daemon=True
        )
        self._thread.start()
        return self

    def _run(self) -> None:
        # Lines already in flight are drained after signal(); only re-attaching stops.
        while True:
            try:
                for line in self.open_stream():
                    if self.sink is not None:
                        self.sink.write(line)
                logger.debug(f"Relay {self.name}: stream closed")
                return
            except (BuilderError, OSError) as exc:
                self.errors += 1
                logger.error(f"Relay {self.name}: error copying output: {exc}")
                if not self.reattach or self._stop.wait(self.backoff):
                    return

    def signal(self) -> None:
        """Ask the relay to finish without waiting for it.

        A relay blocked on a follow stream only wakes once the source closes,
        so owners signal first, remove the container, then join().
        """
        self._stop.set()

    def join(self, timeout: float = 5.0) -> None:
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(f"Relay {self.name} still blocked on its stream after {timeout}s")

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the relay to finish and wait up to timeout for it."""
        self.signal()
        self.join(timeout)
