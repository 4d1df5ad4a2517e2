"""
Reconnect Supervisor - keeps an outbound connection alive for the process lifetime
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ReconnectSupervisor:
    """
    Repeatedly runs a connection attempt, waiting a fixed delay between tries.

    ``attempt`` receives the stop event of the current run. It is expected to
    connect, serve the connection until it drops or the event is set, and then
    return. Connection failures are raised as ``OSError``. There is no backoff
    growth and no retry limit.

    Every ``start`` gets its own stop event, so a run that is still blocked in
    a connect when ``stop`` gives up waiting never continues into the next run.

    Args:
        name: Used for the thread name and log messages.
        attempt: One connection lifetime.
        retry_delay_s: Pause after a failure or a dropped connection.
        wait: Replaces the default interruptible sleep (tests drive the retry
            boundary with it). Receives the delay in seconds.
    """

    def __init__(
        self,
        name: str,
        attempt: Callable[[threading.Event], None],
        retry_delay_s: float = 3.0,
        wait: Optional[Callable[[float], object]] = None,
    ):
        self.name = name
        self.attempt = attempt
        self.retry_delay_s = retry_delay_s
        self._wait = wait

        self._lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self.attempts = 0

    def start(self):
        with self._lock:
            if self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set():
                return
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                daemon=True,
                name=f"Reconnect-{self.name}",
            )
            self._thread.start()

    def stop(self, timeout: float = 1.0):
        with self._lock:
            thread, stop_event = self._thread, self._stop_event
            self._thread = None
        if stop_event is not None:
            stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _sleep(self, delay: float, stop_event: threading.Event):
        if self._wait is not None:
            self._wait(delay)
        else:
            stop_event.wait(delay)

    def _run(self, stop_event: threading.Event):
        while not stop_event.is_set():
            self.attempts += 1
            try:
                self.attempt(stop_event)
            except OSError as e:
                if not stop_event.is_set():
                    logger.warning(f"{self.name}: connection failed: {e}")
            except Exception as e:
                logger.error(f"{self.name}: unexpected error in connection attempt: {e}")

            if stop_event.is_set():
                break

            logger.info(f"{self.name}: retrying in {self.retry_delay_s:g}s")
            self._sleep(self.retry_delay_s, stop_event)
