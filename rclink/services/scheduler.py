"""
Transmit Scheduler - fixed-rate HEARTBEAT and RC override emitters
"""

import logging
import threading
import time
from typing import Callable, Optional, TYPE_CHECKING

from .link_config import LinkConfig

if TYPE_CHECKING:
    from .channel_mixer import ChannelMixer
    from .link_session import LinkSession

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs a callback at a fixed period on its own daemon thread.

    ``start`` on a running task restarts the period from zero; ``stop`` on a
    stopped task does nothing. Both may be called from inside the callback.
    Deadlines are scheduled from the previous deadline, not from when the
    callback returned, so the rate does not drift with callback duration.
    """

    def __init__(self, name: str, period_s: float, callback: Callable[[], None], fire_immediately: bool = False):
        self.name = name
        self.period_s = period_s
        self.callback = callback
        self.fire_immediately = fire_immediately

        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self):
        with self._lock:
            self._halt_locked()
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                daemon=True,
                name=f"Periodic-{self.name}",
            )
            self._stop_event = stop_event
            self._thread = thread
            thread.start()

    def stop(self):
        with self._lock:
            self._halt_locked()

    def _halt_locked(self):
        if self._thread is None:
            return
        self._stop_event.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=1)
        self._thread = None
        self._stop_event = None

    def _run(self, stop_event: threading.Event):
        next_deadline = time.monotonic()
        if not self.fire_immediately:
            next_deadline += self.period_s

        while True:
            delay = next_deadline - time.monotonic()
            if delay > 0 and stop_event.wait(delay):
                break
            if stop_event.is_set():
                break

            try:
                self.callback()
            except Exception as e:
                logger.error(f"Periodic task {self.name} failed: {e}")
            self.ticks += 1

            next_deadline += self.period_s
            now = time.monotonic()
            if next_deadline < now - self.period_s:
                # Fell more than a period behind (suspended process): resync
                next_deadline = now


class TransmitScheduler:
    """
    Drives the two emitters of one link session.

    The heartbeat goes out immediately on start and then every
    ``heartbeat_interval_s``; RC overrides go out every ``1 / override_rate_hz``.
    Both use the session's shared sequence counter.
    """

    def __init__(self, session: "LinkSession", mixer: "ChannelMixer", config: LinkConfig):
        self.session = session
        self.mixer = mixer
        self.config = config

        self.heartbeat_task = PeriodicTask(
            "heartbeat",
            config.heartbeat_interval_s,
            self._send_heartbeat,
            fire_immediately=True,
        )
        self.override_task = PeriodicTask(
            "rc-override",
            config.override_period_s,
            self._send_override,
        )

        self._override_ticks = 0
        self._log_every = max(1, int(round(config.log_interval_s * config.override_rate_hz)))

    @property
    def is_running(self) -> bool:
        return self.heartbeat_task.is_running or self.override_task.is_running

    def start(self):
        self._override_ticks = 0
        self.heartbeat_task.start()
        self.override_task.start()
        logger.info(
            f"Transmit loop started ({self.config.override_rate_hz:g} Hz override, "
            f"{self.config.heartbeat_interval_s:g}s heartbeat)"
        )

    def stop(self):
        was_running = self.is_running
        self.heartbeat_task.stop()
        self.override_task.stop()
        if was_running:
            logger.info("Transmit loop stopped")

    def _send_heartbeat(self):
        self.session.send_heartbeat()

    def _send_override(self):
        channels = self.mixer.snapshot()
        self.session.send_rc_override(channels)

        self._override_ticks += 1
        if self._override_ticks % self._log_every == 1 or self._log_every == 1:
            logger.info(
                f"RC override: throttle={self.mixer.value_of('throttle')} "
                f"steering={self.mixer.value_of('steering')} link={self.session.state.value}"
            )
