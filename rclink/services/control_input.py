"""
Control Input Service - operator samples to link channels

Receives {throttle, steering} samples from the web client, optionally ramps
the throttle, forwards both to the RC override link and re-centres the
controls when samples stop arriving (emergency stop).
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

from .preferences import ControlConfig
from .rc_link import RcOverrideLink

logger = logging.getLogger(__name__)


class ControlInputService:
    """
    Applies operator samples to an ``RcOverrideLink``.

    The watchdog is re-armed by every sample. When it fires both controls are
    set to ``neutral_input`` and it stays quiet until the next sample arrives.
    """

    def __init__(self, link: RcOverrideLink, config: Optional[ControlConfig] = None):
        self.link = link
        self.config = config or ControlConfig()

        self.neutral_input = (
            self.config.neutral_input if self.config.neutral_input is not None else link.mixer.neutral_input
        )

        # Last values received from the operator (reported by /status)
        self.throttle = self.neutral_input
        self.steering = self.neutral_input
        self._smoothed_throttle = self.neutral_input

        self.samples = 0
        self.last_sample_time: Optional[float] = None
        self.emergency_stops = 0

        self._lock = threading.Lock()
        self._watchdog: Optional[threading.Timer] = None
        self._watchdog_generation = 0

    def apply(self, throttle: float, steering: float) -> Dict[str, Any]:
        """Apply one operator sample."""
        with self._lock:
            self.throttle = throttle
            self.steering = steering
            self._smoothed_throttle = self._ramp(self._smoothed_throttle, throttle)
            smoothed = self._smoothed_throttle
            self.samples += 1
            self.last_sample_time = time.time()

        self.link.set_channel("throttle", smoothed)
        self.link.set_channel("steering", steering)
        self._arm_watchdog()

        return {"throttle": smoothed, "steering": steering}

    def _ramp(self, current: float, target: float) -> float:
        up = self.config.throttle_ramp_up
        down = self.config.throttle_ramp_down
        if up and target > current:
            return min(current + up, target)
        if down and target < current:
            return max(current - down, target)
        return target

    def _arm_watchdog(self):
        timeout = self.config.watchdog_timeout_s
        if not timeout:
            return

        with self._lock:
            self._watchdog_generation += 1
            timer = threading.Timer(timeout, self._on_watchdog, args=(self._watchdog_generation,))
            timer.daemon = True
            previous = self._watchdog
            self._watchdog = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _on_watchdog(self, generation: int):
        with self._lock:
            if generation != self._watchdog_generation:
                # Re-armed by a newer sample after this timer had already fired
                return
            self._watchdog = None
            self._smoothed_throttle = self.neutral_input
            self.emergency_stops += 1
        self.center()
        logger.warning(f"### EMERGENCY STOP: no control input for {self.config.watchdog_timeout_s:g}s")

    def center(self):
        """Put throttle and steering back to neutral."""
        self.link.set_channel("throttle", self.neutral_input)
        self.link.set_channel("steering", self.neutral_input)

    def shutdown(self):
        """Cancel the watchdog and leave the vehicle at neutral."""
        with self._lock:
            self._watchdog_generation += 1
            watchdog = self._watchdog
            self._watchdog = None
        if watchdog is not None:
            watchdog.cancel()
        self.center()

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "status": "OK",
                "throttle": self.throttle,
                "steering": self.steering,
            }
