"""
Channel Mixer - named controls to RC_CHANNELS_OVERRIDE slots
"""

import math
import threading
from typing import Dict, Optional, Tuple

from .link_config import DEFAULT_CHANNEL_MAP, LinkConfig, ScalingMode

SLOT_COUNT = 8

# Offset-normalized convention (joystick library emitting [0.105, 0.175])
OFFSET_CENTER = 0.14
OFFSET_HALF_SPAN = 0.035


class ChannelMixer:
    """
    Holds the eight override slots for one link.

    Writers call ``set_channel`` from any thread; the transmit loop reads an
    atomic ``snapshot``. A slot value of 0 means "no override" and is what
    unmapped slots always carry.
    """

    def __init__(
        self,
        pwm_min_us: int = 1000,
        pwm_max_us: int = 2000,
        scaling: ScalingMode = ScalingMode.SYMMETRIC,
        channel_map: Optional[Dict[str, int]] = None,
    ):
        self.pwm_min_us = pwm_min_us
        self.pwm_max_us = pwm_max_us
        self.scaling = ScalingMode.parse(scaling)
        self.channel_map: Dict[str, int] = dict(channel_map if channel_map is not None else DEFAULT_CHANNEL_MAP)

        self._midpoint = (pwm_min_us + pwm_max_us) / 2
        self._half_range = (pwm_max_us - pwm_min_us) / 2

        self._channels = [0] * SLOT_COUNT
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: LinkConfig) -> "ChannelMixer":
        return cls(
            pwm_min_us=config.pwm_min_us,
            pwm_max_us=config.pwm_max_us,
            scaling=config.scaling,
            channel_map=config.channel_map,
        )

    @property
    def neutral_us(self) -> int:
        return self._round(self._midpoint)

    @property
    def neutral_input(self) -> float:
        """Input value that maps onto the neutral pulse width."""
        return OFFSET_CENTER if self.scaling is ScalingMode.OFFSET else 0.0

    @staticmethod
    def _round(value: float) -> int:
        # Half-up, not banker's rounding
        return int(math.floor(value + 0.5))

    def scale(self, value: float) -> int:
        """Convert a normalized input into a clamped microsecond value."""
        value = float(value)
        if not math.isfinite(value):
            return self.neutral_us

        if self.scaling is ScalingMode.OFFSET:
            value = (value - OFFSET_CENTER) / OFFSET_HALF_SPAN

        us = self._midpoint + self._half_range * value
        us = max(self.pwm_min_us, min(self.pwm_max_us, us))
        return self._round(us)

    def set_channel(self, name: str, value: float) -> bool:
        """
        Store a control value. Unknown names are ignored.

        Returns:
            True if the name is mapped and the slot was written.
        """
        slot = self.channel_map.get(name)
        if slot is None:
            return False

        us = self.scale(value)
        with self._lock:
            self._channels[slot] = us
        return True

    def center(self):
        """Put every mapped control back to neutral."""
        neutral = self.neutral_us
        with self._lock:
            for slot in self.channel_map.values():
                self._channels[slot] = neutral

    def value_of(self, name: str) -> Optional[int]:
        slot = self.channel_map.get(name)
        if slot is None:
            return None
        with self._lock:
            return self._channels[slot]

    def snapshot(self) -> Tuple[int, ...]:
        with self._lock:
            return tuple(self._channels)
