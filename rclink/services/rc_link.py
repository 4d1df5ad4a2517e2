"""
RC Override Link - steering/throttle to MAVProxy as RC_CHANNELS_OVERRIDE

Public entry point of the link: build it from a LinkConfig, feed it control
values with ``set_channel`` and call ``start`` / ``stop``.
"""

import logging
from typing import Any, Dict, Optional

from .channel_mixer import ChannelMixer
from .link_config import LinkConfig
from .link_session import LinkSession, LinkState, create_link
from .scheduler import TransmitScheduler

logger = logging.getLogger(__name__)


class RcOverrideLink:
    """
    One configured link: channel state, session and transmit loop.

    The transmit loop runs only while the session is UP; the session's state
    listener starts and stops it.
    """

    def __init__(self, config: LinkConfig, session: Optional[LinkSession] = None):
        self.config = config
        self.mixer = ChannelMixer.from_config(config)
        self.session = session if session is not None else create_link(config)
        self.scheduler = TransmitScheduler(self.session, self.mixer, config)
        self.session.add_state_listener(self._on_state_change)
        self._started = False

        logger.info(
            f"RC override link: {config.mode.value} {config.host}:{config.port}, "
            f"target sys={config.target_system} comp={config.target_component}, "
            f"{config.override_rate_hz:g}Hz, PWM {config.pwm_min_us}-{config.pwm_max_us}us "
            f"({config.scaling.value} scaling)"
        )

    @property
    def state(self) -> LinkState:
        return self.session.state

    @property
    def is_running(self) -> bool:
        return self._started

    def set_channel(self, name: str, value: float):
        """Set a named control (e.g. 'throttle', 'steering'). Unknown names are ignored."""
        self.mixer.set_channel(name, value)

    def center(self):
        """Return every mapped control to neutral."""
        self.mixer.center()

    def send_now(self) -> bool:
        """Send the current channels immediately, outside the periodic loop."""
        if not self.session.is_up:
            return False
        return self.session.send_rc_override(self.mixer.snapshot())

    def start(self):
        """
        Open the transport. The transmit loop follows the session state.

        Raises:
            LinkStartError: the TCP server could not bind its port.
        """
        if self._started:
            return
        self.session.start()
        self._started = True

    def stop(self):
        """Stop the transmit loop and release the transport. Safe to call twice."""
        self._started = False
        self.scheduler.stop()
        self.session.stop()

    def _on_state_change(self, old_state: LinkState, new_state: LinkState):
        if new_state is LinkState.UP:
            logger.info("Link up, starting transmit loop")
            self.scheduler.start()
        elif old_state is LinkState.UP:
            logger.info(f"Link {new_state.value}, transmit loop paused")
            self.scheduler.stop()

    def get_status(self) -> Dict[str, Any]:
        status = self.session.get_status()
        status.update(
            {
                "running": self._started,
                "transmitting": self.scheduler.is_running,
                "channels": list(self.mixer.snapshot()),
                "throttle_us": self.mixer.value_of("throttle"),
                "steering_us": self.mixer.value_of("steering"),
            }
        )
        return status
