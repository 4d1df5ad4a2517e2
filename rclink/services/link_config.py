"""
Link configuration - transport selection, addressing and PWM range
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class TransportMode(Enum):
    UDP = "udp"
    TCP_SERVER = "tcp_server"
    TCP_CLIENT = "tcp_client"

    @classmethod
    def parse(cls, value) -> "TransportMode":
        """Accept enum members, 'tcp_server' and the dashed 'tcp-server' spelling."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower().replace("-", "_"))
        except ValueError:
            raise ValueError(f"Unknown transport mode: {value!r}") from None


class ScalingMode(Enum):
    """How a normalized control input maps onto the PWM range."""

    SYMMETRIC = "symmetric"  # input in [-1, 1], 0 is neutral
    OFFSET = "offset"  # input centred at 0.14 with a half-span of 0.035

    @classmethod
    def parse(cls, value) -> "ScalingMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown scaling mode: {value!r}") from None


DEFAULT_HOST = "127.0.0.1"
DEFAULT_UDP_PORT = 14550
DEFAULT_TCP_PORT = 5760

DEFAULT_CHANNEL_MAP = {
    "steering": 0,  # RC channel 1
    "throttle": 2,  # RC channel 3
}

# Flat keys of the legacy picar-cfg.json
LEGACY_KEYS = {
    "mavproxy_mode": "mode",
    "mavproxy_host": "host",
    "mavproxy_port": "port",
    "mavproxy_target_system": "target_system",
    "mavproxy_target_component": "target_component",
    "mavproxy_rate_hz": "override_rate_hz",
    "pwm_scaling": "scaling",
}


@dataclass(frozen=True)
class LinkConfig:
    """Configuration for one RC override link."""

    mode: TransportMode = TransportMode.UDP
    host: str = DEFAULT_HOST
    port: Optional[int] = None
    target_system: int = 1
    target_component: int = 1
    pwm_min_us: int = 1000
    pwm_max_us: int = 2000
    override_rate_hz: float = 20.0
    scaling: ScalingMode = ScalingMode.SYMMETRIC
    channel_map: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_CHANNEL_MAP))
    heartbeat_interval_s: float = 1.0
    retry_delay_s: float = 3.0
    log_interval_s: float = 5.0
    max_pending_bytes: int = 4096

    def __post_init__(self):
        # Frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, "mode", TransportMode.parse(self.mode))
        object.__setattr__(self, "scaling", ScalingMode.parse(self.scaling))
        if self.port is None:
            default_port = DEFAULT_UDP_PORT if self.mode is TransportMode.UDP else DEFAULT_TCP_PORT
            object.__setattr__(self, "port", default_port)
        object.__setattr__(self, "channel_map", dict(self.channel_map))
        self._validate()

    def _validate(self):
        if self.pwm_min_us >= self.pwm_max_us:
            raise ValueError(f"pwm_min_us ({self.pwm_min_us}) must be below pwm_max_us ({self.pwm_max_us})")
        if not 0 < self.pwm_max_us <= 0xFFFF or self.pwm_min_us < 0:
            raise ValueError("PWM range must fit in an unsigned 16-bit channel value")
        if self.override_rate_hz <= 0:
            raise ValueError(f"override_rate_hz must be positive, got {self.override_rate_hz}")
        if self.heartbeat_interval_s <= 0:
            raise ValueError(f"heartbeat_interval_s must be positive, got {self.heartbeat_interval_s}")
        if self.retry_delay_s < 0:
            raise ValueError(f"retry_delay_s cannot be negative, got {self.retry_delay_s}")
        # Port 0 only makes sense when listening (ephemeral port)
        lowest_port = 0 if self.mode is TransportMode.TCP_SERVER else 1
        if not lowest_port <= self.port <= 65535:
            raise ValueError(f"Port must be between {lowest_port} and 65535, got {self.port}")
        for name, slot in self.channel_map.items():
            if not 0 <= slot <= 7:
                raise ValueError(f"Channel '{name}' maps to slot {slot}, expected 0-7")
        for label, value in (("target_system", self.target_system), ("target_component", self.target_component)):
            if not 0 <= value <= 255:
                raise ValueError(f"{label} must fit in a byte, got {value}")

    @property
    def override_period_s(self) -> float:
        return 1.0 / self.override_rate_hz

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LinkConfig":
        """
        Build a config from a preferences section or a legacy picar-cfg.json.

        Native field names win over their legacy ``mavproxy_*`` aliases.
        Unknown keys are ignored.
        """
        values: Dict[str, Any] = {}
        for legacy, native in LEGACY_KEYS.items():
            if data.get(legacy) is not None:
                values[native] = data[legacy]

        for name in cls.__dataclass_fields__:
            if data.get(name) is not None:
                values[name] = data[name]

        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "host": self.host,
            "port": self.port,
            "target_system": self.target_system,
            "target_component": self.target_component,
            "pwm_min_us": self.pwm_min_us,
            "pwm_max_us": self.pwm_max_us,
            "override_rate_hz": self.override_rate_hz,
            "scaling": self.scaling.value,
            "channel_map": dict(self.channel_map),
            "heartbeat_interval_s": self.heartbeat_interval_s,
            "retry_delay_s": self.retry_delay_s,
            "log_interval_s": self.log_interval_s,
            "max_pending_bytes": self.max_pending_bytes,
        }
