"""
Pytest configuration and shared fixtures for rclink tests

Provides an in-memory link session that records frames instead of touching
the network, plus small helpers for thread-driven assertions.
"""

import json
import threading
import time

import pytest

from rclink.services.link_config import LinkConfig, TransportMode
from rclink.services.link_session import LinkSession, LinkState


class RecordingSession(LinkSession):
    """
    Link session that keeps every frame in memory.

    ``simulate`` drives state transitions the way a transport would.
    """

    mode = TransportMode.UDP

    def __init__(self, config: LinkConfig = None):
        super().__init__(config or LinkConfig())
        self.frames = []
        self._frames_lock = threading.Lock()
        self.accepting = True

    def start(self):
        self._running = True
        self._set_state(LinkState.UP)

    def stop(self):
        self._running = False
        self._set_state(LinkState.DOWN)

    def send(self, data: bytes) -> bool:
        if not self._running or not self.accepting:
            return False
        with self._frames_lock:
            self.frames.append(bytes(data))
        self._record_sent(True)
        return True

    def simulate(self, state: LinkState):
        self._set_state(state)

    def sent_frames(self):
        with self._frames_lock:
            return list(self.frames)

    def message_ids(self):
        return [frame[5] for frame in self.sent_frames()]

    def sequences(self):
        return [frame[2] for frame in self.sent_frames()]


def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until():
    """
    Poll a predicate until it is true or the timeout expires

    Returns the helper ``wait_until(predicate, timeout=2.0) -> bool``
    """
    return _wait_until


@pytest.fixture
def link_config():
    """Default link configuration (UDP, 1000-2000us, 20Hz)"""
    return LinkConfig()


@pytest.fixture
def fast_config():
    """Config with short periods so scheduler tests finish quickly"""
    return LinkConfig(heartbeat_interval_s=0.05, override_rate_hz=100, log_interval_s=0.05)


@pytest.fixture
def recording_session(fast_config):
    """In-memory session; stopped after the test"""
    session = RecordingSession(fast_config)
    yield session
    session.stop()


@pytest.fixture
def make_session():
    """Factory for in-memory sessions with a custom config; all are stopped after the test"""
    sessions = []

    def factory(config: LinkConfig = None) -> RecordingSession:
        session = RecordingSession(config)
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.stop()


@pytest.fixture
def temp_preferences(tmp_path):
    """
    Create temporary preferences.json file for testing

    Args:
        tmp_path: pytest's temporary directory fixture

    Returns:
        Path to temporary preferences file
    """
    prefs_file = tmp_path / "preferences.json"
    prefs_data = {
        "link": {
            "mode": "tcp_server",
            "host": "127.0.0.1",
            "port": 5760,
            "override_rate_hz": 25,
            "scaling": "symmetric",
        },
        "control": {"watchdog_timeout_s": 1.5, "throttle_ramp_up": 0.01},
    }
    prefs_file.write_text(json.dumps(prefs_data, indent=2))
    return prefs_file


@pytest.fixture
def legacy_picar_config(tmp_path):
    """Legacy flat picar-cfg.json with mavproxy_* keys"""
    cfg_file = tmp_path / "picar-cfg.json"
    cfg_data = {
        "pwm_min_us": 1100,
        "pwm_max_us": 1900,
        "pwm_neutral": 0.14,
        "mavproxy_mode": "tcp-client",
        "mavproxy_host": "192.168.1.20",
        "mavproxy_port": 5762,
        "mavproxy_target_system": 2,
        "mavproxy_target_component": 3,
        "mavproxy_rate_hz": 10,
        "pwm_scaling": "offset",
    }
    cfg_file.write_text(json.dumps(cfg_data, indent=2))
    return cfg_file


# Pytest configuration hooks
def pytest_configure(config):
    """
    Pytest configuration hook

    Add custom markers and configuration
    """
    config.addinivalue_line("markers", "network: tests that open local sockets on 127.0.0.1")
    config.addinivalue_line("markers", "slow: slow running tests")
