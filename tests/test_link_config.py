"""
Tests for LinkConfig validation and parsing
"""

import pytest

from rclink.services.link_config import LinkConfig, ScalingMode, TransportMode


class TestDefaults:
    """Defaults per transport mode"""

    def test_udp_defaults(self):
        config = LinkConfig()
        assert config.mode is TransportMode.UDP
        assert config.host == "127.0.0.1"
        assert config.port == 14550
        assert (config.target_system, config.target_component) == (1, 1)
        assert (config.pwm_min_us, config.pwm_max_us) == (1000, 2000)
        assert config.override_rate_hz == 20
        assert config.override_period_s == pytest.approx(0.05)
        assert config.channel_map == {"steering": 0, "throttle": 2}

    @pytest.mark.parametrize("mode", ["tcp_server", "tcp_client", "tcp-server", "TCP-CLIENT"])
    def test_tcp_default_port(self, mode):
        config = LinkConfig(mode=mode)
        assert config.port == 5760
        assert config.mode in (TransportMode.TCP_SERVER, TransportMode.TCP_CLIENT)

    def test_explicit_port_kept(self):
        assert LinkConfig(mode="tcp_server", port=5762).port == 5762


class TestValidation:
    """Invalid combinations are rejected at construction"""

    @pytest.mark.parametrize("pwm_min,pwm_max", [(2000, 1000), (1500, 1500)])
    def test_pwm_range_must_be_increasing(self, pwm_min, pwm_max):
        with pytest.raises(ValueError, match="pwm_min_us"):
            LinkConfig(pwm_min_us=pwm_min, pwm_max_us=pwm_max)

    def test_rate_must_be_positive(self):
        with pytest.raises(ValueError):
            LinkConfig(override_rate_hz=0)

    def test_unknown_mode(self):
        with pytest.raises(ValueError, match="transport mode"):
            LinkConfig(mode="serial")

    def test_unknown_scaling(self):
        with pytest.raises(ValueError, match="scaling"):
            LinkConfig(scaling="exponential")

    def test_slot_out_of_range(self):
        with pytest.raises(ValueError, match="slot"):
            LinkConfig(channel_map={"throttle": 8})

    def test_port_zero_only_for_server(self):
        """An ephemeral port is fine to listen on but not to send to"""
        assert LinkConfig(mode="tcp_server", port=0).port == 0
        with pytest.raises(ValueError):
            LinkConfig(mode="udp", port=0)
        with pytest.raises(ValueError):
            LinkConfig(mode="tcp_client", port=0)

    def test_target_ids_fit_in_a_byte(self):
        with pytest.raises(ValueError):
            LinkConfig(target_system=256)

    def test_config_is_frozen(self):
        config = LinkConfig()
        with pytest.raises(AttributeError):
            config.port = 1234  # type: ignore[misc]


class TestFromDict:
    """Building a config from preferences or picar-cfg.json"""

    def test_native_keys(self):
        config = LinkConfig.from_dict(
            {"mode": "tcp_client", "host": "10.0.0.2", "port": 5770, "scaling": "offset", "override_rate_hz": 50}
        )
        assert config.mode is TransportMode.TCP_CLIENT
        assert config.host == "10.0.0.2"
        assert config.port == 5770
        assert config.scaling is ScalingMode.OFFSET
        assert config.override_rate_hz == 50

    def test_legacy_keys(self):
        config = LinkConfig.from_dict(
            {
                "mavproxy_host": "127.0.0.2",
                "mavproxy_port": 5761,
                "mavproxy_target_system": 4,
                "mavproxy_target_component": 5,
                "mavproxy_rate_hz": 30,
                "pwm_min_us": 1050,
                "pwm_max_us": 1950,
            }
        )
        assert config.host == "127.0.0.2"
        assert config.port == 5761
        assert (config.target_system, config.target_component) == (4, 5)
        assert config.override_rate_hz == 30
        assert (config.pwm_min_us, config.pwm_max_us) == (1050, 1950)

    def test_native_key_wins_over_legacy(self):
        config = LinkConfig.from_dict({"mavproxy_port": 5761, "port": 5999, "mode": "tcp_server"})
        assert config.port == 5999

    def test_unknown_and_null_keys_ignored(self):
        config = LinkConfig.from_dict({"video_device": "/dev/video0", "port": None})
        assert config.port == 14550

    def test_to_dict_round_trip(self):
        config = LinkConfig(mode="tcp_server", port=5800, scaling="offset", channel_map={"throttle": 1})
        assert LinkConfig.from_dict(config.to_dict()) == config
