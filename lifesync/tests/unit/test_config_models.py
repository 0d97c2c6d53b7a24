"""
Tests for configuration models and the config accessor.
"""

import pytest
from pydantic import ValidationError

from lifesync.config import get_config, reset_config
from lifesync.config.models import (
    AppConfig,
    BroadcastConfig,
    ConnectionConfig,
    LoggingConfig,
    PresenceConfig,
    RateLimitConfig,
    RedisConfig,
    ServerConfig,
    SubscriptionConfig,
)


class TestDefaults:
    """Documented defaults."""

    def test_connection_defaults(self):
        """Test heartbeat, backoff and grace defaults."""
        config = ConnectionConfig()

        assert config.heartbeat_interval == 30.0
        assert config.reconnect_base_delay == 1.0
        assert config.reconnect_max_delay == 30.0
        assert config.max_reconnect_attempts == 5
        assert config.offline_grace_period == 30.0

    def test_presence_and_subscription_defaults(self):
        """Test presence and subscription defaults."""
        presence = PresenceConfig()
        subscription = SubscriptionConfig()

        assert presence.activity_threshold == 30.0
        assert presence.presence_update_interval == 60.0
        assert presence.check_interval == 10.0
        assert subscription.max_retries == 3
        assert subscription.auto_subscribe is True

    def test_bulk_cap_default(self):
        """Test that bulk payloads are capped at 100 items by default."""
        assert BroadcastConfig().max_bulk_items == 100


class TestValidation:
    """Validators."""

    def test_port_range(self):
        """Test that an out-of-range port is rejected."""
        with pytest.raises(ValidationError):
            ServerConfig(port=70000)

    def test_backoff_cap_below_base(self):
        """Test that the backoff cap cannot be below the base delay."""
        with pytest.raises(ValidationError):
            ConnectionConfig(reconnect_base_delay=5.0, reconnect_max_delay=1.0)

    @pytest.mark.parametrize("field", ["heartbeat_interval", "max_reconnect_attempts", "send_queue_size"])
    def test_non_positive_connection_values(self, field):
        """Test that intervals and counts must be positive."""
        with pytest.raises(ValidationError):
            ConnectionConfig(**{field: 0})

    def test_zero_grace_period_allowed(self):
        """Test that a zero grace period is valid and a negative one is not."""
        assert ConnectionConfig(offline_grace_period=0).offline_grace_period == 0
        with pytest.raises(ValidationError):
            ConnectionConfig(offline_grace_period=-1)

    def test_stale_threshold_must_exceed_update_interval(self):
        """Test that remote records must outlive one heartbeat interval."""
        with pytest.raises(ValidationError):
            PresenceConfig(stale_threshold=30.0, presence_update_interval=60.0)

    def test_negative_retries(self):
        """Test that the retry budget cannot be negative."""
        with pytest.raises(ValidationError):
            SubscriptionConfig(max_retries=-1)

    def test_redis_url_scheme(self):
        """Test that only redis URLs are accepted."""
        with pytest.raises(ValidationError):
            RedisConfig(url="http://localhost:6379")

    def test_log_level_normalized(self):
        """Test that the log level is upper-cased and validated."""
        assert LoggingConfig(level="debug").level == "DEBUG"
        with pytest.raises(ValidationError):
            LoggingConfig(level="chatty")

    def test_unknown_key_generator(self):
        """Test that an unknown limiter key generator is rejected."""
        with pytest.raises(ValidationError):
            RateLimitConfig(events_key_generator="cookie")

    def test_empty_block_ladder(self):
        """Test that the block escalation ladder cannot be empty."""
        with pytest.raises(ValidationError):
            RateLimitConfig(block_durations=[])


class TestRateLimitClasses:
    """Traffic class settings."""

    def test_auth_class_fails_closed(self):
        """Test that only the handshake class fails closed by default."""
        config = RateLimitConfig()

        assert config.class_settings("auth")["fail_closed"] is True
        assert config.class_settings("events")["fail_closed"] is False

    def test_class_settings_shape(self):
        """Test that class settings carry window, budget and key generator."""
        settings = RateLimitConfig(expensive_max_requests=3).class_settings("expensive")

        assert settings == {
            "window_ms": 60_000,
            "max_requests": 3,
            "key_generator": "user_or_ip",
            "fail_closed": False,
        }


class TestEnvironment:
    """Environment loading and the accessor."""

    def test_env_prefix(self, monkeypatch):
        """Test that each group reads its own prefix."""
        monkeypatch.setenv("PRESENCE_ACTIVITY_THRESHOLD", "45")
        monkeypatch.setenv("CONNECTION_MAX_RECONNECT_ATTEMPTS", "7")

        config = AppConfig()

        assert config.presence.activity_threshold == 45.0
        assert config.connection.max_reconnect_attempts == 7

    def test_get_config_is_fresh_in_tests(self, monkeypatch):
        """Test that get_config reflects environment changes under pytest."""
        first = get_config()
        monkeypatch.setenv("BROADCAST_MAX_BULK_ITEMS", "25")

        second = get_config()

        assert first is not second
        assert second.broadcast.max_bulk_items == 25

    def test_reset_config(self):
        """Test that reset_config can be called repeatedly."""
        reset_config()
        reset_config()
        assert isinstance(get_config(), AppConfig)
