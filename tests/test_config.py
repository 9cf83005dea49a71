"""
Unit tests for configuration presets and validation.
"""

import pytest
from pydantic import ValidationError

from localization_ab.config import AllocationTestConfig, LoadTestConfig, ServerSettings


def test_server_defaults():
    s = ServerSettings()
    assert (s.read_timeout, s.write_timeout, s.idle_timeout) == (5.0, 10.0, 30.0)
    assert s.max_connections == 10_000
    assert s.max_body_size == 1024 * 1024
    assert s.port == 3000


@pytest.mark.parametrize("field", ["read_timeout", "write_timeout", "idle_timeout", "max_connections", "max_body_size"])
def test_server_bounds_must_be_positive(field):
    with pytest.raises(ValidationError):
        ServerSettings(**{field: 0})


def test_saturation_preset():
    c = LoadTestConfig.for_mode("saturation")
    assert c.hog_test
    assert c.slow_clients == 50
    assert c.slow_download_speed == 500 * 1024


def test_normal_preset_has_no_slow_clients():
    c = LoadTestConfig.for_mode("normal")
    assert c.slow_clients == 0
    assert not c.hog_test


def test_explicit_values_beat_presets():
    c = LoadTestConfig.for_mode("saturation", slow_clients=3, fast_clients=None, duration=5.0)
    assert c.slow_clients == 3
    assert c.fast_clients == 10
    assert c.duration == 5.0


def test_allocation_defaults():
    c = AllocationTestConfig()
    assert (c.users, c.requests_per_user, c.concurrency) == (100, 5, 10)
