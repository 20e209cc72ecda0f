"""
Unit tests for services.dm.configs module.

Tests:
- DmControllerConfig defaults
- Field bounds
- Inherited BaseServiceConfig fields
"""

import pytest
from pydantic import ValidationError

from obscur.nips.nip04 import KeyDerivation
from obscur.services.dm import DmControllerConfig


class TestDmControllerConfig:
    """DmControllerConfig."""

    def test_defaults(self):
        config = DmControllerConfig()
        assert config.subscription_limit == 50
        assert config.sync_limit == 100
        assert config.sync_timeout == 10.0
        assert config.sync_default_lookback == 86_400
        assert config.max_plaintext_chars == 4000
        assert config.queue_pacing == 0.1
        assert config.state_message_limit == 500
        assert config.key_derivation == KeyDerivation.STANDARD

    def test_inherits_service_fields(self):
        config = DmControllerConfig(interval=5.0)
        assert config.interval == 5.0
        assert config.metrics.enabled is False

    def test_key_derivation_from_string(self):
        config = DmControllerConfig(key_derivation=KeyDerivation.SHA256.value)
        assert config.key_derivation == KeyDerivation.SHA256

    @pytest.mark.parametrize(
        "field,value",
        [
            ("subscription_limit", 0),
            ("sync_limit", 5001),
            ("sync_timeout", 0.0),
            ("sync_default_lookback", 10),
            ("max_plaintext_chars", 0),
            ("queue_pacing", -1.0),
        ],
    )
    def test_bounds(self, field, value):
        with pytest.raises(ValidationError):
            DmControllerConfig(**{field: value})
