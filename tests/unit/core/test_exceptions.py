"""
Unit tests for core.exceptions module.

Tests:
- Hierarchy: every error derives from ObscurError
- Protocol errors group invalid events and crypto failures
- Timeouts are connectivity errors
"""

import pytest

from obscur.core.exceptions import (
    ConfigurationError,
    ConnectivityError,
    CryptoError,
    GroupPermissionError,
    InvalidEventError,
    ObscurError,
    ProtocolError,
    PublishingError,
    RelayTimeoutError,
    StorageError,
    ValidationError,
)


class TestHierarchy:
    """Exception inheritance."""

    @pytest.mark.parametrize(
        "exc",
        [
            ConfigurationError,
            ConnectivityError,
            RelayTimeoutError,
            ProtocolError,
            InvalidEventError,
            CryptoError,
            ValidationError,
            StorageError,
            PublishingError,
            GroupPermissionError,
        ],
    )
    def test_all_derive_from_base(self, exc):
        assert issubclass(exc, ObscurError)

    def test_protocol_subclasses(self):
        assert issubclass(InvalidEventError, ProtocolError)
        assert issubclass(CryptoError, ProtocolError)

    def test_timeout_is_connectivity(self):
        assert issubclass(RelayTimeoutError, ConnectivityError)

    def test_validation_is_not_protocol(self):
        assert not issubclass(ValidationError, ProtocolError)

    def test_catch_by_base(self):
        with pytest.raises(ObscurError, match="bad key"):
            raise CryptoError("bad key")
