from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    pass


class AuthExpiredError(BridgeError):
    """Destination credentials are no longer valid; no further call can succeed."""

    def __init__(self, message: str = "Destination calendar authentication expired.") -> None:
        super().__init__(message)
        self.report: Any = None


class TransientApiError(BridgeError):
    pass


class DataError(BridgeError):
    pass


class ConfigurationError(BridgeError):
    pass
