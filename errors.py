"""Custom exceptions."""


class AppError(Exception):
    """Base class for every error the dashboard raises on purpose."""


class ConfigReadError(AppError):
    """Raised when the stock config file cannot be read."""


class ConfigParseError(AppError):
    """Raised when the stock config or settings file is not valid."""


class ApiError(AppError):
    """Raised when the market data provider fails (network, auth, not found)."""

    def __init__(self, symbol: str, message: str):
        super().__init__(f"{symbol}: {message}")
        self.symbol = symbol
        self.message = message


class IoError(AppError):
    """Raised when a write or a terminal mode switch fails."""
