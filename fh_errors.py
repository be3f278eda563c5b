class FortifiedError(Exception):
    """Base exception for the certificate workflow."""


class ConfigError(FortifiedError):
    """Raised when the run cannot start because input or credentials are missing."""


class AuthError(FortifiedError):
    """Raised when the session never reaches the authenticated state. Aborts the run."""


class NavigationError(FortifiedError):
    """Raised when a required control (wizard step, search input) cannot be found."""


class NoResultsError(FortifiedError):
    """Raised when the search surface loads but yields zero matching records."""


class TransportError(FortifiedError):
    """Raised when a navigation or wait exceeds its timeout inside a per-item step."""

    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step
        self.message = message
