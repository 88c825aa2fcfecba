"""Error types raised by the decision engine."""


class RetentionError(Exception):
    """Base class for decision engine errors."""


class NotFound(RetentionError, LookupError):
    """Unknown user, flow or subscription."""


class ValidationFailed(RetentionError):
    """Flow failed structural validation."""

    def __init__(self, errors: list[str], warnings: list[str] | None = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__(f"Flow validation failed: {', '.join(self.errors)}")


class NoActiveFlow(RetentionError):
    """No flow matches the language/active filter."""


class InvalidInput(RetentionError, ValueError):
    """Out-of-range or structurally invalid input."""
