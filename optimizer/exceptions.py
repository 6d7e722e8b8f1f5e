class ParameterValidationError(ValueError):
    """Raised when an explicitly submitted candidate or space violates constraints."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class TransientEvaluationError(Exception):
    """Raised when a remote scoring call fails in a way worth retrying."""


class SearchCancelledError(Exception):
    """Raised when a search task is cancelled by its token."""


class FatalConfigurationError(Exception):
    """Raised for unusable configuration: unknown method/objective, malformed import."""
