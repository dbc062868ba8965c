class TokenError(RuntimeError):
    pass


class TokenNotFound(TokenError):
    pass


class TokenDeactivated(TokenError):
    pass


class ExhaustedRetries(TokenError):
    """Every candidate drawn during generation collided with an existing token."""

    def __init__(self, attempts: int):
        super().__init__(f"Failed to generate a unique token after {attempts} attempts")
        self.attempts = attempts


class StoreUnavailable(TokenError):
    """Transient backend failure; callers may retry."""


class SubjectNotFound(TokenError):
    pass


class InvalidTokenRequest(TokenError):
    pass
