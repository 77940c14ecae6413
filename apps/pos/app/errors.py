class ValidationError(ValueError):
    """Malformed input that the caller must fix; surfaced as HTTP 400."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
