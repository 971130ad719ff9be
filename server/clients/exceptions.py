"""Evals API client exceptions."""


class APIError(Exception):
    """Base exception for every Evals API failure."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthenticationError(APIError):
    """Invalid or missing API key."""

    def __init__(self, message: str = "Invalid API key"):
        super().__init__(message, status_code=401)


class NotFoundError(APIError):
    """Remote eval, run or file not found."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, status_code=404)


class RateLimitError(APIError):
    """Rate limit exceeded. Callers should back off; the client never retries."""

    def __init__(self, retry_after: int | None = None):
        msg = "Rate limit exceeded. Please try again later."
        if retry_after:
            msg += f" Retry after {retry_after}s"
        super().__init__(msg, status_code=429)
        self.retry_after = retry_after
