from __future__ import annotations


class RefreshFailure(RuntimeError):
    def __init__(self, message: str = "Session refresh failed.", *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthExpired(RuntimeError):
    """Raised to a caller whose deferred request will never be replayed."""

    def __init__(self, reason: str = "Please log in again to continue.") -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = 401
