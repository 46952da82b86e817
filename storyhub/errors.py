"""Error taxonomy shared by the services and the HTTP layer.

Every error carries the HTTP status the API answers with, so route handlers
never translate them by hand.
"""


class StoryhubError(Exception):
    status_code = 500

    def __init__(self, detail: str = "Internal error"):
        super().__init__(detail)
        self.detail = detail


class ValidationError(StoryhubError):
    """A required field is missing or blank."""
    status_code = 422


class ConflictError(StoryhubError):
    """Email or username already taken."""
    status_code = 409


class DuplicateSubmissionError(ConflictError):
    """The same mutation is already in flight for this user."""


class AuthError(StoryhubError):
    """Bad credentials, no session, or unverified email on a gated action."""
    status_code = 401


class PermissionDeniedError(StoryhubError):
    status_code = 403


class NotFoundError(StoryhubError):
    status_code = 404


class NetworkError(StoryhubError):
    status_code = 503


class StoreTimeoutError(NetworkError):
    status_code = 504
