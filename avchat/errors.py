"""Exception types shared by the credits service."""

from typing import Any, Dict


class PreferenceStoreError(RuntimeError):
    """Raised when the user preferences store cannot complete a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UserNotFoundError(PreferenceStoreError):
    """Raised when the requested user does not exist in the store."""

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found", status_code=404)
        self.user_id = user_id


class SweepAlreadyRunningError(RuntimeError):
    """Raised when a bulk sweep is requested while another one is active."""

    def __init__(self, progress: Dict[str, Any]):
        super().__init__("Another bulk operation is currently running")
        self.progress = progress


class WebhookSignatureError(ValueError):
    """Raised when webhook headers or signature do not verify."""
