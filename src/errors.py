from __future__ import annotations

from typing import Dict, List, Optional


class MarketplaceError(Exception):
    """Base class for errors surfaced to callers of the profile operations."""

    status_code = 500
    error_type = "marketplace_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def as_payload(self) -> Dict[str, object]:
        return {"error": self.error_type, "message": self.message}


class ValidationError(MarketplaceError):
    status_code = 422
    error_type = "validation_error"

    def __init__(self, errors: Dict[str, List[str]], message: str = "Validation failed") -> None:
        super().__init__(message)
        self.errors = {field: list(messages) for field, messages in errors.items()}

    def as_payload(self) -> Dict[str, object]:
        payload = super().as_payload()
        payload["errors"] = self.errors
        return payload


class AuthenticationRequiredError(MarketplaceError):
    status_code = 401
    error_type = "authentication_required"

    def __init__(self, message: str = "User not authenticated") -> None:
        super().__init__(message)


class PermissionDeniedError(MarketplaceError):
    status_code = 403
    error_type = "permission_denied"

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class NotFoundError(MarketplaceError):
    status_code = 404
    error_type = "not_found"


class StateError(MarketplaceError):
    """The operation is not valid for the entity's current lifecycle state."""

    status_code = 409
    error_type = "invalid_state"


class ProfileExistsError(StateError):
    error_type = "profile_exists"

    def __init__(self, profile_id: int, message: Optional[str] = None) -> None:
        super().__init__(message or f"User already has profile {profile_id}; edit it instead.")
        self.profile_id = profile_id

    def as_payload(self) -> Dict[str, object]:
        payload = super().as_payload()
        payload["profile_id"] = self.profile_id
        payload["edit_url"] = f"/api/profiles/{self.profile_id}"
        return payload


class StorageError(MarketplaceError):
    status_code = 502
    error_type = "storage_error"
