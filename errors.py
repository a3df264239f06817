"""
Error taxonomy for board operations.

Every error carries a short human-readable message and, where the client
needs to act on it (WIP conflicts), a structured ``details`` payload.
"""
from typing import Any, Dict, Optional


class BoardError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class NotFound(BoardError):
    """Project, task or member does not exist."""
    status_code = 404


class Forbidden(BoardError):
    """Authenticated, but not entitled to the resource or action."""
    status_code = 403


class ValidationFailed(BoardError):
    """Missing or malformed input."""
    status_code = 400


class Conflict(BoardError):
    """WIP limit exceeded."""
    status_code = 409
