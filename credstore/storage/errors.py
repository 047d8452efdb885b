from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or foreign-key constraint on a credential row fails.

    ``detail["field"]`` names the offending column (``uid``, ``email``,
    ``token_id``, ``device_id``, ``session_token_id``, ``code``) so the service
    layer can translate it into the matching errno.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["ConstraintViolation"]
