from __future__ import annotations


class SpatialError(Exception):
    """
    Base class for errors that map onto an HTTP error document.

    Rendered as `{"error": <error>, "reason": <reason>}` with `status_code`.
    """

    status_code: int = 500
    error: str = "unknown_error"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_json(self) -> dict[str, str]:
        return {"error": self.error, "reason": self.reason}


class IndexNotFound(SpatialError):
    status_code = 404
    error = "not_found"


class EngineFailure(SpatialError):
    status_code = 500
    error = "engine_failure"
