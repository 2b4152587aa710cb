"""Error taxonomy shared by the session lifecycle services."""

from __future__ import annotations

from typing import Any, Dict


class ImageOptimizerError(RuntimeError):
    """Base class for failures that map onto a client-visible error payload."""

    code = "ProcessingFailed"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class UnsupportedFormat(ImageOptimizerError):
    """Raised for a batch whose requested output format is not allowed."""

    code = "UnsupportedFormat"
    status_code = 400


class UnsupportedMediaType(ImageOptimizerError):
    """Raised for an individual upload whose declared MIME type is not allowed."""

    code = "UnsupportedMediaType"
    status_code = 415


class SourceNotFound(ImageOptimizerError):
    """Raised when a referenced record or its bytes no longer exist."""

    code = "SourceNotFound"
    status_code = 404


class InvalidPath(ImageOptimizerError):
    """Raised when a name would resolve outside its session directory."""

    code = "InvalidPath"
    status_code = 400


class ProcessingFailed(ImageOptimizerError):
    """Raised for unexpected I/O, database or codec failures."""


__all__ = [
    "ImageOptimizerError",
    "InvalidPath",
    "ProcessingFailed",
    "SourceNotFound",
    "UnsupportedFormat",
    "UnsupportedMediaType",
]
