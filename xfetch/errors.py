"""Error taxonomy for the media service.

Every failure that reaches a route handler is one of these. Third-party
exceptions (httpx, OSError, JSON decoding) are caught where they happen and
re-raised as a subclass here, so the exception handler in ``main`` can turn
them into ``{"error": ..., "details": ...}`` with the right status code.
"""

from __future__ import annotations


class MediaServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, *, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(MediaServiceError):
    """Bad or missing client input. Raised before any collaborator is called."""

    status_code = 400


class UpstreamTimeout(MediaServiceError):
    """yt-dlp did not finish within the time budget. The client may retry."""

    status_code = 408


class UpstreamExtractionFailure(MediaServiceError):
    """yt-dlp exited abnormally or printed something that is not an info document."""


class UpstreamEmptyOutput(UpstreamExtractionFailure):
    pass


class UpstreamOutputTooLarge(UpstreamExtractionFailure):
    pass


class NoMatchingFormat(MediaServiceError):
    pass


class RelayTransportError(MediaServiceError):
    """Network failure while opening or reading the upstream media response."""
