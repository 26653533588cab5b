from __future__ import annotations

from typing import Optional

GENERIC_SCAN_ERROR = "Something went wrong while scanning your site."


class OutrankError(Exception):
    """Base class for errors raised by the scan pipeline."""


class ScanFailed(OutrankError):
    """
    Run-level fatal error.

    `user_message` is what the status endpoint shows; the underlying cause is
    only ever logged.
    """

    def __init__(self, user_message: str, *, detail: str = "") -> None:
        super().__init__(detail or user_message)
        self.user_message = user_message


class ScanAlreadyInFlight(OutrankError):
    def __init__(self, dispatch_key: str, run_id: Optional[str]) -> None:
        super().__init__(f"scan {run_id} already in flight for {dispatch_key}")
        self.dispatch_key = dispatch_key
        self.run_id = run_id


class ScanNotFound(OutrankError):
    pass


class InvalidTransition(OutrankError):
    def __init__(self, run_id: str, current: str, new: str) -> None:
        super().__init__(f"scan {run_id}: cannot move {current} -> {new}")
        self.current = current
        self.new = new


class EnrichmentSuperseded(OutrankError):
    """A newer enrichment invocation claimed the same scan run."""


class ProviderError(OutrankError):
    """Any upstream LLM failure (timeout, 4xx, 5xx, empty response)."""

    def __init__(self, platform: str, message: str) -> None:
        super().__init__(f"{platform}: {message}")
        self.platform = platform


class ScheduleValidationError(ValueError):
    pass
