"""Exception hierarchy shared across the crawler."""
from __future__ import annotations

from typing import Iterable, List


class VenomError(Exception):
    """Base class for errors raised by the crawler."""


class ConfigError(VenomError):
    """Raised when settings fail validation before a run starts."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors: List[str] = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


class RenderError(VenomError):
    """A page could not be rendered; the job is eligible for retry."""


class CaptioningError(VenomError):
    """A captioning provider returned an unusable response."""


class UnknownProviderError(VenomError):
    """No captioning provider is registered under the requested name."""


class JobDeferred(VenomError):
    """Raised by a handler to hand a job back to pending without using a retry."""
