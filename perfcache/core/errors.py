"""PERFCACHE — Error Taxonomy.

Every failure the resolution engine reasons about maps onto one of these.
Platform clients raise their own errors; adapters and stores translate them
at the boundary so the resolver only ever sees this hierarchy.
"""

from typing import Optional


class PerfCacheError(Exception):
    """Base class for all engine errors."""

    code = "error"


class UpstreamError(PerfCacheError):
    """The advertising-platform API could not deliver data."""


class UpstreamUnavailable(UpstreamError):
    """Network failure, timeout or rate limit from the platform API."""

    code = "upstream_unavailable"


class UpstreamAuthInvalid(UpstreamError):
    """Expired, revoked or missing platform credential."""

    code = "upstream_auth_invalid"


class StoreUnavailable(PerfCacheError):
    """A durable store read or write failed."""

    code = "store_unavailable"


class ClassificationAmbiguous(PerfCacheError):
    """The range spans partial calendar periods and must be split."""

    code = "classification_ambiguous"


class UnsupportedPlatform(PerfCacheError):
    """No upstream adapter is registered for the platform."""

    code = "unsupported_platform"


class NoDataFound(PerfCacheError):
    """All tiers exhausted. Terminal empty result, carries the cause."""

    code = "no_data_found"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)

    def describe(self) -> str:
        if self.cause is None:
            return str(self)
        return f"{self}: {type(self.cause).__name__}: {self.cause}"
