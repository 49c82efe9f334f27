"""
Edge Flush exceptions.

Configuration errors are raised at construction time and never retried.
CDN failures are not exceptions: they are reported on the Invalidation.
"""


class EdgeFlushError(Exception):
    """Base class for Edge Flush errors."""


class FrontendCheckerError(EdgeFlushError):
    """The configured front-end check cannot be used."""

    @classmethod
    def unsupported_type(cls, type_name: str) -> "FrontendCheckerError":
        return cls(
            "UNSUPPORTED TYPE: we cannot check if the application is on "
            f"frontend using '{type_name}'"
        )


class CDNServiceError(EdgeFlushError):
    """The configured CDN service cannot be resolved."""

    @classmethod
    def missing_service(cls) -> "CDNServiceError":
        return cls("CDN service class was not configured (EDGE_FLUSH_CDN__SERVICE)")

    @classmethod
    def class_not_found(cls, path: str) -> "CDNServiceError":
        return cls(f"CDN service class '{path}' was not found")


class UnsupportedInvalidationError(EdgeFlushError, NotImplementedError):
    """Marking URLs purged from a tag-type invalidation is not supported."""
