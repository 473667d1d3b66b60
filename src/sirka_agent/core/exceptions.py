"""Custom exceptions for the Sirka site agent."""

from typing import Optional


class SiteAgentError(Exception):
    """Base exception for all agent errors.

    ``stage`` names the deployment stage that failed and ``content_changed``
    tells the caller whether the site's served files were replaced before the
    failure happened.
    """

    http_status = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        stage: Optional[str] = None,
        content_changed: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.stage = stage
        self.content_changed = content_changed


class ArtifactError(SiteAgentError):
    """The deployment payload could not be turned into archive bytes."""

    http_status = 400


class NoArtifactSource(ArtifactError):
    """Neither or both of inline data and artifact URL were supplied."""
    pass


class InvalidEncoding(ArtifactError):
    """Inline payload is not valid base64."""
    pass


class ArtifactTooLarge(ArtifactError):
    """Payload exceeds the configured maximum size."""

    http_status = 413


class FetchError(ArtifactError):
    """Remote artifact could not be downloaded."""

    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class FetchTimeout(FetchError):
    """Remote artifact download exceeded the timeout."""

    http_status = 504


class ArchiveError(SiteAgentError):
    """Archive rejected before activation."""

    http_status = 400


class MalformedArchive(ArchiveError):
    """Archive failed structural validation."""
    pass


class PathTraversalAttempt(ArchiveError):
    """Archive entry would be written outside the staging directory."""
    pass


class ActivationError(SiteAgentError):
    """Swapping staged content into place failed; live content was restored."""
    pass


class BackendActivationError(SiteAgentError):
    """Content is live but the runtime backend could not be wired up."""
    pass


class ConfigValidationError(BackendActivationError):
    """Generated proxy configuration was rejected by the proxy itself."""
    pass


class CommandError(SiteAgentError):
    """External command failed after every privilege attempt."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.returncode = returncode
        self.output = output


class SiteNotFoundError(SiteAgentError):
    """Site is not known to the active backend."""

    http_status = 404


class AuthenticationError(SiteAgentError):
    """Authentication failed."""

    http_status = 401


class ConfigurationError(SiteAgentError):
    """Configuration error."""
    pass


class RuntimeUnavailableError(ConfigurationError):
    """Neither Docker nor nginx is usable on this host."""

    http_status = 503


class PermissionAdjustmentWarning(UserWarning):
    """chmod/chown on deployed files failed; logged, never raised."""
    pass
