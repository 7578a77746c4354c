"""Custom exceptions for the deploy agent."""

from typing import Optional


class DeployAgentError(Exception):
    """Base exception for all deploy agent errors."""

    status_code: int = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigurationError(DeployAgentError):
    """Configuration error."""
    pass


class AuthenticationError(DeployAgentError):
    """Request authentication failed."""
    pass


class UnknownTargetError(AuthenticationError):
    """Repository id does not match any configured target."""

    status_code = 400

    def __init__(self, message: str = "Unknown repository"):
        super().__init__(message, code="unknown_target")


class SignatureMismatchError(AuthenticationError):
    """Request signature does not match the computed one."""

    status_code = 403

    def __init__(self, message: str = "Signature mismatch"):
        super().__init__(message, code="signature_mismatch")


class SignatureExpiredError(AuthenticationError):
    """Request timestamp is outside the accepted window."""

    status_code = 403

    def __init__(self, message: str = "Signature expired"):
        super().__init__(message, code="signature_expired")


class DeployError(DeployAgentError):
    """A deploy attempt failed after authentication.

    ``out`` carries whatever command transcript was accumulated before the
    failure, so callers can see how far the hooks got.
    """

    default_message = "Deploy failed"
    default_code = "deploy_failed"

    def __init__(self, message: Optional[str] = None, out: Optional[str] = None):
        super().__init__(message or self.default_message, code=self.default_code)
        self.out = out


class InvalidRunIdError(DeployError):
    status_code = 400
    default_message = "Invalid run id"
    default_code = "invalid_run_id"


class BundleTooLargeError(DeployError):
    status_code = 413
    default_message = "Bundle exceeds maximum allowed size"
    default_code = "bundle_too_large"


class ExtractionError(DeployError):
    status_code = 500
    default_message = "Failed to extract bundle"
    default_code = "extraction_failed"


class ManifestError(DeployError):
    status_code = 400
    default_message = "Failed to read deploy config"
    default_code = "manifest_invalid"


class LinkingError(DeployError):
    status_code = 500
    default_message = "Failed to link shared resources"
    default_code = "linking_failed"


class PrePublishError(DeployError):
    status_code = 400
    default_message = "Pre-Publish failed"
    default_code = "pre_publish_failed"


class PromotionError(DeployError):
    status_code = 500
    default_message = "Failed to promote release"
    default_code = "promotion_failed"


class PostPublishError(DeployError):
    status_code = 400
    default_message = "Post-Publish failed"
    default_code = "post_publish_failed"
