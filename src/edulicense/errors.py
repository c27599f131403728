"""Exception hierarchy for edulicense.

Validation failures are never raised; they are reported through
:class:`~edulicense.models.ValidationResult` and friends.  The exceptions
here cover everything that is *not* a verdict about a license:

- :class:`ConfigurationError` -- missing secrets or unusable hash input.
- :class:`CredentialError` -- the presented token could not be decoded or
  verified.  The validation pipeline turns this into an invalid verdict.
- :class:`LicenseOperationError` -- a lifecycle operation was rejected.
- :class:`RepositoryError` -- the durable store failed.  Distinct from an
  invalid license.
"""

from __future__ import annotations


class EduLicenseError(Exception):
    """Base class for all edulicense errors."""


class ConfigurationError(EduLicenseError):
    """Raised when the process is not configured to perform an operation."""


class CredentialError(EduLicenseError):
    """Raised when a license credential is malformed or its signature is bad."""


class CredentialExpiredError(CredentialError):
    """Raised when a credential's ``exp`` claim is in the past."""


class LicenseOperationError(EduLicenseError):
    """Raised when a lifecycle operation cannot be applied.

    :param message: Human-readable reason.
    :param code: Stable machine-readable code (``LICENSE_ALREADY_EXISTS``...).
    :param status_code: Suggested HTTP status for thin transport adapters.
    """

    def __init__(self, message: str, code: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    def to_dict(self) -> dict[str, object]:
        return {
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
        }


class RepositoryError(EduLicenseError):
    """Raised when the license repository fails.

    The original exception is preserved as ``__cause__`` and on
    :attr:`cause`.
    """

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause
