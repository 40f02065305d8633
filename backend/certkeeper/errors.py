"""
Error types for certificate lifecycle management.

Configuration errors stop the process before any network activity,
resource errors cover the challenge port and on-disk storage, and
protocol errors are scoped to the single domain whose exchange failed.
"""
from typing import Optional


class CertKeeperError(Exception):
    """Base class for all certkeeper errors."""

    pass


class ConfigurationError(CertKeeperError):
    """Invalid or incomplete configuration."""

    pass


class UnsupportedAlgorithm(ConfigurationError):
    """Key algorithm outside the supported set."""

    pass


class ResourceError(CertKeeperError):
    """A local resource (listening port, storage) could not be used."""

    pass


class ProtocolError(CertKeeperError):
    """The ACME exchange for a domain failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        problem_type: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.problem_type = problem_type

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429 or (
            self.problem_type or ""
        ).endswith(":rateLimited")


class IssuanceFailed(CertKeeperError):
    """One or more domains ended in the failed state."""

    def __init__(self, failures: dict[str, str]):
        self.failures = dict(failures)
        details = "; ".join(f"{domain}: {error}" for domain, error in self.failures.items())
        super().__init__(f"{len(self.failures)} domain(s) failed: {details}")
