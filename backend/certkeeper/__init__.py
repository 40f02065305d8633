"""
Automated TLS certificate lifecycle management.

Provides:
- Certificate issuance and renewal via ACME with HTTP-01 challenges
- A plain HTTP challenge responder
- Per-domain on-disk certificate storage with expiry cleanup
"""

__version__ = "0.1.0"

from .acme_client import ACMEClient, Order
from .challenges import ChallengeRegistry, ChallengeToken, HTTPChallengeServer
from .errors import (
    CertKeeperError,
    ConfigurationError,
    IssuanceFailed,
    ProtocolError,
    ResourceError,
    UnsupportedAlgorithm,
)
from .keys import KeyType, generate_private_key
from .orchestrator import (
    DomainRecord,
    DomainState,
    IssuanceOrchestrator,
    IssuanceReport,
    LoggingObserver,
)
from .settings import CAEndpoint, ManagerSettings, load_settings
from .storage import CertificateInfo, CertificateStorage, StoredCertificate
from .supervisor import LifecycleSupervisor

__all__ = [
    "ACMEClient",
    "Order",
    "ChallengeRegistry",
    "ChallengeToken",
    "HTTPChallengeServer",
    "CertKeeperError",
    "ConfigurationError",
    "IssuanceFailed",
    "ProtocolError",
    "ResourceError",
    "UnsupportedAlgorithm",
    "KeyType",
    "generate_private_key",
    "DomainRecord",
    "DomainState",
    "IssuanceOrchestrator",
    "IssuanceReport",
    "LoggingObserver",
    "CAEndpoint",
    "ManagerSettings",
    "load_settings",
    "CertificateInfo",
    "CertificateStorage",
    "StoredCertificate",
    "LifecycleSupervisor",
]
