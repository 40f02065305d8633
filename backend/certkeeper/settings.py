"""
Certificate manager configuration settings.

Resolves the acme.yml configuration file into a validated, immutable
settings object. Everything that can be checked without touching the
network (key algorithm, CA directory URL, domain names) is checked here.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .keys import KeyType, resolve_key_type


logger = logging.getLogger(__name__)

# Default config file, read from the current directory
ACME_CONFIG_FILE = "acme.yml"

# ACME directory URLs
LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

HTTP_CHALLENGE_PORT = 80


@dataclass(frozen=True)
class CAEndpoint:
    """The certificate authority used for this run."""

    directory_url: str
    label: str  # "production" | "staging" | "custom"

    @property
    def host(self) -> str:
        return urlparse(self.directory_url).hostname or ""


def _check_directory_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValueError(f"malformed CA directory URL: {url!r}")
    return url


class ManagerSettings(BaseModel):
    """Resolved certificate manager configuration."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    # Root of the on-disk certificate store
    storage_root: Path = Field(alias="storage")

    # No default: the algorithm must be chosen explicitly
    key_type: KeyType

    # ACME account settings
    contact_email: str = Field(default="", alias="email")
    agreed_to_terms: bool = Field(default=False, alias="agreed")
    use_staging_ca: bool = Field(default=False, alias="staging")
    ca_directory_url: Optional[str] = Field(default=None, alias="ca")

    domains: list[str]

    # HTTP-01 challenge listener
    http_host: str = "0.0.0.0"
    http_port: int = HTTP_CHALLENGE_PORT

    reuse_private_keys: bool = False
    issuance_timeout: float = 600.0  # seconds, per domain

    @field_validator("key_type", mode="before")
    @classmethod
    def validate_key_type(cls, v: Union[str, KeyType]) -> KeyType:
        """Reject unknown algorithms at resolution time."""
        return resolve_key_type(v)

    @field_validator("contact_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return v.strip().lower() if v else v

    @field_validator("ca_directory_url")
    @classmethod
    def validate_ca_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _check_directory_url(v.strip())

    @field_validator("http_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        # 0 lets the OS pick a port
        if not 0 <= v <= 65535:
            raise ValueError(f"invalid port: {v}")
        return v

    @field_validator("domains")
    @classmethod
    def validate_domains(cls, v: list[str]) -> list[str]:
        """Normalise domain names, keeping the configured order."""
        domains: list[str] = []
        for raw in v:
            domain = raw.strip().lower()
            # Remove protocol if accidentally included
            if domain.startswith("http://"):
                domain = domain[7:]
            elif domain.startswith("https://"):
                domain = domain[8:]
            domain = domain.rstrip("/")
            if not domain or "/" in domain or "\\" in domain or "" in domain.split("."):
                raise ValueError(f"invalid domain name: {raw!r}")
            if domain not in domains:
                domains.append(domain)
        if not domains:
            raise ValueError("at least one domain must be configured")
        return domains

    @property
    def ca_endpoint(self) -> CAEndpoint:
        """The active CA endpoint. Production unless staging is requested."""
        if self.ca_directory_url:
            return CAEndpoint(self.ca_directory_url, "custom")
        if self.use_staging_ca:
            return CAEndpoint(LETSENCRYPT_STAGING, "staging")
        return CAEndpoint(LETSENCRYPT_PRODUCTION, "production")


def load_settings(path: Union[str, os.PathLike] = ACME_CONFIG_FILE) -> ManagerSettings:
    """
    Load settings from a YAML file.

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    config_path = Path(path)
    logger.info("[ACME-SETTINGS] Loading settings from %s", config_path)

    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except FileNotFoundError:
        raise ConfigurationError(f"configuration file not found: {config_path}") from None
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"cannot read configuration {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"configuration {config_path} must be a mapping")

    try:
        settings = ManagerSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration {config_path}: {e}") from e

    endpoint = settings.ca_endpoint
    if endpoint.label == "staging":
        logger.info("[ACME-SETTINGS] Using staging endpoint")
    logger.info(
        "[ACME-SETTINGS] Loaded settings, key_type: %s, ca: %s, domains: %s",
        settings.key_type.value, endpoint.directory_url, settings.domains,
    )
    return settings
