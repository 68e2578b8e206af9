"""Configuration file support for healthmint-compliance."""

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigValidationError, CredentialInConfigError

logger = logging.getLogger(__name__)

CONFIG_TABLE = "healthmint_compliance"

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

CREDENTIAL_KEYS = {
    "password",
    "secret",
    "api_key",
    "token",
    "credentials",
    "private_key",
    "encryption_key",
}


@dataclass
class AuditConfig:
    """Audit pipeline tuning."""

    batch_threshold: int = 10
    max_batch_queue: int = 100
    max_retry_queue: int = 100
    max_local_log: int = 500
    max_attempts: int = 5
    delivery_timeout: float = 10.0
    retry_backoff_base: float = 1.0
    retry_backoff_max: float = 10.0
    retry_interval: float = 30.0
    log_path: str = "/audit/log"
    batch_path: str = "/audit/log/batch"
    sensitive_actions: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditConfig":
        defaults = cls()
        return cls(
            batch_threshold=data.get("batch_threshold", defaults.batch_threshold),
            max_batch_queue=data.get("max_batch_queue", defaults.max_batch_queue),
            max_retry_queue=data.get("max_retry_queue", defaults.max_retry_queue),
            max_local_log=data.get("max_local_log", defaults.max_local_log),
            max_attempts=data.get("max_attempts", defaults.max_attempts),
            delivery_timeout=float(data.get("delivery_timeout", defaults.delivery_timeout)),
            retry_backoff_base=float(data.get("retry_backoff_base", defaults.retry_backoff_base)),
            retry_backoff_max=float(data.get("retry_backoff_max", defaults.retry_backoff_max)),
            retry_interval=float(data.get("retry_interval", defaults.retry_interval)),
            log_path=data.get("log_path", defaults.log_path),
            batch_path=data.get("batch_path", defaults.batch_path),
            sensitive_actions=list(data.get("sensitive_actions", [])),
        )


@dataclass
class ConsentConfig:
    """Consent ledger behaviour."""

    auto_request: bool = False
    fallback_subject_id: str = "anonymous"
    max_age_days: int | None = None
    consent_path: str = "/user/consent"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConsentConfig":
        return cls(
            auto_request=data.get("auto_request", False),
            fallback_subject_id=data.get("fallback_subject_id", "anonymous"),
            max_age_days=data.get("max_age_days"),
            consent_path=data.get("consent_path", "/user/consent"),
        )


@dataclass
class EncryptionConfig:
    """Where field-encryption key material comes from.

    Only environment variable *names* and the non-secret installation seed
    belong in the file; key material itself is read from the environment.
    """

    installation_seed: str = ""
    key_env_var: str = "HEALTHMINT_PHI_KEY"
    key_file: Path | None = None
    secret_env_var: str = "HEALTHMINT_ENCRYPTION_SECRET"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptionConfig":
        key_file = data.get("key_file")
        return cls(
            installation_seed=data.get("installation_seed", ""),
            key_env_var=data.get("key_env_var", "HEALTHMINT_PHI_KEY"),
            key_file=Path(key_file) if key_file else None,
            secret_env_var=data.get("secret_env_var", "HEALTHMINT_ENCRYPTION_SECRET"),
        )


@dataclass
class TransportConfig:
    base_url: str | None = None
    timeout: float = 10.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransportConfig":
        return cls(
            base_url=data.get("base_url"),
            timeout=float(data.get("timeout", 10.0)),
        )


@dataclass
class ComplianceConfig:
    audit: AuditConfig = field(default_factory=AuditConfig)
    consent: ConsentConfig = field(default_factory=ConsentConfig)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    log_level: str = "INFO"
    custom_patterns_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ComplianceConfig":
        patterns_path = data.get("custom_patterns_path")
        return cls(
            audit=AuditConfig.from_dict(data.get("audit", {})),
            consent=ConsentConfig.from_dict(data.get("consent", {})),
            encryption=EncryptionConfig.from_dict(data.get("encryption", {})),
            transport=TransportConfig.from_dict(data.get("transport", {})),
            log_level=data.get("log_level", "INFO"),
            custom_patterns_path=Path(patterns_path) if patterns_path else None,
        )


def detect_credentials_in_config(
    config_dict: dict[str, Any],
    path: str = "",
    warn_only: bool = True,
) -> list[str]:
    """Detect potential credentials in configuration dictionary.

    Args:
        config_dict: Configuration dictionary to check.
        path: Current path in nested config (for error messages).
        warn_only: If True, emit warning. If False, raise error.

    Returns:
        List of detected credential key paths.

    Raises:
        CredentialInConfigError: If credentials found and warn_only=False.
    """
    detected = []

    for key, value in config_dict.items():
        current_path = f"{path}.{key}" if path else key
        key_lower = key.lower()

        if key_lower.endswith("_env_var"):
            pass
        elif any(cred_key in key_lower for cred_key in CREDENTIAL_KEYS):
            if value and value != "":
                detected.append(current_path)

        if isinstance(value, dict):
            detected.extend(detect_credentials_in_config(value, current_path, warn_only=True))

    if detected and not path:
        msg = (
            f"Potential credentials detected in config file: {', '.join(detected)}. "
            "For HIPAA compliance, secrets must be provided via environment "
            "variables or secrets manager, not configuration files."
        )
        if warn_only:
            logger.warning(msg)
        else:
            raise CredentialInConfigError(msg)

    return detected


def _require_positive_int(section: dict[str, Any], name: str, prefix: str) -> None:
    if name not in section:
        return
    value = section[name]
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigValidationError(
            f"{prefix}{name} must be an integer, got {type(value).__name__}"
        )
    if value <= 0:
        raise ConfigValidationError(f"{prefix}{name} must be positive, got {value}")


def _require_positive_number(section: dict[str, Any], name: str, prefix: str) -> None:
    if name not in section:
        return
    value = section[name]
    if not isinstance(value, int | float) or isinstance(value, bool):
        raise ConfigValidationError(
            f"{prefix}{name} must be a number, got {type(value).__name__}"
        )
    if value < 0:
        raise ConfigValidationError(f"{prefix}{name} must not be negative, got {value}")


def validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values.

    Raises:
        ConfigValidationError: If any configuration value is invalid.
    """
    audit = config_dict.get("audit", {})
    for name in (
        "batch_threshold",
        "max_batch_queue",
        "max_retry_queue",
        "max_local_log",
        "max_attempts",
    ):
        _require_positive_int(audit, name, "audit.")
    for name in ("delivery_timeout", "retry_backoff_base", "retry_backoff_max", "retry_interval"):
        _require_positive_number(audit, name, "audit.")

    if "batch_threshold" in audit and "max_batch_queue" in audit:
        if audit["batch_threshold"] > audit["max_batch_queue"]:
            raise ConfigValidationError(
                "audit.batch_threshold must not exceed audit.max_batch_queue"
            )

    consent = config_dict.get("consent", {})
    if consent.get("max_age_days") is not None:
        _require_positive_int(consent, "max_age_days", "consent.")

    if "log_level" in config_dict:
        log_level = config_dict["log_level"]
        if not isinstance(log_level, str):
            raise ConfigValidationError(
                f"log_level must be a string, got {type(log_level).__name__}"
            )
        if log_level.upper() not in VALID_LOG_LEVELS:
            raise ConfigValidationError(
                f"log_level must be one of {VALID_LOG_LEVELS}, got '{log_level}'"
            )


def load_config(config_path: Path, overrides: dict[str, Any] | None = None) -> ComplianceConfig:
    """Load configuration from a TOML file.

    Args:
        config_path: Path to the TOML configuration file.
        overrides: Optional dict of top-level values to override.

    Returns:
        ComplianceConfig instance with loaded values.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ConfigValidationError: If any configuration value is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "rb") as f:
        toml_data = tomllib.load(f)

    detect_credentials_in_config(toml_data, warn_only=True)

    config_dict = toml_data.get(CONFIG_TABLE, {})

    if overrides:
        config_dict.update(overrides)

    validate_config(config_dict)

    return ComplianceConfig.from_dict(config_dict)
