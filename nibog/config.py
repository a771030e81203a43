import logging
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from .errors import ConfigError

logger = logging.getLogger("nibog.config")

SANDBOX = "sandbox"
PRODUCTION = "production"

PHONEPE_API_BASE = {
    SANDBOX: "https://api-preprod.phonepe.com/apis/pg-sandbox",
    PRODUCTION: "https://api.phonepe.com/apis/hermes",
}

# PhonePe's public UAT merchant; not a secret
SANDBOX_DEFAULTS = {
    "MERCHANT_ID": "PGTESTPAYUAT86",
    "SALT_KEY": "96434309-7796-489d-8924-ab56988a6076",
    "SALT_INDEX": "1",
}

DEFAULT_APP_URL = "http://localhost:8000"
DEFAULT_TIMEOUT_SECONDS = 15.0


@dataclass(frozen=True)
class PaymentConfig:
    merchant_id: str
    salt_key: str
    salt_index: str
    environment: str
    app_base_url: str
    gateway_base: str
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION


@dataclass
class ConfigValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


def _first(env: Mapping[str, str], *keys: str, default: str = "") -> str:
    for key in keys:
        value = env.get(key)
        if value:
            return value.strip()
    return default


def _resolve_app_url(env: Mapping[str, str]) -> str:
    url = _first(env, "NEXT_PUBLIC_APP_URL", "APP_URL")
    if not url and env.get("VERCEL_URL"):
        url = f"https://{env['VERCEL_URL'].strip()}"
    return (url or DEFAULT_APP_URL).rstrip("/")


def resolve_config(env: Optional[Mapping[str, str]] = None) -> PaymentConfig:
    """Build the payment config from environment variables.

    Per credential the lookup order is the provider-tier variable
    (PHONEPE_TEST_* or PHONEPE_PROD_*), then the public NEXT_PUBLIC_*
    variable, then the sandbox default. Production has no defaults, so a
    missing production secret stays empty and shows up in
    validate_config().
    """
    if env is None:
        env = os.environ

    environment = _first(
        env, "PHONEPE_ENVIRONMENT", "NEXT_PUBLIC_PHONEPE_ENVIRONMENT",
        default=SANDBOX,
    ).lower()
    if environment != PRODUCTION:
        environment = SANDBOX

    tier = "PROD" if environment == PRODUCTION else "TEST"
    values = {}
    for name in ("MERCHANT_ID", "SALT_KEY", "SALT_INDEX"):
        default = SANDBOX_DEFAULTS[name] if environment == SANDBOX else ""
        values[name] = _first(
            env, f"PHONEPE_{tier}_{name}", f"NEXT_PUBLIC_{name}",
            default=default,
        )

    try:
        timeout = float(env.get("PHONEPE_TIMEOUT_SECONDS") or
                        DEFAULT_TIMEOUT_SECONDS)
    except ValueError:
        timeout = DEFAULT_TIMEOUT_SECONDS

    gateway_base = _first(env, "PHONEPE_API_BASE",
                          default=PHONEPE_API_BASE[environment])

    return PaymentConfig(
        merchant_id=values["MERCHANT_ID"],
        salt_key=values["SALT_KEY"],
        salt_index=values["SALT_INDEX"],
        environment=environment,
        app_base_url=_resolve_app_url(env),
        gateway_base=gateway_base.rstrip("/"),
        timeout_seconds=timeout,
    )


def validate_config(cfg: PaymentConfig) -> ConfigValidation:
    errors = []
    if not cfg.merchant_id:
        errors.append("MERCHANT_ID is missing")
    if not cfg.salt_key:
        errors.append("SALT_KEY is missing")
    if not cfg.salt_index:
        errors.append("SALT_INDEX is missing")
    if not cfg.app_base_url:
        errors.append("APP_URL is missing")
    elif not cfg.app_base_url.startswith(("http://", "https://")):
        errors.append("APP_URL must be an absolute http(s) URL")
    return ConfigValidation(is_valid=not errors, errors=errors)


def require_valid_config(cfg: PaymentConfig) -> ConfigValidation:
    validation = validate_config(cfg)
    if validation.is_valid:
        return validation
    if cfg.is_production:
        raise ConfigError(
            "PhonePe configuration is invalid: "
            + ", ".join(validation.errors),
            errors=validation.errors,
        )
    logger.warning("PhonePe sandbox configuration incomplete: %s",
                   ", ".join(validation.errors))
    return validation


def config_summary(cfg: PaymentConfig) -> dict:
    validation = validate_config(cfg)
    return {
        "environment": cfg.environment,
        "merchant_id_set": bool(cfg.merchant_id),
        "salt_key_set": bool(cfg.salt_key),
        "salt_index_set": bool(cfg.salt_index),
        "app_url": cfg.app_base_url,
        "gateway_base": cfg.gateway_base,
        "test_mode": not cfg.is_production,
        "is_valid": validation.is_valid,
        "errors": validation.errors,
    }


def log_config(cfg: PaymentConfig) -> None:
    s = config_summary(cfg)
    logger.info(
        "PhonePe config: environment=%s merchant_id=%s salt_key=%s "
        "salt_index=%s app_url=%s",
        s["environment"],
        "set" if s["merchant_id_set"] else "MISSING",
        "set" if s["salt_key_set"] else "MISSING",
        "set" if s["salt_index_set"] else "MISSING",
        s["app_url"],
    )
    if not s["is_valid"]:
        logger.error("PhonePe configuration errors: %s", s["errors"])
