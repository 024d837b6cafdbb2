import os
from dataclasses import dataclass
from enum import Enum
from collections.abc import Mapping
from typing import Optional

from dotenv import load_dotenv

from mpesa_exceptions import ConfigurationError

CERTIFICATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "certificates")

REQUIRED_KEYS = ("environment", "credentials", "app_info", "business_short_code", "short_code_type", "requester")
REQUIRED_CREDENTIALS = ("pass_key", "initiator_password", "initiator_name")
REQUIRED_APP_INFO = ("consumer_key", "consumer_secret")


class Environment(Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"

    @property
    def base_url(self):
        if self is Environment.PRODUCTION:
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"

    @property
    def certificate_name(self):
        if self is Environment.PRODUCTION:
            return "ProductionCertificate.cer"
        return "SandboxCertificate.cer"


class ShortCodeType(Enum):
    PAYBILL = "paybill"
    TILL = "till"

    @property
    def identifier_type(self):
        return "4" if self is ShortCodeType.PAYBILL else "2"


def _missing(value):
    return value is None or (isinstance(value, str) and not value.strip())


def validate_config(config):
    """Fail fast on the first absent configuration field.

    Top-level keys are checked before the nested ``credentials`` and
    ``app_info`` sections. Nothing here touches the network.
    """
    if not isinstance(config, Mapping):
        raise ConfigurationError("Configuration must be a mapping")

    for key in REQUIRED_KEYS:
        if _missing(config.get(key)):
            raise ConfigurationError(f"Missing required configuration parameter: {key}")

    for section, keys in (("credentials", REQUIRED_CREDENTIALS), ("app_info", REQUIRED_APP_INFO)):
        values = config[section]
        if not isinstance(values, Mapping):
            raise ConfigurationError(f"Configuration parameter {section} must be a mapping")
        for key in keys:
            if _missing(values.get(key)):
                raise ConfigurationError(f"Missing required {section} parameter: {key}")


def _parse_enum(enum_cls, value, name):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(f"Invalid {name} '{value}'. Must be one of: {allowed}") from None


@dataclass(frozen=True)
class MpesaConfig:
    environment: Environment
    business_short_code: str
    short_code_type: ShortCodeType
    requester: str
    pass_key: str
    initiator_name: str
    initiator_password: str
    consumer_key: str
    consumer_secret: str
    certificate_path: Optional[str] = None

    @property
    def base_url(self):
        return self.environment.base_url

    @property
    def resolved_certificate_path(self):
        if self.certificate_path:
            return self.certificate_path
        return os.path.join(CERTIFICATE_DIR, self.environment.certificate_name)

    def __repr__(self):
        # keep secrets out of logs and tracebacks
        return (
            f"MpesaConfig(environment={self.environment.value!r}, "
            f"business_short_code={self.business_short_code!r}, "
            f"short_code_type={self.short_code_type.value!r})"
        )

    @classmethod
    def from_dict(cls, config):
        validate_config(config)
        credentials = config["credentials"]
        app_info = config["app_info"]
        return cls(
            environment=_parse_enum(Environment, config["environment"], "environment"),
            business_short_code=str(config["business_short_code"]).strip(),
            short_code_type=_parse_enum(ShortCodeType, config["short_code_type"], "short_code_type"),
            requester=str(config["requester"]).strip(),
            pass_key=credentials["pass_key"],
            initiator_name=credentials["initiator_name"],
            initiator_password=credentials["initiator_password"],
            consumer_key=app_info["consumer_key"],
            consumer_secret=app_info["consumer_secret"],
            certificate_path=config.get("certificate_path") or None,
        )

    @classmethod
    def from_env(cls, dotenv_path=None):
        """Build the configuration from ``MPESA_*`` environment variables.

        A ``.env`` file is loaded first; variables already set in the
        process environment win.
        """
        load_dotenv(dotenv_path)
        config = {
            "environment": os.getenv("MPESA_ENVIRONMENT", "sandbox"),
            "business_short_code": os.getenv("MPESA_BUSINESS_SHORTCODE"),
            "short_code_type": os.getenv("MPESA_SHORTCODE_TYPE", "paybill"),
            "requester": os.getenv("MPESA_REQUESTER"),
            "credentials": {
                "pass_key": os.getenv("MPESA_PASSKEY"),
                "initiator_name": os.getenv("MPESA_INITIATOR_NAME"),
                "initiator_password": os.getenv("MPESA_INITIATOR_PASSWORD"),
            },
            "app_info": {
                "consumer_key": os.getenv("MPESA_CONSUMER_KEY"),
                "consumer_secret": os.getenv("MPESA_CONSUMER_SECRET"),
            },
            "certificate_path": os.getenv("MPESA_CERTIFICATE_PATH"),
        }
        return cls.from_dict(config)
