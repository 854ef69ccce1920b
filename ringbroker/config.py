"""Broker configuration.

Settings come from the environment (``.env.local`` / ``.env`` are loaded
with python-dotenv) or from a YAML file whose ``${VAR}`` references are
expanded from the environment.
"""

import os
import re
from dataclasses import dataclass, fields

import yaml
from dotenv import load_dotenv

_ENV_REF = re.compile(r"\$\{([^}]+)\}")


@dataclass
class Settings:
    master_passphrase: str = ""
    architect_passphrase: str = ""
    storage_backend: str = "memory"
    sqlite_path: str = "ringbroker.db"
    storage_timeout_seconds: float = 5.0
    pbkdf2_iterations: int = 600_000

    bearer_ttl_days: int = 90
    device_ttl_days: int = 365
    challenge_ttl_minutes: int = 10
    challenge_max_attempts: int = 3
    challenge_code_length: int = 4
    elevation_ttl_minutes: int = 10
    elevation_min_fragment: int = 4

    notification_timeout_seconds: float = 10.0
    notification_max_attempts: int = 2
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    email_api_url: str = "https://api.resend.com/emails"
    email_api_key: str = ""
    email_from: str = "noreply@ringbroker.local"
    google_client_id: str = ""

    log_level: str = "INFO"
    log_serialize: bool = False

    @classmethod
    def from_env(cls, env_files: tuple[str, ...] = (".env.local", ".env")) -> "Settings":
        for path in env_files:
            load_dotenv(path)
        values = {}
        for f in fields(cls):
            raw = os.environ.get(f"RINGBROKER_{f.name.upper()}")
            if raw is not None:
                values[f.name] = raw
        # Provider credentials keep their conventional names
        for name, var in (
            ("twilio_account_sid", "TWILIO_ACCOUNT_SID"),
            ("twilio_auth_token", "TWILIO_AUTH_TOKEN"),
            ("twilio_from_number", "TWILIO_PHONE_NUMBER"),
            ("email_api_key", "EMAIL_API_KEY"),
            ("google_client_id", "GOOGLE_OAUTH_CLIENT_ID"),
        ):
            if name not in values and os.environ.get(var):
                values[name] = os.environ[var]
        return cls.from_mapping(values)

    @classmethod
    def from_yaml(cls, path: str) -> "Settings":
        with open(path) as f:
            config = yaml.safe_load(f) or {}
        return cls.from_mapping(_expand_env_vars(config.get("ringbroker", config)))

    @classmethod
    def from_mapping(cls, values: dict) -> "Settings":
        """Build settings from loosely typed values, coercing to field types."""
        kwargs = {}
        for f in fields(cls):
            if f.name not in values or values[f.name] is None:
                continue
            kwargs[f.name] = _coerce(values[f.name], type(getattr(cls, f.name)))
        return cls(**kwargs)


def _coerce(value, target: type):
    if target is bool and isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return target(value)


def _expand_env_vars(obj):
    if isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    if isinstance(obj, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), obj)
    return obj
