"""Application configuration using pydantic-settings.

This module handles configuration from environment variables, .env files, and config.yaml.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, model_validator
from typing import Optional
import logging
import yaml
from pathlib import Path


logger = logging.getLogger(__name__)


# Weak/default secrets that should never be used in production
INSECURE_DEFAULT_SECRETS = {
    "your-secret-key-change-this-in-production",
    "change-me",
    "changeme",
    "secret",
    "password",
    "default",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "couponroster"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"  # development, staging, production

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Database - can be set directly or built from components
    database_url: Optional[str] = None
    database_echo: bool = False  # Log SQL queries

    # Database components (used if database_url not provided)
    postgres_db: str = "couponroster"
    postgres_user: str = "couponroster"
    postgres_password: str = "couponroster"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    @property
    def db_url(self) -> str:
        """Get database URL, constructing from components if not explicitly set."""
        if self.database_url:
            return self.database_url
        return f"postgresql://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    # JWT Authentication
    jwt_secret_key: str = "your-secret-key-change-this-in-production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 15
    jwt_refresh_token_expire_days: int = 30

    # Password Hashing
    password_bcrypt_rounds: int = 12

    # CORS
    cors_origins: list = ["http://localhost:3000", "http://localhost:8080"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list = ["*"]
    cors_allow_headers: list = ["*"]

    # Registration
    registration_uniqueness_scope: str = "form"  # form, global
    mobile_pattern: str = r"^\d{10}$"

    # Coupon allocation
    allocation_batch_size: int = 10  # Candidates fetched per allocation round
    generated_coupon_prefix: str = "THANKS-"
    generated_coupon_length: int = 8
    generated_coupon_attempts: int = 5

    # Redemption URLs for coupons without a pre-defined link ({code} is substituted)
    redeem_url_template: Optional[str] = "https://www.linkedin.com/premium/redeem/gift?_ed={code}"
    redeem_url_strip_prefix: str = "THANKS-"

    # Coupon uploads
    upload_max_bytes: int = 5 * 1024 * 1024

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables (like POSTGRES_* used by docker-compose)
    )

    @field_validator("registration_uniqueness_scope")
    @classmethod
    def validate_uniqueness_scope(cls, v: str) -> str:
        """Only per-form and global duplicate detection are supported."""
        v = v.lower().strip()
        if v not in ("form", "global"):
            raise ValueError("registration_uniqueness_scope must be 'form' or 'global'")
        return v

    @field_validator("allocation_batch_size", "generated_coupon_length", "generated_coupon_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_jwt_secret_key(self) -> "Settings":
        """Refuse weak JWT secrets in production, warn elsewhere."""
        secret = self.jwt_secret_key.lower().strip()
        if secret in INSECURE_DEFAULT_SECRETS:
            if self.environment == "production":
                raise ValueError(
                    "Weak or default JWT secret detected. Generate one with "
                    "`python -c 'import secrets; print(secrets.token_urlsafe(32))'` "
                    "and set JWT_SECRET_KEY."
                )
            logger.warning("Using a default JWT secret key; set JWT_SECRET_KEY before deploying")
        elif len(self.jwt_secret_key) < 32:
            logger.warning(
                "JWT secret key is %d characters long; at least 32 is recommended",
                len(self.jwt_secret_key)
            )
        return self

    @property
    def access_token_expire_minutes(self) -> int:
        """Alias for JWT access token expire minutes."""
        return self.jwt_access_token_expire_minutes


def load_config_yaml(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file if it exists."""
    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file, "r") as f:
            return yaml.safe_load(f) or {}
    return {}


# config.yaml section -> {yaml key: settings field}
YAML_SECTIONS = {
    "app": {
        "environment": "environment",
        "debug": "debug",
    },
    "api": {
        "host": "api_host",
        "port": "api_port",
    },
    "logging": {
        "level": "log_level",
        "json": "log_json",
    },
    "security": {
        "secret_key": "jwt_secret_key",
        "algorithm": "jwt_algorithm",
        "access_token_expire_minutes": "jwt_access_token_expire_minutes",
    },
    "cors": {
        "origins": "cors_origins",
        "allow_credentials": "cors_allow_credentials",
        "allow_methods": "cors_allow_methods",
        "allow_headers": "cors_allow_headers",
    },
    "registration": {
        "uniqueness_scope": "registration_uniqueness_scope",
        "mobile_pattern": "mobile_pattern",
    },
    "coupons": {
        "allocation_batch_size": "allocation_batch_size",
        "generated_prefix": "generated_coupon_prefix",
        "generated_length": "generated_coupon_length",
        "generated_attempts": "generated_coupon_attempts",
        "redeem_url_template": "redeem_url_template",
        "redeem_url_strip_prefix": "redeem_url_strip_prefix",
        "upload_max_bytes": "upload_max_bytes",
    },
}


def create_settings() -> Settings:
    """Create settings instance with config.yaml overrides."""
    yaml_config = load_config_yaml()

    kwargs = {}

    # Database section builds a full URL
    if "database" in yaml_config:
        db = yaml_config["database"]
        if "url" in db:
            kwargs["database_url"] = db["url"]
        else:
            kwargs["database_url"] = f"postgresql://{db.get('user', 'couponroster')}:{db.get('password', 'couponroster')}@{db.get('host', 'localhost')}:{db.get('port', 5432)}/{db.get('name', 'couponroster')}"

    for section, mapping in YAML_SECTIONS.items():
        values = yaml_config.get(section) or {}
        for yaml_key, field_name in mapping.items():
            if yaml_key in values:
                kwargs[field_name] = values[yaml_key]

    # Keyword arguments take precedence over environment variables
    return Settings(**kwargs)


# Global settings instance
settings = create_settings()
