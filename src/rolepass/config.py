"""
Runtime configuration.

Settings come from ``<home>/config/config.yaml`` and are then overridden
by ``ROLEPASS_*`` environment variables, so secrets can stay out of the
file. Every value is validated by pydantic; a bad value raises
ConfigError before anything starts.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from . import ROLEPASS_HOME

logger = logging.getLogger("rolepass.config")

CONFIG_FILE = "config/config.yaml"


class ConfigError(Exception):
    """Raised when configuration cannot be loaded or is invalid."""


class GeneralSettings(BaseModel):
    """Publish loop timing."""

    data_update_check_interval_sec: int = Field(default=30, gt=0)
    token_expire_period_sec: int = Field(default=3600, gt=0)
    member_refresh_cooldown_sec: float = Field(default=30.0, ge=0)


class BucketSettings(BaseModel):
    """One S3-compatible bucket. Empty endpoint means local filesystem."""

    endpoint_url: str = ""
    bucket_name: str = ""
    access_key_id: str = ""
    secret_key: str = ""
    base_url: str = ""
    local_path: Optional[Path] = None

    @property
    def is_remote(self) -> bool:
        return bool(self.endpoint_url and self.bucket_name)


class CdnSettings(BaseModel):
    zone_id: str = ""
    purge_api_key: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.zone_id and self.purge_api_key)


class BackupSettings(BaseModel):
    period_unit: Literal["hours", "days"] = "days"
    period_value: int = Field(default=1, gt=0)
    retry_interval_sec: int = Field(default=600, gt=0)
    max_retries: int = Field(default=72, ge=0)
    keep_local_copy: bool = False


class Settings(BaseModel):
    """Complete RolePass configuration."""

    home: Path = Path(ROLEPASS_HOME)
    path_prefix: str = ""
    membership_file: Path = Path("config/membership.yaml")
    general: GeneralSettings = Field(default_factory=GeneralSettings)
    public_bucket: BucketSettings = Field(default_factory=BucketSettings)
    backup_bucket: BucketSettings = Field(default_factory=BucketSettings)
    cdn: CdnSettings = Field(default_factory=CdnSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    api_port: int = Field(default=7780, ge=0, le=65535)

    @property
    def key_dir(self) -> Path:
        return self.home / "keys"

    @property
    def log_dir(self) -> Path:
        return self.home / "logs"

    def resolve(self, path: Path) -> Path:
        """Resolve a path relative to the home directory."""
        path = Path(path).expanduser()
        return path if path.is_absolute() else self.home / path


# env var -> (section, field). Names follow the deployment's .env file.
ENV_MAP: dict[str, tuple[Optional[str], str]] = {
    "ROLEPASS_DATA_UPDATE_CHECK_INTERVAL_SEC": ("general", "data_update_check_interval_sec"),
    "ROLEPASS_TOKEN_EXPIRE_PERIOD_SEC": ("general", "token_expire_period_sec"),
    "ROLEPASS_MEMBER_REFRESH_COOLDOWN_SEC": ("general", "member_refresh_cooldown_sec"),
    "ROLEPASS_DATA_BACKUP_PERIOD_UNIT": ("backup", "period_unit"),
    "ROLEPASS_DATA_BACKUP_PERIOD_VALUE": ("backup", "period_value"),
    "ROLEPASS_R2_BOT_SEPARATE_PATH": (None, "path_prefix"),
    "ROLEPASS_R2_VRC_BASE_URL": ("public_bucket", "base_url"),
    "ROLEPASS_R2_VRC_BUCKET_NAME": ("public_bucket", "bucket_name"),
    "ROLEPASS_R2_VRC_ACCESS_KEY_ID": ("public_bucket", "access_key_id"),
    "ROLEPASS_R2_VRC_SECRET_KEY": ("public_bucket", "secret_key"),
    "ROLEPASS_R2_VRC_ENDPOINT_URL": ("public_bucket", "endpoint_url"),
    "ROLEPASS_R2_BACKUP_BUCKET_NAME": ("backup_bucket", "bucket_name"),
    "ROLEPASS_R2_BACKUP_ACCESS_KEY_ID": ("backup_bucket", "access_key_id"),
    "ROLEPASS_R2_BACKUP_SECRET_KEY": ("backup_bucket", "secret_key"),
    "ROLEPASS_R2_BACKUP_ENDPOINT_URL": ("backup_bucket", "endpoint_url"),
    "ROLEPASS_CDN_ZONE_ID": ("cdn", "zone_id"),
    "ROLEPASS_CDN_PURGE_API_KEY": ("cdn", "purge_api_key"),
    "ROLEPASS_API_PORT": (None, "api_port"),
}


def load_settings(home: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load settings for a RolePass home.

    Args:
        home: Home directory. Defaults to $ROLEPASS_HOME or ~/.rolepass.
        environ: Environment mapping (defaults to os.environ).

    Returns:
        Settings: Validated settings with ``home`` set.

    Raises:
        ConfigError: Unreadable YAML or invalid values.
    """
    home_path = Path(home or ROLEPASS_HOME).expanduser()
    env = os.environ if environ is None else environ

    data: dict = {}
    config_file = home_path / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Cannot parse {config_file}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{config_file} must contain a mapping")

    for var, (section, key) in ENV_MAP.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        if section is None:
            data[key] = value
        else:
            data.setdefault(section, {})[key] = value

    data["home"] = home_path
    try:
        settings = Settings(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc

    logger.debug("Settings loaded from %s", config_file)
    return settings


def write_default_config(home: Path) -> Path:
    """Write a commented default config.yaml if none exists.

    Returns:
        Path: The config file path.
    """
    config_file = Path(home).expanduser() / CONFIG_FILE
    if config_file.exists():
        return config_file
    config_file.parent.mkdir(parents=True, exist_ok=True)
    defaults = Settings().model_dump(mode="json", exclude={"home"})
    defaults["public_bucket"]["local_path"] = "public"
    defaults["backup_bucket"]["local_path"] = "backups"
    config_file.write_text(
        "# RolePass configuration. Secrets may be given as ROLEPASS_* env vars instead.\n"
        + yaml.dump(defaults, default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    return config_file
