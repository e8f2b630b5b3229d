# kwmon_cli/config.py
import os
import re
import yaml
import logging
from typing import Dict, Any, Optional, List, Literal, Union
from pathlib import Path
from pydantic import BaseModel, Field, HttpUrl, ConfigDict, ValidationError, field_validator, model_validator

from .exceptions import ConfigError, ConfigValidationError, SecretResolutionError

logger = logging.getLogger('kwmon-cli.config')

# --- Type Definitions ---
LogLevel = Literal['debug', 'info', 'warning', 'error', 'critical', 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

DEFAULT_CONFIG_PATH = 'kwmon_config.yaml'
ENV_REFERENCE = re.compile(r'\$\{(\w+)\}')

# --- Base Models for Configuration ---
class GeneralConfig(BaseModel):
    log_level: LogLevel = Field(default='info', description='Logging level')
    log_file: Optional[Path] = Field(default=None, description="Optional file to mirror log output to")
    state_file: Path = Field(default=Path('./state/watermarks.json'), description="Durable watermark state file")
    api_concurrency: int = Field(default=1, gt=0, le=20, description="Repositories scanned in parallel")

    @field_validator('log_file', 'state_file', mode='before')
    @classmethod
    def resolve_paths(cls, v):
        if v is None:
            return v
        try:
            return Path(v).resolve(strict=False)
        except TypeError:
            logger.warning(f"Could not resolve path for value: {v}")
            return v

class GitHubConfig(BaseModel):
    token: Optional[str] = Field(default=None, description="GitHub token (use ${GITHUB_TOKEN})")
    api_url: HttpUrl = Field(default='https://api.github.com', description="GitHub API URL (for GHE, change this)")
    request_timeout: float = Field(default=15, gt=0, description="Per-request timeout in seconds")
    max_retries: int = Field(default=2, ge=0, le=10)
    check_interval: Optional[int] = Field(default=None, gt=0, description="Legacy location of the polling interval in minutes")

    @field_validator('token', mode='before')
    @classmethod
    def blank_token_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

class PollingConfig(BaseModel):
    check_interval_minutes: int = Field(default=5, ge=1, description="Minutes between monitoring cycles")
    commits_per_check: int = Field(default=10, ge=1, le=100, description="Recent commits fetched per branch per pass")
    scan_file_contents: bool = Field(default=False, description="Also match keywords in changed file bodies")
    max_file_size: int = Field(default=1_000_000, gt=0, description="Largest blob (bytes) fetched for content scanning")

class RepositoryConfig(BaseModel):
    url: str
    keywords: List[str] = Field(default_factory=list)
    branches: List[str] = Field(default_factory=list, description="Empty means the repository's default branch")

    @field_validator('url')
    @classmethod
    def url_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Repository url must be a non-empty string")
        return v.strip()

    @field_validator('keywords', 'branches', mode='before')
    @classmethod
    def none_is_empty(cls, v):
        return [] if v is None else v

class SMTPConfig(BaseModel):
    host: str
    port: int = Field(default=587, gt=0, lt=65536)
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = Field(default=True, description="Upgrade the connection with STARTTLS")
    use_ssl: bool = Field(default=False, description="Connect with implicit TLS (port 465)")
    timeout: float = Field(default=30, gt=0)

    @model_validator(mode='after')
    def validate_tls_mode(self) -> 'SMTPConfig':
        if self.use_ssl and self.use_tls:
            logger.debug("Both use_ssl and use_tls set; implicit TLS wins.")
            self.use_tls = False
        return self

class AlertingConfig(BaseModel):
    enabled: bool = Field(default=True)
    from_address: str
    to_address: List[str]
    subject_prefix: str = Field(default="Keyword Alert")
    smtp: SMTPConfig

    @field_validator('to_address', mode='before')
    @classmethod
    def split_recipients(cls, v):
        if isinstance(v, str):
            v = [addr.strip() for addr in v.split(',')]
        return [addr for addr in (v or []) if addr]

    @model_validator(mode='after')
    def require_recipient(self) -> 'AlertingConfig':
        if not self.to_address:
            raise ValueError("alerting.to_address needs at least one recipient.")
        return self

class AppConfig(BaseModel):
    model_config = ConfigDict(extra='forbid', validate_assignment=True)

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    repositories: List[RepositoryConfig] = Field(min_length=1, description="Repositories to monitor")
    alerting: AlertingConfig

    @model_validator(mode='before')
    @classmethod
    def apply_legacy_interval(cls, data: Any) -> Any:
        # github.check_interval is honoured when polling.check_interval_minutes is absent
        if isinstance(data, dict):
            github = data.get('github') or {}
            polling = data.get('polling') or {}
            legacy = github.get('check_interval') if isinstance(github, dict) else None
            if legacy is not None and isinstance(polling, dict) and 'check_interval_minutes' not in polling:
                data = dict(data)
                data['polling'] = {**polling, 'check_interval_minutes': legacy}
        return data

    @model_validator(mode='after')
    def warn_on_empty_keywords(self) -> 'AppConfig':
        for repo in self.repositories:
            if not any(kw.strip() for kw in repo.keywords):
                logger.warning(f"⚠️ Repository '{repo.url}' has no keywords configured; it will never alert.")
        return self


def resolve_env_references(value: Any, environ: Optional[Dict[str, str]] = None) -> Any:
    """Replaces ``${NAME}`` in every string of a loaded YAML tree. Unset names raise SecretResolutionError."""
    env = os.environ if environ is None else environ

    if isinstance(value, dict):
        return {k: resolve_env_references(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_references(v, env) for v in value]
    if isinstance(value, str):
        def _substitute(match: 're.Match[str]') -> str:
            name = match.group(1)
            resolved = env.get(name)
            if not resolved:
                raise SecretResolutionError(name)
            return resolved
        return ENV_REFERENCE.sub(_substitute, value)
    return value


class ConfigManager:
    def __init__(self, config_path: Optional[Union[str, Path]] = None, environ: Optional[Dict[str, str]] = None):
        self.config_path = Path(config_path or os.environ.get('KWMON_CONFIG_PATH', DEFAULT_CONFIG_PATH))
        self.environ = environ
        self.config: AppConfig
        self._load_and_validate_config()

    def _load_and_validate_config(self):
        """Loads configuration from YAML, resolves secrets and validates."""
        logger.debug(f"Loading configuration from: {self.config_path.resolve()}")

        if not (self.config_path.exists() and self.config_path.is_file()):
            raise ConfigError(f"Config file not found at '{self.config_path.resolve()}'.")

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                yaml_config = yaml.safe_load(f)
        except yaml.YAMLError as e_yaml:
            raise ConfigError(f"Error parsing YAML from '{self.config_path}': {e_yaml}", original_error=e_yaml)
        except OSError as e_file:
            raise ConfigError(f"Error reading config file '{self.config_path}': {e_file}", original_error=e_file)

        if yaml_config is None:
            yaml_config = {}
        if not isinstance(yaml_config, dict):
            raise ConfigError(f"Config file {self.config_path} does not contain a valid YAML dictionary structure.")

        # SecretResolutionError propagates as a fatal ConfigError
        resolved = resolve_env_references(yaml_config, self.environ)

        try:
            self.config = AppConfig(**resolved)
            logger.info(f"Configuration loaded and validated successfully from {self.config_path}.")
        except ValidationError as e_val:
            logger.error(f"Configuration validation failed. Errors:\n{e_val}")
            raise ConfigValidationError(
                f"Configuration validation failed. Check messages above. Source: {self.config_path}.",
                config_path=str(self.config_path),
                original_error=e_val
            )

    def get_config(self) -> Dict[str, Any]:
        """Return the current configuration as a plain Python dict."""
        return self.config.model_dump()

    def get_config_model(self) -> AppConfig:
        """Return the raw Pydantic AppConfig model."""
        return self.config

    def get_repositories(self) -> List[RepositoryConfig]:
        return self.config.repositories
