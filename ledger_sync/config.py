import tomllib
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings

from .errors import ConfigError

APPLICATION_DIRECTORY = Path.home() / ".ledger-sync"

# Bounds for budget service calls, in milliseconds
DEFAULT_REQUEST_TIMEOUT_MS = 45_000
MAX_REQUEST_TIMEOUT_MS = 300_000


class Settings(BaseSettings):
    # Files
    config_file: Path = APPLICATION_DIRECTORY / "config.toml"
    data_dir: Path = APPLICATION_DIRECTORY / "actual-data"

    # Logging
    log_level: str = "INFO"

    class Config:
        env_prefix = "LEDGER_SYNC_"
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


class _ConfigModel(BaseModel):
    """Accepts both snake_case and the camelCase keys used in config.toml."""

    class Config:
        populate_by_name = True


class EncryptionConfig(_ConfigModel):
    enabled: bool = False
    password: Optional[str] = None


class BudgetConfig(_ConfigModel):
    sync_id: str = Field(alias="syncId")
    earliest_import_date: Optional[date] = Field(default=None, alias="earliestImportDate")
    e2e_encryption: EncryptionConfig = Field(default_factory=EncryptionConfig, alias="e2eEncryption")
    account_mapping: Dict[str, str] = Field(default_factory=dict, alias="accountMapping")

    @model_validator(mode="after")
    def check_encryption_password(self) -> "BudgetConfig":
        if self.e2e_encryption.enabled and not self.e2e_encryption.password:
            raise ValueError(
                f"Budget '{self.sync_id}': password must not be empty if end-to-end encryption is enabled"
            )
        return self


class ServerConfig(_ConfigModel):
    server_url: str = Field(alias="serverUrl")
    server_password: str = Field(alias="serverPassword")
    request_timeout_ms: Optional[int] = Field(default=None, gt=0, alias="requestTimeoutMs")
    budgets: List[BudgetConfig] = Field(min_length=1)

    @property
    def effective_timeout_ms(self) -> int:
        """Configured timeout, capped at the hard maximum."""
        if self.request_timeout_ms is None:
            return DEFAULT_REQUEST_TIMEOUT_MS
        return min(self.request_timeout_ms, MAX_REQUEST_TIMEOUT_MS)


class IgnorePatterns(_ConfigModel):
    comment_patterns: Optional[List[str]] = Field(default=None, alias="commentPatterns")
    payee_patterns: Optional[List[str]] = Field(default=None, alias="payeePatterns")
    purpose_patterns: Optional[List[str]] = Field(default=None, alias="purposePatterns")


class ImportConfig(_ConfigModel):
    import_unchecked_transactions: bool = Field(default=False, alias="importUncheckedTransactions")
    synchronize_cleared_status: bool = Field(default=True, alias="synchronizeClearedStatus")
    mask_payee_names_in_logs: bool = Field(default=False, alias="maskPayeeNamesInLogs")
    ignore_patterns: Optional[IgnorePatterns] = Field(default=None, alias="ignorePatterns")


class PayeeTransformationConfig(_ConfigModel):
    enabled: bool = False
    openai_api_key: Optional[str] = Field(default=None, alias="openAiApiKey")
    openai_model: str = Field(default="gpt-4o-mini", alias="openAiModel")
    base_url: str = Field(default="https://api.openai.com/v1", alias="baseUrl")

    @model_validator(mode="after")
    def check_api_key(self) -> "PayeeTransformationConfig":
        if self.enabled and not self.openai_api_key:
            raise ValueError("OpenAI key must not be empty if payeeTransformation is enabled")
        return self


class AppConfig(_ConfigModel):
    payee_transformation: PayeeTransformationConfig = Field(
        default_factory=PayeeTransformationConfig, alias="payeeTransformation"
    )
    import_: ImportConfig = Field(default_factory=ImportConfig, alias="import")
    actual_servers: List[ServerConfig] = Field(min_length=1, alias="actualServers")


def load_config(path: Optional[Path] = None) -> AppConfig:
    """
    Read and validate the TOML configuration file.

    Args:
        path: Config file path (default: Settings.config_file)

    Returns:
        Validated AppConfig

    Raises:
        ConfigError: If the file is missing, not valid TOML or fails validation
    """
    config_file = Path(path or get_settings().config_file).expanduser()

    if not config_file.is_file():
        raise ConfigError(
            f"Config file not found: '{config_file}'.",
            hints=["Create it or point LEDGER_SYNC_CONFIG_FILE at a different path."],
        )

    try:
        with config_file.open("rb") as fh:
            data = tomllib.load(fh)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Config file '{config_file}' is not valid TOML.", hints=[str(e)]) from e

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        hints = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigError(f"Invalid configuration file '{config_file}'.", hints=hints) from e
