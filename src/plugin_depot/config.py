"""
Plugin Depot Configuration.

Settings are layered: explicit init arguments, then the TOML config file,
then environment variables (prefix DEPOT_, nested with "__", e.g.
DEPOT_SERVER__PORT=46000).

The TOML file defaults to ./depot_config.toml and can be relocated with the
PLUGIN_DEPOT_CONFIG environment variable. A missing file is not an error.
"""
import os
from pathlib import Path
from typing import Optional, Tuple, Callable, Type

from pydantic import BaseModel, Field

from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
    TomlConfigSettingsSource,
    InitSettingsSource,
    EnvSettingsSource,
    DotEnvSettingsSource,
    SecretsSettingsSource,
)

CONFIG_ENV_VAR = "PLUGIN_DEPOT_CONFIG"
DEFAULT_CONFIG_NAME = "depot_config.toml"

# Well-known control-plane port. The data plane always listens on PORT + 1.
DEFAULT_PORT = 45000


def config_path() -> Path:
    """Resolve the TOML config file location."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override)
    return Path.cwd() / DEFAULT_CONFIG_NAME


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_to_file: bool = False
    log_file: str = "plugin_depot.log"
    rotation_size_mb: int = 10
    rotation_backup_count: int = 5
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ServerConfig(BaseModel):
    """
    Update server settings.

    socket_timeout and max_transfer_workers bound how long a stalled peer can
    hold a connection and how many downloads run at once.
    """

    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    data_port: Optional[int] = Field(
        default=None,
        description="Data-plane port. Defaults to port + 1.",
    )
    plugins_dir: Path = Path("plugins")

    poll_interval: float = 0.01  # seconds per loop cycle
    debounce_seconds: float = 10.0  # quiescence window before a rebuild
    watch: bool = True

    socket_timeout: float = 30.0
    max_transfer_workers: int = 32
    max_request_bytes: int = 64 * 1024

    def resolved_data_port(self) -> int:
        """Explicit data_port, else port + 1. An ephemeral control port gets an ephemeral data port."""
        if self.data_port is not None:
            return self.data_port
        if self.port == 0:
            return 0
        return self.port + 1


class ClientConfig(BaseModel):
    port: int = DEFAULT_PORT
    timeout: float = 30.0


class AppSettings(BaseSettings):
    """
    Main settings class that loads configuration from various sources.
    Uses defaults if the file or keys are missing.
    """

    logging: LoggingConfig = LoggingConfig()
    server: ServerConfig = ServerConfig()
    client: ClientConfig = ClientConfig()

    model_config = SettingsConfigDict(
        extra="forbid",
        env_prefix="DEPOT_",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: InitSettingsSource,
        env_settings: EnvSettingsSource,
        dotenv_settings: DotEnvSettingsSource,
        file_secret_settings: SecretsSettingsSource,
    ) -> Tuple[Callable, ...]:
        """
        Define the priority order for loading settings sources.
        The TOML file sits between init arguments and the environment.
        """
        return (
            init_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=config_path()),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )


# Create a singleton instance of the settings to be used throughout the app.
settings = AppSettings()
