"""Application settings loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

_PACKAGE_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    """All configuration is driven by environment variables."""

    # API key
    fleet_api_key: str = ""

    # SSH sessions
    ssh_default_port: int = 22
    ssh_connect_timeout_seconds: float = 20.0
    ssh_banner_timeout_seconds: float = 20.0
    ssh_auth_timeout_seconds: float = 20.0
    ssh_max_workers: int = 32
    ssh_lock_poll_interval_seconds: float = 0.1
    ssh_shell_width: int = 240

    # Provisioning
    setup_script_path: str = Field(
        default=str(_PACKAGE_DIR / "scripts" / "general-setup.sh"),
    )
    inventory_path: str = ""

    # Status polling
    poll_interval_seconds: float = 1.0
    status_timeout_seconds: float = 1.0
    lite_node_http_port: int = 41841
    bob_node_http_port: int = 40420
    running_ids_retries: int = 30
    running_ids_retry_delay_seconds: float = 2.0
    running_ids_timeout_seconds: float = 10.0

    # Snapshot automation
    snapshot_scheduler_enabled: bool = True
    snapshot_save_interval_seconds: float = 300.0
    snapshot_window_seconds: float = 3600.0
    snapshot_command_timeout_seconds: float = 60.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


# Singleton – import this from anywhere
settings = Settings()
