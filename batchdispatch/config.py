"""Application configuration via environment variables."""

from pydantic import model_validator
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    # Compute dispatch
    compute_dispatch_mode: str = "local"  # "local" or "azure"
    compute_port: int = 8001

    # Batch account credentials
    batch_account_name: str = ""
    batch_account_key: str = ""
    batch_account_url: str = ""

    # Storage account credentials
    storage_account_name: str = ""
    storage_account_key: str = ""

    # Batch resources
    pool_id: str = "batchdispatch-pool"
    job_id: str = "batchdispatch-job"
    pool_node_count: int = 2
    pool_vm_size: str = "STANDARD_A1_v2"
    image_publisher: str = "canonical"
    image_offer: str = "0001-com-ubuntu-server-jammy"
    image_sku: str = "22_04-lts"
    image_version: str = "latest"
    node_agent_sku_id: str = "batch.node.ubuntu 22.04"

    # Inputs
    input_container_name: str = "input"
    input_files: List[str] = ["stock0.csv", "stock1.csv", "stock2.csv"]
    task_command_template: str = "/bin/bash -c 'cat {file_path}'"
    artifact_ttl_hours: float = 2

    # Monitoring
    poll_interval_seconds: float = 5.0
    completion_timeout_minutes: float = 30
    cleanup_policy: str = "always"  # "always", "on_success" or "never"

    # Local mode
    local_store_dir: str = ""
    local_polls_to_complete: int = 2

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @model_validator(mode="after")
    def _check_values(self) -> "Settings":
        if self.compute_dispatch_mode not in ("local", "azure"):
            raise ValueError("compute_dispatch_mode must be 'local' or 'azure'")
        if self.cleanup_policy not in ("always", "on_success", "never"):
            raise ValueError("cleanup_policy must be 'always', 'on_success' or 'never'")
        # Task input URLs must stay readable for as long as we are willing to wait
        if self.artifact_ttl_hours * 60 <= self.completion_timeout_minutes:
            raise ValueError(
                "artifact_ttl_hours must outlast completion_timeout_minutes"
            )
        return self

    def missing_credentials(self) -> List[str]:
        """Names of the account settings that are empty."""
        names = [
            "batch_account_name",
            "batch_account_key",
            "batch_account_url",
            "storage_account_name",
            "storage_account_key",
        ]
        return [name.upper() for name in names if not getattr(self, name)]


settings = Settings()
