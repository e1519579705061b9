from pydantic_settings import BaseSettings
from functools import lru_cache

class Settings(BaseSettings):
    # Security - MUST be set via environment
    # Master secret for kubeconfig encryption (key is derived with scrypt)
    secret_key: str = ""

    # Shared token for the user-facing API calling this service
    # Empty disables the header check (local development only)
    internal_api_token: str = ""

    # Database - PostgreSQL required
    database_url: str

    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # ==========================================================================
    # Credential Encryption
    # ==========================================================================
    # Wire format: iv:authTag:cipher (hex). Changing these breaks existing rows.
    encryption_algorithm: str = "aes-256-gcm"
    encryption_key_length: int = 32
    encryption_iv_length: int = 16
    encryption_salt: str = "devpocket-salt"

    # Accept cluster rows whose kubeconfig column was stored before encryption
    # was introduced. Run encrypt_cluster_credentials.py before disabling.
    allow_plaintext_kubeconfig: bool = True

    # ==========================================================================
    # Kubernetes Settings
    # ==========================================================================
    # Environments live in one namespace per user: {prefix}-{user_id}
    k8s_namespace_prefix: str = "devpocket"
    k8s_container_name: str = "devpocket"
    k8s_storage_class: str = ""  # Empty uses the cluster default StorageClass
    k8s_image_pull_policy: str = "IfNotPresent"

    # Kubeconfig inference defaults
    k8s_default_region: str = "eu-west-1"
    k8s_default_provider: str = "kubernetes"
    k8s_unknown_node_count: int = 1  # Reported when nodes cannot be listed

    # Remote call retry policy (linear backoff: delay * attempt)
    k8s_retry_max_attempts: int = 3
    k8s_retry_delay_seconds: float = 1.0

    k8s_exec_timeout_seconds: int = 30
    k8s_log_tail_lines: int = 100

    class Config:
        # For Docker Compose: environment variables are passed directly
        # For native development: looks for .env in parent directory (project root)
        env_file = "../.env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False  # Allow lowercase env vars to match uppercase field names

@lru_cache()
def get_settings():
    return Settings()
