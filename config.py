"""
Centralized configuration for the Measure Import application.

Environment variables are read here once; ``create_app`` hands explicit values
to every component. Declarative mappings (system profiles, status rules) live
as JSON documents in ``import_config/``.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional
import os


@dataclass
class ImportConfig:
    """Where import configuration lives and how previews behave."""
    config_dir: Path = field(default_factory=lambda: Path(os.getenv('IMPORT_CONFIG_DIR') or Path(__file__).resolve().parent / 'import_config'))
    registry_file: str = field(default_factory=lambda: os.getenv('IMPORT_REGISTRY_FILE', 'systems.json'))
    rules_file: str = field(default_factory=lambda: os.getenv('IMPORT_RULES_FILE', 'measure_rules.json'))

    # Preview cache lifetime and sweep period
    preview_ttl_minutes: int = field(default_factory=lambda: int(os.getenv('PREVIEW_TTL_MINUTES', '30')))
    sweep_interval_minutes: float = field(default_factory=lambda: float(os.getenv('PREVIEW_SWEEP_MINUTES', '5')))

    default_merge_mode: str = field(default_factory=lambda: os.getenv('DEFAULT_IMPORT_MODE', 'merge'))
    max_upload_mb: int = field(default_factory=lambda: int(os.getenv('MAX_UPLOAD_MB', '10')))

    @property
    def rules_path(self) -> Path:
        return self.config_dir / self.rules_file

    @property
    def preview_ttl(self) -> timedelta:
        return timedelta(minutes=self.preview_ttl_minutes)

    @property
    def sweep_interval(self) -> timedelta:
        return timedelta(minutes=self.sweep_interval_minutes)


@dataclass
class StorageConfig:
    """Configuration for data persistence."""
    base_dir: Path = field(default_factory=lambda: Path(os.getenv('STORAGE_DIR', 'instance/data')))


@dataclass
class AuthConfig:
    """Azure App Service Authentication and audit configuration."""
    # Environment detection
    environment: str = field(default_factory=lambda: os.getenv('APP_ENVIRONMENT', 'Local'))

    # Authentication settings
    require_auth: bool = field(default_factory=lambda: os.getenv('REQUIRE_AUTH', 'true').lower() == 'true')

    # Audit webhook settings
    enable_audit_webhook: bool = field(default_factory=lambda: os.getenv('ENABLE_AUDIT_WEBHOOK', 'false').lower() == 'true')
    audit_webhook_url: Optional[str] = field(default_factory=lambda: os.getenv('AUDIT_WEBHOOK_URL'))

    def is_development(self) -> bool:
        return self.environment.lower() in ('local', 'development', 'dev')

    def can_post_audit_events(self) -> bool:
        """Check if the audit webhook is enabled and configured."""
        return self.enable_audit_webhook and bool(self.audit_webhook_url)


@dataclass
class AppConfig:
    """Main application configuration container."""
    imports: ImportConfig = field(default_factory=ImportConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)


# Global configuration instance
config = AppConfig()
