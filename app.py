"""
Flask application factory for Measure Import.
"""
from flask import Flask, request
from pathlib import Path
import atexit
import logging
import os

from config import AppConfig, config as default_config
from extensions import cache

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Silence verbose HTTP client logging
logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_import_service(app_config: AppConfig, preview_store=None, clock=None):
    """
    Wire the import pipeline from explicit configuration values.

    Every component gets its dependencies here; nothing below reads the
    environment or the global config.
    """
    from activity_logging.audit import AuditLogger
    from import_engine.catalog import MeasureCatalog
    from import_engine.duplicates import DuplicateRule
    from import_engine.engine import RuleEngine
    from import_engine.preview_store import PreviewStore, utc_now
    from import_engine.reconcile import parse_merge_mode
    from import_engine.registry import ConfigRegistry
    from import_engine.service import ImportService
    from import_engine.validation import Validator
    from storage.service import StorageService

    imports = app_config.imports
    clock = clock or utc_now

    registry = ConfigRegistry(imports.config_dir, imports.registry_file)
    registry.load()

    catalog = MeasureCatalog.load(imports.rules_path)
    duplicate_rule = DuplicateRule()

    if preview_store is None:
        preview_store = PreviewStore(
            clock=clock,
            default_ttl=imports.preview_ttl,
            sweep_interval=imports.sweep_interval,
        )

    audit = AuditLogger(
        webhook_url=app_config.auth.audit_webhook_url,
        enabled=app_config.auth.can_post_audit_events(),
    )

    return ImportService(
        registry=registry,
        rule_engine=RuleEngine(catalog, duplicate_rule=duplicate_rule),
        validator=Validator(catalog, duplicate_rule=duplicate_rule),
        preview_store=preview_store,
        repository=StorageService(app_config.storage.base_dir, duplicate_rule=duplicate_rule),
        audit=audit,
        clock=clock,
        default_mode=parse_merge_mode(imports.default_merge_mode),
    )


def create_app(app_config: AppConfig = None, start_sweeper: bool = True, preview_store=None, clock=None):
    """
    Application factory pattern.

    Args:
        app_config: Configuration (defaults to the environment-derived one)
        start_sweeper: Start the preview sweeper thread
        preview_store: Pre-built PreviewStore (tests inject one with a fake clock)
        clock: Clock shared by the service and a store built here

    Returns:
        Configured Flask application instance
    """
    app_config = app_config or default_config
    app = Flask(__name__)

    # App configuration
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['MAX_CONTENT_LENGTH'] = app_config.imports.max_upload_mb * 1024 * 1024
    app.config['REQUIRE_AUTH'] = app_config.auth.require_auth
    app.config['SHOW_ERROR_DETAILS'] = app_config.auth.is_development()

    # Cache configuration
    # Use SimpleCache for single-worker deployments (current setup)
    # For multi-worker: switch to Redis or FileSystemCache (and externalize previews)
    app.config['CACHE_TYPE'] = 'SimpleCache'  # In-memory cache
    app.config['CACHE_DEFAULT_TIMEOUT'] = 600  # 10 minutes default

    cache.init_app(app)

    app.logger.info(f"[CACHE] Initialized {app.config['CACHE_TYPE']} with {app.config['CACHE_DEFAULT_TIMEOUT']}s timeout")

    # Ensure instance folder exists
    Path(app.instance_path).mkdir(parents=True, exist_ok=True)

    service = build_import_service(app_config, preview_store=preview_store, clock=clock)
    app.extensions['import_service'] = service

    if start_sweeper:
        service.preview_store.start()
        atexit.register(service.preview_store.stop)

    # Register blueprints
    from web.views import bp as imports_bp
    app.register_blueprint(imports_bp)

    @app.before_request
    def log_request_info():
        """Log request info."""
        from web.auth import request_actor

        actor = request_actor() if app.config['REQUIRE_AUTH'] else None
        if actor:
            app.logger.info(
                f"Request: {actor.name} ({actor.email}) -> "
                f"{request.method} {request.path}"
            )
        else:
            app.logger.info(f"Request: {request.method} {request.path}")

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(debug=True)
