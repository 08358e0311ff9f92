import atexit
import os

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, jsonify
from flask_cors import CORS

from syncbridge.logging_config import configure_logging, get_logger
from syncbridge.models import db

logger = get_logger(__name__)


def _run_queue(app, module=None):
    """Scheduled tick: one process() call inside an app context."""
    from syncbridge.services.sync_engine import build_sync_engine

    with app.app_context():
        try:
            processed = build_sync_engine(app).process(module=module)
            if processed:
                logger.info("Scheduled queue run finished", processed=processed, module=module)
        except Exception as e:
            logger.error("Scheduled queue run failed", module=module, error=str(e), exc_info=True)
        finally:
            db.session.remove()


def _run_cleanup(app):
    from syncbridge.services.queue_repository import SyncQueueRepository

    with app.app_context():
        try:
            SyncQueueRepository().cleanup(app.config.get("SYNC_CLEANUP_DAYS") or 7)
        except Exception as e:
            logger.error("Scheduled cleanup failed", error=str(e), exc_info=True)
        finally:
            db.session.remove()


def init_scheduler(app):
    """Start the periodic queue driver when SYNC_SCHEDULER_ENABLED is set."""

    if not app.config.get("SYNC_SCHEDULER_ENABLED"):
        logger.info("Scheduler disabled by configuration")
        return None

    # --- Prevent scheduler duplication under the debug reloader ---
    if app.debug and os.environ.get("WERKZEUG_RUN_MAIN") != "true":
        logger.info("Skipping scheduler startup in reloader parent process")
        return None

    # --- Configure scheduler ---
    executors = {"default": ThreadPoolExecutor(3)}
    scheduler = BackgroundScheduler(executors=executors, job_defaults={"coalesce": True, "max_instances": 1})
    interval = app.config.get("SYNC_INTERVAL_SECONDS") or 60

    scheduler.add_job(
        func=_run_queue,
        args=[app],
        trigger="interval",
        seconds=interval,
        id="process_queue",
        replace_existing=True,
    )

    # One job per module, each under its own run lock
    if app.config.get("SYNC_MODULE_SHARDING"):
        registry = app.extensions["syncbridge"]["registry"]
        for module in registry.enabled_modules():
            scheduler.add_job(
                func=_run_queue,
                args=[app, module],
                trigger="interval",
                seconds=interval,
                id=f"process_queue:{module}",
                replace_existing=True,
            )

    scheduler.add_job(
        func=_run_cleanup,
        args=[app],
        trigger="interval",
        days=1,
        id="cleanup",
        replace_existing=True,
    )

    # --- Heartbeat job to confirm scheduler alive ---
    scheduler.add_job(
        func=lambda: logger.info("Scheduler heartbeat: alive"),
        trigger="interval",
        minutes=30,
        id="heartbeat",
        replace_existing=True,
    )

    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

    logger.info("Scheduler started", interval_seconds=interval, sharding=bool(app.config.get("SYNC_MODULE_SHARDING")))
    return scheduler


def create_app(config_overrides=None, registry=None):
    """
    Application factory.

    Args:
        config_overrides: Mapping applied on top of the environment's config class
        registry: ModuleRegistry to use instead of one built from REMOTE_MODULES
    """
    # Import config after dotenv is loaded
    from syncbridge.adapters.registry import build_registry_from_config
    from syncbridge.config import get_config
    from syncbridge.db_config import configure_database
    from syncbridge.services.entity_map import EntityMapRepository

    config_class = get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(log_level=app.config.get("LOG_LEVEL", "INFO"), log_file=app.config.get("LOG_FILE"))

    # Configure database separately
    configure_database(app)

    logger.info(f"Starting application in {app.config.get('ENV', config_class.ENV)} environment")
    logger.info(f"Database URI: {app.config.get('SQLALCHEMY_DATABASE_URI', 'Not set')[:50]}...")

    # Get allowed origins from environment variable
    allowed_origins = app.config.get("CORS_ORIGINS", "*")
    if allowed_origins != "*":
        # Parse comma-separated list if provided
        allowed_origins = [origin.strip() for origin in allowed_origins.split(",")]

    CORS(app,
         resources={r"/api/*": {"origins": allowed_origins}},
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "OPTIONS"])

    db.init_app(app)

    app.extensions["syncbridge"] = {
        "registry": registry if registry is not None else build_registry_from_config(app.config),
        "entity_map": EntityMapRepository(),
    }

    from syncbridge.api import api_bp
    app.register_blueprint(api_bp, url_prefix="/api")

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Return unhandled errors as JSON"""
        logger.error("Unhandled exception", error=str(e), exc_info=True)

        if hasattr(e, 'code') and isinstance(e.code, int):
            status_code = e.code
        else:
            status_code = 500

        response = jsonify({
            "error": str(e),
            "message": "An error occurred processing your request"
        })
        response.status_code = status_code
        return response

    # Initialize scheduler safely
    try:
        init_scheduler(app)
    except Exception as e:
        logger.error("Failed to start scheduler", error=str(e))

    return app
