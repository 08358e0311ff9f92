"""
Queue operations and health over HTTP.
"""
from flask import current_app, jsonify, request

from syncbridge.api import api_bp
from syncbridge.config import SyncSettings
from syncbridge.errors import InvalidJobError, PayloadTooLargeError
from syncbridge.logging_config import get_logger
from syncbridge.models import Direction, JobStatus
from syncbridge.services.health import DEGRADED, get_health
from syncbridge.services.queue_repository import SyncQueueRepository

logger = get_logger(__name__)


def _repo():
    settings = SyncSettings.from_config(current_app.config)
    return SyncQueueRepository(
        max_payload_bytes=settings.max_payload_bytes,
        default_max_attempts=settings.max_attempts,
    )


@api_bp.route("/health", methods=["GET"])
def health():
    """Queue depth and breaker state. 503 while degraded so load balancers notice."""
    try:
        result = get_health(
            queue_repo=_repo(),
            registry=current_app.extensions["syncbridge"]["registry"],
            failed_ceiling=current_app.config.get("SYNC_FAILED_CEILING") or 100,
        )
        return jsonify(result), (503 if result["status"] == DEGRADED else 200)
    except Exception as e:
        logger.error("Error in /api/health", error=str(e), exc_info=True)
        return jsonify({"status": "error", "error": str(e)}), 500


@api_bp.route("/queue/stats", methods=["GET"])
def queue_stats():
    try:
        return jsonify(_repo().get_stats()), 200
    except Exception as e:
        logger.error("Error in /api/queue/stats", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/queue/jobs", methods=["GET"])
def list_jobs():
    """
    Paginated job list.

    Query params: page, per_page, status, module
    """
    status = request.args.get("status")
    if status and status not in {s.value for s in JobStatus}:
        return jsonify({"error": f"Invalid status: {status}"}), 400
    try:
        page = request.args.get("page", 1, type=int)
        per_page = request.args.get("per_page", 50, type=int)
        result = _repo().list_jobs(page=page, per_page=per_page, status=status, module=request.args.get("module"))
        return jsonify(result), 200
    except Exception as e:
        logger.error("Error in /api/queue/jobs", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/queue/jobs", methods=["POST"])
def enqueue_job():
    """
    Enqueue a job.

    Body: module, entity_type, action, direction, local_id, remote_id,
    payload, priority, debounce_seconds
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    try:
        job_id = _repo().enqueue(
            data.get("module"),
            data.get("entity_type"),
            action=data.get("action", "update"),
            direction=data.get("direction", Direction.OUTBOUND.value),
            local_id=data.get("local_id"),
            remote_id=data.get("remote_id"),
            payload=data.get("payload"),
            priority=data.get("priority", 5),
            debounce_seconds=data.get("debounce_seconds", 0),
        )
        return jsonify({"job_id": job_id}), 201
    except PayloadTooLargeError as e:
        return jsonify({"error": str(e), "size": e.size, "limit": e.limit}), 413
    except InvalidJobError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.error("Error enqueueing job", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/queue/jobs/<int:job_id>", methods=["GET"])
def get_job(job_id):
    try:
        job = _repo().get(job_id)
        if job is None:
            return jsonify({"error": f"Job {job_id} not found"}), 404
        data = job.to_dict()
        data["payload"] = job.payload
        data["rerun_requested"] = job.rerun_requested
        return jsonify(data), 200
    except Exception as e:
        logger.error("Error in /api/queue/jobs/<id>", job_id=job_id, error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/queue/jobs/<int:job_id>/cancel", methods=["POST"])
def cancel_job(job_id):
    """Only pending jobs can be cancelled; anything else is a 409."""
    try:
        repo = _repo()
        if repo.cancel(job_id):
            return jsonify({"job_id": job_id, "status": JobStatus.CANCELLED.value}), 200
        job = repo.get(job_id)
        if job is None:
            return jsonify({"error": f"Job {job_id} not found"}), 404
        return jsonify({"error": f"Job {job_id} is {job.status} and cannot be cancelled"}), 409
    except Exception as e:
        logger.error("Error cancelling job", job_id=job_id, error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500


@api_bp.route("/queue/retry", methods=["POST"])
def retry_failed():
    try:
        count = _repo().retry_failed(module=request.args.get("module"))
        return jsonify({"retried": count}), 200
    except Exception as e:
        logger.error("Error retrying failed jobs", error=str(e), exc_info=True)
        return jsonify({"error": str(e)}), 500
