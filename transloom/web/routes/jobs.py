"""Translation job API routes."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

from flask import Blueprint, current_app, jsonify, request

from transloom import language_codes as lc
from transloom.core.models import SegmentStatus
from transloom.errors import FormatError, PersistenceError, TransloomError
from transloom.logger import get_logger

jobs_bp = Blueprint("jobs", __name__)
logger = get_logger(__name__)

EXTENSION_KEY = "transloom.orchestrator"

REQUIRED_FIELDS = ("source_path", "source_lang", "target_lang")
OPTIONAL_FIELDS = ("output_path", "source_format", "target_format")


def current_orchestrator():
    return current_app.extensions[EXTENSION_KEY]


def error_payload(error: TransloomError) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"error": str(error), "code": error.code}
    if error.details:
        payload["details"] = error.details
    return payload


def _validate_job_request(data: Dict[str, Any]) -> List[str]:
    problems = []
    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            problems.append(f"'{field}' is required")
    for field in OPTIONAL_FIELDS:
        value = data.get(field)
        if value is not None and (not isinstance(value, str) or not value.strip()):
            problems.append(f"'{field}' must be a non-empty string")
    return problems


@jobs_bp.post("")
def submit_job():
    """Create a translation job and start it in the background."""
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    problems = _validate_job_request(data)
    if problems:
        return jsonify({"error": "; ".join(problems), "code": "invalid_request"}), 400

    if lc.languages_match(data["source_lang"], data["target_lang"], strict=True):
        return jsonify({
            "error": "Source and target language are the same",
            "code": "same_language",
        }), 400

    source_path = data["source_path"].strip()
    if not Path(source_path).is_file():
        logger.warning("Source document %s not found", source_path)
        return jsonify({
            "error": f"Source document not found: {source_path}",
            "code": "source_not_found",
        }), 400

    orchestrator = current_orchestrator()
    try:
        job_id = orchestrator.submit_job(
            source_path,
            data["source_lang"].strip(),
            data["target_lang"].strip(),
            output_path=data.get("output_path"),
            source_format=data.get("source_format"),
            target_format=data.get("target_format"),
            background=True,
        )
    except FormatError as e:
        logger.warning("Rejected job for %s: %s", source_path, e)
        return jsonify(error_payload(e)), 400
    except PersistenceError as e:
        logger.error("Could not create job: %s", e)
        return jsonify(error_payload(e)), 503

    return jsonify({"job_id": job_id}), 202


@jobs_bp.get("")
def list_jobs():
    statuses = current_orchestrator().list_job_statuses()
    return jsonify({"jobs": [status.to_dict() for status in statuses]})


@jobs_bp.get("/<job_id>")
def get_job_status(job_id: str):
    return jsonify(current_orchestrator().get_job_status(job_id).to_dict())


@jobs_bp.get("/<job_id>/segments")
def list_segments(job_id: str):
    """Segment rows of a job, optionally filtered with ?status=pending,failed"""
    orchestrator = current_orchestrator()
    orchestrator.store.require_job(job_id)

    statuses = None
    status_arg = request.args.get("status")
    if status_arg:
        try:
            statuses = [SegmentStatus(value.strip()) for value in status_arg.split(",") if value.strip()]
        except ValueError:
            return jsonify({
                "error": f"Unknown segment status in '{status_arg}'",
                "code": "invalid_request",
                "details": {"allowed": [status.value for status in SegmentStatus]},
            }), 400

    segments = orchestrator.store.list_segments(job_id, statuses)
    return jsonify({"job_id": job_id, "segments": [segment.to_dict() for segment in segments]})


@jobs_bp.post("/<job_id>/cancel")
def cancel_job(job_id: str):
    orchestrator = current_orchestrator()
    cancelled = orchestrator.cancel_job(job_id)
    status = orchestrator.get_job_status(job_id).to_dict()
    if not cancelled:
        return jsonify({
            "error": f"Job {job_id} is already {status['state']}",
            "code": "job_finished",
            "status": status,
        }), 409
    return jsonify({"cancelled": True, "status": status})


@jobs_bp.delete("/<job_id>")
def delete_job(job_id: str):
    if not current_orchestrator().delete_job(job_id):
        return jsonify({"error": f"Job {job_id} not found", "code": "job_not_found"}), 404
    return jsonify({"deleted": True, "job_id": job_id})
