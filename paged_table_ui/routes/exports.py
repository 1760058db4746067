"""Blueprint for export jobs: start, poll, download and cancel."""

from __future__ import annotations

import io
import logging
from typing import List

from flask import Blueprint, jsonify, request, send_file

from ..config import EXPORT_FORMATS
from ..services.export import FallbackStep
from .tables import get_runtime, json_payload, session_or_404

bp = Blueprint("exports", __name__, url_prefix="/api")
logger = logging.getLogger(__name__)


def _parse_fallback(raw: object) -> List[FallbackStep]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("fallback must be a list")
    steps = []
    for entry in raw:
        try:
            steps.append(FallbackStep(str(entry)))
        except ValueError:
            raise ValueError(f"unknown fallback step: {entry}") from None
    return steps


@bp.route("/tables/<table_id>/exports", methods=["POST"])
def api_start_export(table_id: str):
    session, error = session_or_404(table_id)
    if error is not None:
        return error
    assert session is not None
    data = json_payload()
    export_format = str(data.get("format") or "").strip().lower()
    if export_format not in EXPORT_FORMATS:
        logger.warning("POST export for %s with unsupported format %r", table_id, export_format)
        return (
            jsonify({"error": f"format must be one of {', '.join(EXPORT_FORMATS)}"}),
            400,
        )
    try:
        fallback = _parse_fallback(data.get("fallback"))
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    runtime = get_runtime()
    job = runtime.start_export(table_id, export_format, fallback)
    logger.info(
        "Started %s export job %s for table %s (fallback=%s)",
        export_format,
        job.job_id,
        table_id,
        [step.value for step in fallback],
    )
    if data.get("wait"):
        runtime.wait_for_export(job.job_id)

    payload = job.describe(session.controller)
    payload["pollUrl"] = f"/api/exports/{job.job_id}"
    status_code = 202 if job.status in {"pending", "running"} else 200
    return jsonify(payload), status_code


@bp.route("/exports/<job_id>", methods=["GET"])
def api_export_status(job_id: str):
    runtime = get_runtime()
    job = runtime.get_export_job(job_id)
    if job is None:
        return jsonify({"error": "export job not found"}), 404
    session = runtime.get_session(job.session_id)
    payload = job.describe(session.controller if session else None)
    if job.status == "completed":
        payload["downloadUrl"] = f"/api/exports/{job.job_id}/download"
    return jsonify(payload)


@bp.route("/exports/<job_id>/download", methods=["GET"])
def api_export_download(job_id: str):
    job = get_runtime().get_export_job(job_id)
    if job is None:
        return jsonify({"error": "export job not found"}), 404
    if job.status != "completed" or job.result is None:
        return jsonify({"error": "export is not ready", "status": job.status}), 409

    artifact = job.result.artifact
    logger.info(
        "GET /api/exports/%s/download file=%s rows=%d bytes=%d",
        job_id,
        artifact.file_name,
        artifact.row_count,
        artifact.size,
    )
    return send_file(
        io.BytesIO(artifact.read()),
        mimetype=artifact.media_type,
        as_attachment=request.args.get("inline") is None,
        download_name=artifact.file_name,
    )


@bp.route("/exports/<job_id>/cancel", methods=["POST"])
def api_export_cancel(job_id: str):
    runtime = get_runtime()
    job = runtime.get_export_job(job_id)
    if job is None:
        return jsonify({"error": "export job not found"}), 404
    cancelled = runtime.cancel_export(job_id)
    return jsonify({"jobId": job_id, "cancelled": cancelled, "status": job.status})
