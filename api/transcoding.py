"""
Transcode job bookkeeping on top of the GPU transcoder client.

A job row is written for every upload: PROCESSING when the GPU server accepted
the file, FAILED (with the reason) when the server was unreachable or refused
it. Job status is pulled from the GPU server whenever a client polls
GET /api/transcode/job/{job_id}; there is no background poller.

A failed or cancelled transcode leaves the video COMPLETED so the original
upload stays playable.
"""

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Optional

import sqlalchemy as sa

from api.common import ensure_utc, isoformat
from api.database import database, transcode_jobs, videos
from api.enums import TranscodeJobStatus, VideoStatus
from api.errors import ERROR_MESSAGES, sanitize_error_message, truncate_error
from api.gpu_transcoder import (
    JOB_STATE_ACTIVE,
    JOB_STATE_COMPLETED,
    JOB_STATE_FAILED,
    JOB_STATE_WAITING,
    GPUTranscoderError,
    get_gpu_client,
)
from config import ERROR_DETAIL_MAX_LENGTH, GPU_DEFAULT_PRESET

logger = logging.getLogger(__name__)

CONVERTED_URL_PREFIX = "/videos/converted"
THUMBNAIL_URL_PREFIX = "/videos/thumbnails"
CANCELLED_MESSAGE = "ユーザーによってキャンセルされました"
FAILED_MESSAGE = "変換に失敗しました"

# Estimated progress while the server reports 0% for an active job
ESTIMATED_PERCENT_PER_MINUTE = 10
ESTIMATED_PROGRESS_CAP = 90

TERMINAL_STATUSES = (TranscodeJobStatus.COMPLETED.value, TranscodeJobStatus.CANCELLED.value)


def converted_output_name(video_public_id: str) -> str:
    return f"{video_public_id}_converted.mp4"


def serialize_job(row) -> dict:
    return {
        "id": row["id"],
        "jobId": row["job_id"],
        "videoId": row["video_id"],
        "inputFile": row["input_file"],
        "outputFile": row["output_file"],
        "preset": row["preset"],
        "status": row["status"],
        "progress": row["progress"] or 0,
        "errorMessage": row["error_message"],
        "startedAt": isoformat(row["started_at"]),
        "completedAt": isoformat(row["completed_at"]),
        "createdAt": isoformat(row["created_at"]),
    }


async def _insert_job(
    job_id: str,
    video_pk: int,
    input_file: str,
    output_file: Optional[str],
    preset: str,
    status: str,
    error_message: Optional[str] = None,
) -> None:
    now = datetime.now(timezone.utc)
    await database.execute(
        transcode_jobs.insert().values(
            job_id=job_id,
            video_id=video_pk,
            input_file=input_file,
            output_file=output_file,
            preset=preset,
            status=status,
            progress=0,
            error_message=error_message,
            created_at=now,
            updated_at=now,
        )
    )


async def submit_transcode(
    video_pk: int,
    video_public_id: str,
    title: str,
    upload_path: Path,
    original_filename: Optional[str],
    content_type: Optional[str],
    preset: Optional[str] = None,
) -> dict:
    """
    Hand an uploaded file to the GPU server and record the job.

    Never raises for GPU problems: they are recorded as a FAILED job and the
    video stays playable from the original file.

    Returns:
        {"jobId": ..., "status": ...}
    """
    preset = preset or GPU_DEFAULT_PRESET
    output_path = converted_output_name(video_public_id)
    client = get_gpu_client()

    if not await client.is_server_available():
        job_id = f"unavailable_{video_public_id}_{uuid.uuid4().hex[:8]}"
        logger.warning(f"GPU server unavailable, skipping transcode for video {video_public_id}")
        await _insert_job(
            job_id, video_pk, str(upload_path), None, "N/A",
            TranscodeJobStatus.FAILED.value, ERROR_MESSAGES["transcoder_unavailable"],
        )
        await _set_video_status(video_pk, VideoStatus.COMPLETED.value)
        return {"jobId": job_id, "status": TranscodeJobStatus.FAILED.value}

    try:
        result = await client.upload_and_transcode(
            upload_path,
            preset=preset,
            output_path=output_path,
            original_filename=original_filename,
            content_type=content_type or "video/mp4",
            metadata={"title": title, "videoId": video_public_id, "originalFilename": original_filename},
        )
    except GPUTranscoderError as e:
        job_id = f"failed_{video_public_id}_{uuid.uuid4().hex[:8]}"
        message = truncate_error(f"GPU変換処理に失敗しました: {e.message}", ERROR_DETAIL_MAX_LENGTH)
        await _insert_job(
            job_id, video_pk, str(upload_path), None, "N/A", TranscodeJobStatus.FAILED.value, message
        )
        await _set_video_status(video_pk, VideoStatus.COMPLETED.value)
        return {"jobId": job_id, "status": TranscodeJobStatus.FAILED.value}

    job_id = str(result.get("jobId") or "")
    if not job_id:
        job_id = f"failed_{video_public_id}_{uuid.uuid4().hex[:8]}"
        await _insert_job(
            job_id, video_pk, str(upload_path), None, preset,
            TranscodeJobStatus.FAILED.value, "GPU変換サーバーからジョブIDが返されませんでした",
        )
        await _set_video_status(video_pk, VideoStatus.COMPLETED.value)
        return {"jobId": job_id, "status": TranscodeJobStatus.FAILED.value}

    await _insert_job(
        job_id, video_pk, str(upload_path), output_path, result.get("preset") or preset,
        TranscodeJobStatus.PROCESSING.value,
    )
    await _set_video_status(video_pk, VideoStatus.PROCESSING.value)
    logger.info(f"Transcode job {job_id} submitted for video {video_public_id}")
    return {"jobId": job_id, "status": TranscodeJobStatus.PROCESSING.value}


async def _set_video_status(video_pk: int, status: str, **values) -> None:
    await database.execute(
        videos.update()
        .where(videos.c.id == video_pk)
        .values(status=status, updated_at=datetime.now(timezone.utc), **values)
    )


async def get_job_with_owner(job_id: str):
    """Job row joined with the video's uploader and public id, or None."""
    return await database.fetch_one(
        sa.select(
            transcode_jobs,
            videos.c.uploader_id,
            videos.c.video_id.label("video_public_id"),
            videos.c.thumbnail_url.label("video_thumbnail_url"),
        )
        .select_from(transcode_jobs.join(videos, transcode_jobs.c.video_id == videos.c.id))
        .where(transcode_jobs.c.job_id == job_id)
    )


def _estimated_progress(job, now: datetime) -> int:
    started = ensure_utc(job["started_at"] or job["created_at"]) or now
    elapsed_minutes = (now - started).total_seconds() / 60
    return min(int(elapsed_minutes * ESTIMATED_PERCENT_PER_MINUTE), ESTIMATED_PROGRESS_CAP)


async def _apply_completed(job, gpu_status: dict, now: datetime) -> None:
    completed = gpu_status.get("completed") or {}
    await database.execute(
        transcode_jobs.update()
        .where(transcode_jobs.c.id == job["id"])
        .values(status=TranscodeJobStatus.COMPLETED.value, progress=100, completed_at=now, updated_at=now)
    )

    output_file = completed.get("outputFile") or job["output_file"]
    file_name = PurePosixPath(output_file).name if output_file else None
    if file_name and "_converted." not in file_name:
        file_name = converted_output_name(job["video_public_id"])

    values = {}
    if file_name:
        values["converted_file_path"] = f"{CONVERTED_URL_PREFIX}/{file_name}"
    thumbnail_path = completed.get("thumbnailPath")
    if thumbnail_path and not job["video_thumbnail_url"]:
        values["thumbnail_url"] = f"{THUMBNAIL_URL_PREFIX}/{PurePosixPath(thumbnail_path).name}"
    duration = (completed.get("outputMetadata") or {}).get("duration")
    if duration:
        values["duration"] = float(round(float(duration)))

    await _set_video_status(job["video_id"], VideoStatus.COMPLETED.value, **values)
    logger.info(f"Transcode job {job['job_id']} completed for video {job['video_public_id']}")


async def _apply_failed(job, gpu_status: dict, now: datetime) -> None:
    message = FAILED_MESSAGE
    returnvalue = gpu_status.get("returnvalue") or {}
    if isinstance(returnvalue, dict) and returnvalue.get("status") == "failed":
        message = returnvalue.get("error") or "変換処理中にエラーが発生しました"
    elif gpu_status.get("failedReason"):
        message = sanitize_error_message(str(gpu_status["failedReason"]), context=f"job_id={job['job_id']}")

    await database.execute(
        transcode_jobs.update()
        .where(transcode_jobs.c.id == job["id"])
        .values(
            status=TranscodeJobStatus.FAILED.value,
            completed_at=now,
            error_message=truncate_error(message, ERROR_DETAIL_MAX_LENGTH),
            updated_at=now,
        )
    )
    await _set_video_status(job["video_id"], VideoStatus.COMPLETED.value)
    logger.warning(f"Transcode job {job['job_id']} failed: {message}")


async def _apply_progress(job, gpu_status: dict, now: datetime) -> None:
    client = get_gpu_client()
    progress = gpu_status.get("progress") or 0
    try:
        progress_info = await client.get_job_progress(job["job_id"])
        if progress_info.get("progress") is not None:
            progress = progress_info["progress"]
    except GPUTranscoderError as e:
        logger.debug(f"Progress lookup failed for job {job['job_id']}: {e.message}")

    try:
        progress = int(float(progress))
    except (TypeError, ValueError):
        progress = 0
    state = gpu_status.get("state")
    if progress == 0 and state == JOB_STATE_ACTIVE:
        progress = _estimated_progress(job, now)

    values = {"progress": max(0, min(progress, 100)), "updated_at": now}
    if state == JOB_STATE_ACTIVE and job["status"] == TranscodeJobStatus.PENDING.value:
        values["status"] = TranscodeJobStatus.PROCESSING.value
        values["started_at"] = now
    await database.execute(transcode_jobs.update().where(transcode_jobs.c.id == job["id"]).values(**values))


async def refresh_job(job) -> dict:
    """
    Pull the job's state from the GPU server and fold it into the database.

    Returns:
        {"job": serialized job, "gpuStatus": raw server status}

    Raises:
        GPUTranscoderError: When the server cannot be queried
    """
    gpu_status = await get_gpu_client().get_job_status(job["job_id"])
    state = gpu_status.get("state")
    now = datetime.now(timezone.utc)

    if state == JOB_STATE_COMPLETED and job["status"] != TranscodeJobStatus.COMPLETED.value:
        await _apply_completed(job, gpu_status, now)
    elif state == JOB_STATE_FAILED and job["status"] != TranscodeJobStatus.FAILED.value:
        await _apply_failed(job, gpu_status, now)
    elif state in (JOB_STATE_ACTIVE, JOB_STATE_WAITING):
        await _apply_progress(job, gpu_status, now)

    updated = await database.fetch_one(sa.select(transcode_jobs).where(transcode_jobs.c.id == job["id"]))
    return {"job": serialize_job(updated), "gpuStatus": gpu_status}


async def cancel_job(job) -> dict:
    """
    Cancel a job that has not finished.

    The GPU server is asked to stop the job; a failure there is logged and the
    local record is cancelled regardless.

    Raises:
        ValueError: When the job is already completed or cancelled
    """
    if job["status"] in TERMINAL_STATUSES:
        label = "完了" if job["status"] == TranscodeJobStatus.COMPLETED.value else "キャンセル"
        raise ValueError(f"変換ジョブは既に{label}済みです")

    try:
        await get_gpu_client().cancel_job(job["job_id"])
    except GPUTranscoderError as e:
        logger.warning(f"GPU server could not cancel job {job['job_id']}: {e.message}")

    now = datetime.now(timezone.utc)
    await database.execute(
        transcode_jobs.update()
        .where(transcode_jobs.c.id == job["id"])
        .values(
            status=TranscodeJobStatus.CANCELLED.value,
            completed_at=now,
            error_message=CANCELLED_MESSAGE,
            updated_at=now,
        )
    )
    await _set_video_status(job["video_id"], VideoStatus.COMPLETED.value)
    updated = await database.fetch_one(sa.select(transcode_jobs).where(transcode_jobs.c.id == job["id"]))
    return serialize_job(updated)
