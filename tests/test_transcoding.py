"""Tests for transcode job bookkeeping."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import sqlalchemy as sa

from api.database import transcode_jobs, videos
from api.enums import TranscodeJobStatus, VideoStatus
from api.gpu_transcoder import GPUTranscoderError
from api.transcoding import (
    CANCELLED_MESSAGE,
    cancel_job,
    converted_output_name,
    get_job_with_owner,
    refresh_job,
    submit_transcode,
)


def _gpu(available=True, **methods):
    client = MagicMock()
    client.is_server_available = AsyncMock(return_value=available)
    client.upload_and_transcode = AsyncMock(return_value={"jobId": "gpu-job-1", "preset": "h264-720p"})
    client.get_job_status = AsyncMock(return_value={"state": "waiting", "progress": 0})
    client.get_job_progress = AsyncMock(return_value={"progress": 0})
    client.cancel_job = AsyncMock(return_value={"success": True})
    for name, value in methods.items():
        setattr(client, name, value)
    return client


async def _video_row(database, video_pk):
    return await database.fetch_one(sa.select(videos).where(videos.c.id == video_pk))


@pytest.fixture
def uploading_video(make_video, curator_user, tmp_path):
    upload = tmp_path / "upload.mp4"
    upload.write_bytes(b"fake video")
    video = make_video(curator_user, status=VideoStatus.UPLOADING.value)
    video["upload_path"] = upload
    return video


async def _submit(video, gpu):
    with patch("api.transcoding.get_gpu_client", return_value=gpu):
        return await submit_transcode(
            video["id"], video["video_id"], video["title"], video["upload_path"], "lecture.mp4", "video/mp4"
        )


class TestSubmitTranscode:
    """Tests for handing uploads to the GPU server."""

    def test_converted_output_name(self):
        assert converted_output_name("abc123") == "abc123_converted.mp4"

    @pytest.mark.asyncio
    async def test_accepted_job(self, test_database, uploading_video):
        gpu = _gpu()

        result = await _submit(uploading_video, gpu)

        assert result == {"jobId": "gpu-job-1", "status": TranscodeJobStatus.PROCESSING.value}
        job = await get_job_with_owner("gpu-job-1")
        assert job["status"] == TranscodeJobStatus.PROCESSING.value
        assert job["output_file"] == converted_output_name(uploading_video["video_id"])
        assert job["preset"] == "h264-720p"
        assert job["uploader_id"] == uploading_video["uploader_id"]
        video = await _video_row(test_database, uploading_video["id"])
        assert video["status"] == VideoStatus.PROCESSING.value

        kwargs = gpu.upload_and_transcode.await_args.kwargs
        assert kwargs["output_path"] == converted_output_name(uploading_video["video_id"])
        assert kwargs["metadata"]["videoId"] == uploading_video["video_id"]

    @pytest.mark.asyncio
    async def test_server_unavailable(self, test_database, uploading_video):
        gpu = _gpu(available=False)

        result = await _submit(uploading_video, gpu)

        assert result["status"] == TranscodeJobStatus.FAILED.value
        assert result["jobId"].startswith(f"unavailable_{uploading_video['video_id']}_")
        gpu.upload_and_transcode.assert_not_awaited()
        video = await _video_row(test_database, uploading_video["id"])
        assert video["status"] == VideoStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_upload_error_recorded(self, test_database, uploading_video):
        gpu = _gpu(upload_and_transcode=AsyncMock(side_effect=GPUTranscoderError("GPU upload failed", 500)))

        result = await _submit(uploading_video, gpu)

        assert result["jobId"].startswith("failed_")
        job = await get_job_with_owner(result["jobId"])
        assert job["status"] == TranscodeJobStatus.FAILED.value
        assert "GPU upload failed" in job["error_message"]
        assert (await _video_row(test_database, uploading_video["id"]))["status"] == VideoStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_missing_job_id(self, test_database, uploading_video):
        gpu = _gpu(upload_and_transcode=AsyncMock(return_value={"message": "queued"}))

        result = await _submit(uploading_video, gpu)

        assert result["status"] == TranscodeJobStatus.FAILED.value
        job = await get_job_with_owner(result["jobId"])
        assert "ジョブID" in job["error_message"]


class TestRefreshJob:
    """Tests for folding GPU status into the job row."""

    @pytest.mark.asyncio
    async def test_completed(self, test_database, uploading_video):
        await _submit(uploading_video, _gpu())
        gpu = _gpu(
            get_job_status=AsyncMock(
                return_value={
                    "state": "completed",
                    "completed": {
                        "outputFile": "/data/out/" + converted_output_name(uploading_video["video_id"]),
                        "thumbnailPath": "/data/thumbs/abc.webp",
                        "outputMetadata": {"duration": 301.6},
                    },
                }
            )
        )
        job = await get_job_with_owner("gpu-job-1")

        with patch("api.transcoding.get_gpu_client", return_value=gpu):
            result = await refresh_job(job)

        assert result["job"]["status"] == TranscodeJobStatus.COMPLETED.value
        assert result["job"]["progress"] == 100
        assert result["gpuStatus"]["state"] == "completed"
        video = await _video_row(test_database, uploading_video["id"])
        assert video["status"] == VideoStatus.COMPLETED.value
        assert video["converted_file_path"] == (
            f"/videos/converted/{converted_output_name(uploading_video['video_id'])}"
        )
        assert video["thumbnail_url"] == "/videos/thumbnails/abc.webp"
        assert video["duration"] == 302.0

    @pytest.mark.asyncio
    async def test_failed_with_reason(self, test_database, uploading_video):
        await _submit(uploading_video, _gpu())
        gpu = _gpu(get_job_status=AsyncMock(return_value={"state": "failed", "failedReason": "codec error"}))
        job = await get_job_with_owner("gpu-job-1")

        with patch("api.transcoding.get_gpu_client", return_value=gpu):
            result = await refresh_job(job)

        assert result["job"]["status"] == TranscodeJobStatus.FAILED.value
        assert result["job"]["errorMessage"] == "codec error"
        # Original upload stays playable
        assert (await _video_row(test_database, uploading_video["id"]))["status"] == VideoStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_active_progress(self, test_database, uploading_video):
        await _submit(uploading_video, _gpu())
        gpu = _gpu(
            get_job_status=AsyncMock(return_value={"state": "active", "progress": 10}),
            get_job_progress=AsyncMock(return_value={"progress": 55.5}),
        )
        job = await get_job_with_owner("gpu-job-1")

        with patch("api.transcoding.get_gpu_client", return_value=gpu):
            result = await refresh_job(job)

        assert result["job"]["progress"] == 55

    @pytest.mark.asyncio
    async def test_zero_progress_is_estimated(self, test_database, uploading_video):
        await _submit(uploading_video, _gpu())
        five_minutes_ago = datetime.now(timezone.utc) - timedelta(minutes=5)
        await test_database.execute(
            transcode_jobs.update()
            .where(transcode_jobs.c.job_id == "gpu-job-1")
            .values(started_at=five_minutes_ago)
        )
        gpu = _gpu(get_job_status=AsyncMock(return_value={"state": "active", "progress": 0}))
        job = await get_job_with_owner("gpu-job-1")

        with patch("api.transcoding.get_gpu_client", return_value=gpu):
            result = await refresh_job(job)

        assert 45 <= result["job"]["progress"] <= 55

    @pytest.mark.asyncio
    async def test_server_error_propagates(self, test_database, uploading_video):
        await _submit(uploading_video, _gpu())
        gpu = _gpu(get_job_status=AsyncMock(side_effect=GPUTranscoderError("down")))
        job = await get_job_with_owner("gpu-job-1")

        with patch("api.transcoding.get_gpu_client", return_value=gpu):
            with pytest.raises(GPUTranscoderError):
                await refresh_job(job)


class TestCancelJob:
    @pytest.mark.asyncio
    async def test_cancel_processing_job(self, test_database, uploading_video):
        await _submit(uploading_video, _gpu())
        gpu = _gpu()
        job = await get_job_with_owner("gpu-job-1")

        with patch("api.transcoding.get_gpu_client", return_value=gpu):
            result = await cancel_job(job)

        gpu.cancel_job.assert_awaited_once_with("gpu-job-1")
        assert result["status"] == TranscodeJobStatus.CANCELLED.value
        assert result["errorMessage"] == CANCELLED_MESSAGE
        assert (await _video_row(test_database, uploading_video["id"]))["status"] == VideoStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_gpu_cancel_failure_still_cancels(self, test_database, uploading_video):
        await _submit(uploading_video, _gpu())
        gpu = _gpu(cancel_job=AsyncMock(side_effect=GPUTranscoderError("gone", 404)))
        job = await get_job_with_owner("gpu-job-1")

        with patch("api.transcoding.get_gpu_client", return_value=gpu):
            result = await cancel_job(job)

        assert result["status"] == TranscodeJobStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_cannot_cancel_twice(self, test_database, uploading_video):
        await _submit(uploading_video, _gpu())
        job = await get_job_with_owner("gpu-job-1")
        with patch("api.transcoding.get_gpu_client", return_value=_gpu()):
            await cancel_job(job)
            job = await get_job_with_owner("gpu-job-1")

            with pytest.raises(ValueError, match="キャンセル済み"):
                await cancel_job(job)
