"""HTTP client for the GPU transcoding server."""

import asyncio
import json
import logging
import random
from pathlib import Path
from typing import Any, Optional

import httpx

from config import (
    GPU_DEFAULT_PRESET,
    GPU_THUMBNAIL_TIMESTAMP,
    GPU_TRANSCODER_MAX_RETRIES,
    GPU_TRANSCODER_TIMEOUT,
    GPU_TRANSCODER_URL,
)

logger = logging.getLogger(__name__)

# Retry configuration
DEFAULT_RETRY_BASE_DELAY = 1.0  # seconds
DEFAULT_RETRY_MAX_DELAY = 30.0  # seconds

# Timeout presets (seconds)
TIMEOUT_STATUS = 15.0  # Lightweight status/health calls

# Job states reported by the server queue
JOB_STATE_WAITING = "waiting"
JOB_STATE_ACTIVE = "active"
JOB_STATE_COMPLETED = "completed"
JOB_STATE_FAILED = "failed"


class GPUTranscoderError(Exception):
    """Raised when the transcoding server fails or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def _error_detail(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        detail = body.get("error") or body.get("message")
        return str(detail) if detail else None
    return None


class GPUTranscoderClient:
    """Async client for the GPU transcoding server's REST API."""

    def __init__(
        self,
        base_url: str = GPU_TRANSCODER_URL,
        timeout: float = GPU_TRANSCODER_TIMEOUT,
        max_retries: int = GPU_TRANSCODER_MAX_RETRIES,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            limits = httpx.Limits(
                max_connections=10,
                max_keepalive_connections=5,
                keepalive_expiry=30.0,
            )
            self._client = httpx.AsyncClient(timeout=self.timeout, limits=limits)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _is_retryable_error(self, exc: Exception) -> bool:
        """Check if an error is transient and should be retried."""
        if isinstance(exc, (httpx.TimeoutException, httpx.ConnectError, httpx.ReadError, httpx.WriteError)):
            return True
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code >= 500 or exc.response.status_code == 429
        return False

    def _build_error(self, operation: str, exc: Exception) -> GPUTranscoderError:
        message = f"GPU {operation} failed"
        status_code = None
        if isinstance(exc, httpx.HTTPStatusError):
            status_code = exc.response.status_code
            message += f" (HTTP {status_code})"
            detail = _error_detail(exc.response)
            message += f": {detail}" if detail else f": {exc}"
        else:
            message += f": {exc}"
        logger.error(message)
        return GPUTranscoderError(message, status_code)

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        **kwargs,
    ) -> Any:
        """Make a request with retry logic for transient errors."""
        client = await self._get_client()
        url = f"{self.base_url}{path}"
        retries = max_retries if max_retries is not None else self.max_retries
        req_timeout = timeout if timeout is not None else self.timeout

        last_error: Optional[Exception] = None

        for attempt in range(retries + 1):
            try:
                resp = await client.request(method, url, timeout=req_timeout, **kwargs)
                resp.raise_for_status()
                return resp.json()
            except (httpx.HTTPStatusError, httpx.RequestError) as e:
                last_error = e
                if not self._is_retryable_error(e):
                    raise self._build_error(operation, e)
            except ValueError as e:
                raise GPUTranscoderError(f"GPU {operation} failed: invalid JSON response ({e})")

            if attempt < retries:
                delay = min(DEFAULT_RETRY_BASE_DELAY * (2**attempt), DEFAULT_RETRY_MAX_DELAY)
                # Add jitter (±25%)
                delay = delay * (0.75 + random.random() * 0.5)
                logger.warning(f"GPU {operation} attempt {attempt + 1} failed ({last_error}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)

        raise self._build_error(operation, last_error)

    # ============ Jobs ============

    async def upload_and_transcode(
        self,
        file_path: Path,
        preset: str = GPU_DEFAULT_PRESET,
        output_path: Optional[str] = None,
        original_filename: Optional[str] = None,
        content_type: str = "video/mp4",
        metadata: Optional[dict] = None,
        generate_thumbnail: bool = True,
        thumbnail_timestamp: str = GPU_THUMBNAIL_TIMESTAMP,
    ) -> dict:
        """
        Send a local file to the server and queue it for transcoding.

        The multipart body is streamed from disk once; this call is not retried.

        Returns:
            Server response including jobId
        """
        data = {"preset": preset}
        if output_path:
            data["outputPath"] = output_path
        if generate_thumbnail:
            data.update(
                {
                    "generateThumbnail": "true",
                    "thumbnailTimestamp": str(thumbnail_timestamp),
                    "thumbnailFormat": "webp",
                    "thumbnailQuality": "85",
                    "thumbnailSize": "1280x720",
                }
            )
        if metadata:
            data["metadata"] = json.dumps(metadata, ensure_ascii=False)

        filename = original_filename or Path(file_path).name
        logger.info(f"Submitting {filename} to GPU server {self.base_url} with preset {preset}")
        with open(file_path, "rb") as fh:
            return await self._request(
                "POST",
                "/upload-and-transcode",
                "upload and transcode",
                max_retries=0,
                data=data,
                files={"video": (filename, fh, content_type)},
            )

    async def transcode(
        self,
        input_file: str,
        output_file: str,
        preset: str = GPU_DEFAULT_PRESET,
        metadata: Optional[dict] = None,
    ) -> dict:
        """Queue a file already visible to the server."""
        payload = {"inputFile": input_file, "outputFile": output_file, "preset": preset}
        if metadata:
            payload["metadata"] = metadata
        return await self._request("POST", "/transcode", "transcoding", json=payload)

    async def get_job_status(self, job_id: str) -> dict:
        return await self._request("GET", f"/job/{job_id}", "job status check", timeout=TIMEOUT_STATUS)

    async def get_job_progress(self, job_id: str) -> dict:
        """Lightweight progress, falling back to the full job status when unavailable."""
        try:
            return await self._request(
                "GET", f"/job/{job_id}/progress", "job progress check", timeout=TIMEOUT_STATUS, max_retries=0
            )
        except GPUTranscoderError:
            job = await self.get_job_status(job_id)
            return {
                "id": job.get("id", job_id),
                "progress": job.get("progress", 0),
                "state": job.get("state"),
                "status": "processing",
                "estimatedTimeRemaining": None,
            }

    async def cancel_job(self, job_id: str) -> dict:
        return await self._request("POST", f"/job/{job_id}/cancel", "job cancel", timeout=TIMEOUT_STATUS)

    # ============ Server ============

    async def get_system_status(self) -> dict:
        return await self._request("GET", "/status", "system status check", timeout=TIMEOUT_STATUS)

    async def get_presets(self) -> dict:
        return await self._request("GET", "/presets", "presets fetch", timeout=TIMEOUT_STATUS)

    async def get_queue_stats(self) -> dict:
        return await self._request("GET", "/queue/stats", "queue stats", timeout=TIMEOUT_STATUS)

    async def clear_queue(self) -> dict:
        return await self._request("DELETE", "/queue/clear", "queue clear", timeout=TIMEOUT_STATUS)

    async def health_check(self) -> dict:
        return await self._request("GET", "/health", "health check", timeout=TIMEOUT_STATUS, max_retries=0)

    async def is_server_available(self) -> bool:
        """True when the server answers and reports capacity for new jobs."""
        try:
            status = await self.get_system_status()
        except GPUTranscoderError as e:
            logger.warning(f"GPU server unavailable: {e.message}")
            return False
        capacity = status.get("capacity") or {}
        return bool(capacity.get("availableForNewJobs", True))

    async def get_video_metadata(self, file_path: str) -> Optional[dict]:
        """Probe a file on the server. Returns None on any error."""
        try:
            return await self._request(
                "POST", "/video/metadata", "metadata fetch", timeout=TIMEOUT_STATUS, json={"filePath": file_path}
            )
        except GPUTranscoderError:
            return None


_client: Optional[GPUTranscoderClient] = None


def get_gpu_client() -> GPUTranscoderClient:
    global _client
    if _client is None:
        _client = GPUTranscoderClient()
    return _client


async def close_gpu_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None
