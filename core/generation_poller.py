"""
core/generation_poller.py: 图片生成服务客户端（Replicate predictions API）

轮询由客户端重复请求任务状态驱动，这里不循环也不 sleep。
下载限制大小，超限或任何网络错误都抛 DownloadFailed（可重试）。
"""

import mimetypes
import os
from typing import Any, Optional, Tuple
from urllib.parse import urlparse

import requests
from pydantic import BaseModel

from core.config import cfg
from core.errors import DownloadFailed, GatewayRejected, GatewayUnreachable, NotConfigured, NotFound
from core.log import get_logger

logger = get_logger(__name__)

DEFAULT_API_BASE = "https://api.replicate.com/v1"

JOB_STATUS_STARTING = "starting"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_SUCCEEDED = "succeeded"
JOB_STATUS_FAILED = "failed"
JOB_STATUS_CANCELED = "canceled"
JOB_TERMINAL_STATUSES = {JOB_STATUS_SUCCEEDED, JOB_STATUS_FAILED, JOB_STATUS_CANCELED}

DEFAULT_MAX_ARTIFACT_BYTES = 20 * 1024 * 1024


class ProviderJob(BaseModel):
    id: str
    status: str
    output_ref: Optional[str] = None
    error: Optional[str] = None


def _first_output(output: Any) -> Optional[str]:
    if isinstance(output, list):
        for item in output:
            if isinstance(item, str) and item.strip():
                return item.strip()
        return None
    if isinstance(output, str) and output.strip():
        return output.strip()
    return None


def guess_content_type(url: str, header_value: str = "") -> str:
    value = str(header_value or "").split(";")[0].strip().lower()
    if value.startswith("image/"):
        return value
    guessed, _ = mimetypes.guess_type(urlparse(url).path)
    return guessed or "image/png"


def extension_for(output_ref: str, content_type: str = "") -> str:
    _, ext = os.path.splitext(urlparse(output_ref or "").path)
    ext = ext.lower()
    if ext and len(ext) <= 5:
        return ext
    return mimetypes.guess_extension(content_type or "image/png") or ".png"


class GenerationPoller:
    def __init__(
        self,
        api_token: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        download_timeout: Optional[float] = None,
        max_artifact_bytes: Optional[int] = None,
    ):
        self.api_token = api_token or os.environ.get("REPLICATE_API_TOKEN") or cfg.get("ai.provider_token", "")
        self.api_base = (api_base or cfg.get("ai.provider_api_base", DEFAULT_API_BASE)).rstrip("/")
        self.timeout = float(timeout or cfg.get("ai.provider_timeout_seconds", 15) or 15)
        self.download_timeout = float(download_timeout or cfg.get("ai.download_timeout_seconds", 30) or 30)
        self.max_artifact_bytes = int(max_artifact_bytes or cfg.get("ai.max_artifact_bytes", DEFAULT_MAX_ARTIFACT_BYTES))

    def check_status(self, job_id: str) -> ProviderJob:
        if not self.api_token:
            raise NotConfigured("generation provider token missing")
        url = f"{self.api_base}/predictions/{job_id}"
        try:
            resp = requests.get(
                url,
                headers={"Authorization": f"Token {self.api_token}"},
                timeout=(5, self.timeout),
            )
        except requests.RequestException as e:
            logger.warning("provider status request failed: job_id=%s err=%s", job_id, e)
            raise GatewayUnreachable("generation provider unreachable", diagnostic=str(e)[:300])

        if resp.status_code == 404:
            raise NotFound("generation job not found")
        if resp.status_code in (401, 403):
            raise GatewayRejected("generation provider rejected credentials", diagnostic=str(resp.status_code))
        if resp.status_code != 200:
            raise GatewayUnreachable("failed to check generation status", diagnostic=f"status={resp.status_code}")
        try:
            data = resp.json()
        except ValueError:
            raise GatewayUnreachable("malformed provider response")
        if not isinstance(data, dict):
            raise GatewayUnreachable("malformed provider response")

        status = str(data.get("status") or "").strip().lower() or JOB_STATUS_PROCESSING
        error = data.get("error")
        output_ref = _first_output(data.get("output")) if status == JOB_STATUS_SUCCEEDED else None
        if status == JOB_STATUS_SUCCEEDED and not output_ref:
            status = JOB_STATUS_FAILED
            error = error or "provider returned no output"
        return ProviderJob(
            id=str(data.get("id") or job_id),
            status=status,
            output_ref=output_ref,
            error=str(error)[:1000] if error else None,
        )

    def download(self, output_ref: str) -> Tuple[bytes, str]:
        """下载已完成任务的产物；任何失败都是 DownloadFailed，调用方可重试。"""
        try:
            resp = requests.get(output_ref, stream=True, timeout=(5, self.download_timeout))
        except requests.RequestException as e:
            raise DownloadFailed("artifact download failed", diagnostic=str(e)[:300])
        try:
            if resp.status_code != 200:
                raise DownloadFailed("artifact download failed", diagnostic=f"status={resp.status_code}")
            buf = bytearray()
            for chunk in resp.iter_content(chunk_size=64 * 1024):
                buf.extend(chunk)
                if len(buf) > self.max_artifact_bytes:
                    raise DownloadFailed("artifact exceeds size limit", diagnostic=f"limit={self.max_artifact_bytes}")
            if not buf:
                raise DownloadFailed("artifact is empty")
            return bytes(buf), guess_content_type(output_ref, resp.headers.get("Content-Type", ""))
        except requests.RequestException as e:
            raise DownloadFailed("artifact download failed", diagnostic=str(e)[:300])
        finally:
            resp.close()
