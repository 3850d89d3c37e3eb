"""
core/object_store.py: 对象存储适配（七牛云 Kodo）

生成产物写入私有空间，客户端通过限时签名下载 URL 访问，
空间凭证不离开服务端。
"""
import os
from typing import Iterator, Optional, Tuple

import qiniu
import requests
from qiniu import Auth, BucketManager

from core.config import cfg
from core.errors import NotConfigured, StorageUnavailable
from core.events import log_event, E
from core.log import get_logger

logger = get_logger(__name__)

# BucketManager.stat 对不存在的 key 返回 612
_QINIU_NO_SUCH_KEY = 612


def get_qiniu_config() -> Tuple[str, str, str, str]:
    ak = os.environ.get("QINIU_AK") or cfg.get("qiniu.access_key", "")
    sk = os.environ.get("QINIU_SK") or cfg.get("qiniu.secret_key", "")
    bucket = os.environ.get("QINIU_BUCKET") or cfg.get("qiniu.bucket", "")
    domain = os.environ.get("QINIU_DOMAIN") or cfg.get("qiniu.domain", "")
    return ak, sk, bucket, domain


def is_configured() -> bool:
    return all(get_qiniu_config())


class StoredObject:
    def __init__(self, key: str, content_type: str, chunks: Iterator[bytes], size: Optional[int] = None):
        self.key = key
        self.content_type = content_type
        self.chunks = chunks
        self.size = size

    def read(self) -> bytes:
        return b"".join(self.chunks)


class ObjectStore:
    """按 key 寻址的 put / get / signed_url / exists，同一 key 的写入必须幂等。"""

    def put(self, key: str, data: bytes, content_type: str) -> None:
        raise NotImplementedError

    def get(self, key: str) -> Optional[StoredObject]:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        raise NotImplementedError


class QiniuObjectStore(ObjectStore):
    def __init__(self, access_key: str = "", secret_key: str = "", bucket: str = "", domain: str = "", timeout: Optional[float] = None):
        ak, sk, default_bucket, default_domain = get_qiniu_config()
        access_key = access_key or ak
        secret_key = secret_key or sk
        self.bucket = bucket or default_bucket
        self.domain = (domain or default_domain).rstrip("/")
        if not all([access_key, secret_key, self.bucket, self.domain]):
            raise NotConfigured("object store not configured, set QINIU_AK/QINIU_SK/QINIU_BUCKET/QINIU_DOMAIN")
        if not self.domain.startswith(("http://", "https://")):
            self.domain = f"https://{self.domain}"
        self.auth = Auth(access_key, secret_key)
        self.bucket_manager = BucketManager(self.auth)
        self.timeout = timeout or float(cfg.get("qiniu.timeout_seconds", 30) or 30)

    def put(self, key: str, data: bytes, content_type: str) -> None:
        token = self.auth.upload_token(self.bucket, key, 3600)
        try:
            ret, info = qiniu.put_data(token, key, data, mime_type=content_type or "application/octet-stream")
        except Exception as e:
            log_event(logger, E.STORAGE_FAIL, level="error", op="put", key=key, error=e)
            raise StorageUnavailable("object store write failed", diagnostic=str(e)[:300])
        status = getattr(info, "status_code", None)
        if status != 200 or not ret or ret.get("key") != key:
            log_event(logger, E.STORAGE_FAIL, level="error", op="put", key=key, status=status)
            raise StorageUnavailable("object store write failed", diagnostic=f"status={status}")
        log_event(logger, E.STORAGE_PUT, key=key, size=len(data), content_type=content_type)

    def exists(self, key: str) -> bool:
        try:
            ret, info = self.bucket_manager.stat(self.bucket, key)
        except Exception as e:
            raise StorageUnavailable("object store stat failed", diagnostic=str(e)[:300])
        status = getattr(info, "status_code", None)
        if status == 200 and ret:
            return True
        if status == _QINIU_NO_SUCH_KEY:
            return False
        raise StorageUnavailable("object store stat failed", diagnostic=f"status={status}")

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        base_url = f"{self.domain}/{key}"
        return self.auth.private_download_url(base_url, expires=max(1, int(ttl_seconds)))

    def get(self, key: str) -> Optional[StoredObject]:
        url = self.signed_url(key, 300)
        try:
            resp = requests.get(url, stream=True, timeout=(5, self.timeout))
        except requests.RequestException as e:
            raise StorageUnavailable("object store read failed", diagnostic=str(e)[:300])
        if resp.status_code == 404:
            resp.close()
            return None
        if resp.status_code != 200:
            resp.close()
            raise StorageUnavailable("object store read failed", diagnostic=f"status={resp.status_code}")
        length = resp.headers.get("Content-Length")
        return StoredObject(
            key=key,
            content_type=resp.headers.get("Content-Type", "application/octet-stream"),
            chunks=resp.iter_content(chunk_size=64 * 1024),
            size=int(length) if length and length.isdigit() else None,
        )
