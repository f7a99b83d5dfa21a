import hashlib
import logging
import threading
from typing import Dict
from urllib.parse import urlparse

import requests

from config import Settings
from .errors import StorageError

logger = logging.getLogger(__name__)

REF_PREFIX = "sha256:"


def content_ref(data: bytes) -> str:
    """Content-addressed reference, so re-uploading identical bytes yields the same ref"""
    return REF_PREFIX + hashlib.sha256(data).hexdigest()


def _digest(ref: str) -> str:
    if not ref.startswith(REF_PREFIX) or len(ref) != len(REF_PREFIX) + 64:
        raise StorageError(f"Invalid object reference: {ref}")
    return ref[len(REF_PREFIX):]


class ObjectStorage:
    """Holds uploaded document images and live captures; callers only keep the ref"""

    def put(self, data: bytes) -> str:
        raise NotImplementedError

    def get(self, ref: str) -> bytes:
        raise NotImplementedError


class InMemoryStorage(ObjectStorage):

    def __init__(self):
        self._lock = threading.Lock()
        self._objects: Dict[str, bytes] = {}

    def put(self, data: bytes) -> str:
        ref = content_ref(data)
        with self._lock:
            self._objects[ref] = data
        return ref

    def get(self, ref: str) -> bytes:
        _digest(ref)
        with self._lock:
            try:
                return self._objects[ref]
            except KeyError:
                raise StorageError(f"Object not found: {ref}")


class HttpObjectStorage(ObjectStorage):
    """Object store reachable over plain HTTP PUT/GET at <endpoint>/<sha256>"""

    def __init__(self, endpoint: str, timeout: float = 30):
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def _url(self, ref: str) -> str:
        return f"{self.endpoint}/{_digest(ref)}"

    def put(self, data: bytes) -> str:
        ref = content_ref(data)
        try:
            response = self.session.put(
                self._url(ref),
                data=data,
                headers={"Content-Type": "image/jpeg"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to store object {ref}: {e}")
            raise StorageError("Failed to store object", detail=str(e))
        return ref

    def get(self, ref: str) -> bytes:
        try:
            response = self.session.get(self._url(ref), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to fetch object {ref}: {e}")
            raise StorageError("Failed to fetch object", detail=str(e))
        return response.content


def build_storage(settings: Settings) -> ObjectStorage:
    scheme = urlparse(settings.STORAGE_ENDPOINT).scheme
    if scheme == "memory":
        return InMemoryStorage()
    if scheme in ("http", "https"):
        return HttpObjectStorage(settings.STORAGE_ENDPOINT, timeout=settings.STORAGE_TIMEOUT_SECONDS)
    raise ValueError(f"Unsupported storage endpoint: {settings.STORAGE_ENDPOINT}")
