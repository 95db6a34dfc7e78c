"""GCSObjectStore: objects in a Google Cloud Storage bucket."""

from __future__ import annotations

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage

from .base import ObjectNotFoundError, ObjectStore


class GCSObjectStore(ObjectStore):
    """Whole-object reads and non-resumable overwrites against one bucket.

    The client is built from application-default credentials unless one is
    passed in.
    """

    def __init__(self, bucket_name: str, client: storage.Client | None = None) -> None:
        self.bucket_name = bucket_name
        self._client = client or storage.Client()
        self._bucket = self._client.bucket(bucket_name)

    def get(self, key: str) -> bytes:
        try:
            return self._bucket.blob(key).download_as_bytes()
        except gcs_exceptions.NotFound:
            raise ObjectNotFoundError(key) from None

    def put(self, key: str, data: bytes, content_type: str = "application/json") -> None:
        blob = self._bucket.blob(key)
        blob.upload_from_string(data, content_type=content_type)

    def describe(self) -> str:
        return f"gcs (gs://{self.bucket_name})"
