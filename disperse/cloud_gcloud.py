"""Google Cloud Storage provider."""

from __future__ import annotations

from typing import Any

from .cloud import CloudProvider, MissingDependencyError, error_code


class GCloudProvider(CloudProvider):
    """Google Cloud Storage through google-cloud-storage.

    The credential names a service account key file; the project id is read
    from it by the client.
    """

    service = "gcloud"
    required = ("key_filename",)
    aliases = {"keyFilename": "key_filename", "keyFile": "key_filename", "storageClass": "storage_class"}
    package = "google-cloud-storage"

    def create_client(self) -> Any:
        try:
            from google.cloud import storage
        except ImportError as exc:
            raise MissingDependencyError(self.service, self.package) from exc
        return storage.Client.from_service_account_json(self.credential["key_filename"])

    def bucket_exists(self, bucket: str) -> bool:
        return bool(self.client.bucket(bucket).exists())

    def make_bucket(self, bucket: str) -> None:
        target = self.client.bucket(bucket)
        if self.credential.get("storage_class"):
            target.storage_class = self.credential["storage_class"]
        self.client.create_bucket(target, location=self.credential.get("location"))

    def is_bucket_conflict(self, exc: BaseException) -> bool:
        return error_code(exc) == 409

    def set_public_read(self, bucket: str) -> None:
        self.client.bucket(bucket).make_public(future=True)

    def object_exists(self, bucket: str, key: str) -> bool:
        return bool(self.client.bucket(bucket).blob(key).exists())

    def put_object(self, bucket, key, body, mime_type, public_read):
        blob = self.client.bucket(bucket).blob(key)
        blob.upload_from_string(body, content_type=mime_type or "application/octet-stream")
        if public_read:
            blob.make_public()

    def object_url(self, bucket: str, key: str) -> str:
        return f"https://storage.googleapis.com/{bucket}/{key}"

    def _blob(self, bucket: str, key: str, version_id: str | None) -> Any:
        generation = int(version_id) if version_id else None
        return self.client.bucket(bucket).blob(key, generation=generation)

    def get_object(self, bucket, key, version_id=None):
        return self._blob(bucket, key, version_id).download_as_bytes()

    def delete_object(self, bucket, key, version_id=None):
        self._blob(bucket, key, version_id).delete()

    def delete_all(self, bucket: str) -> int:
        blobs = list(self.client.list_blobs(bucket))
        if blobs:
            self.client.bucket(bucket).delete_blobs(blobs)
        return len(blobs)
