"""Azure Blob Storage provider. Containers play the part of buckets."""

from __future__ import annotations

from typing import Any

from .cloud import CloudProvider, MissingDependencyError, error_code


def _load_sdk(service: str, package: str) -> Any:
    try:
        from azure.storage import blob
    except ImportError as exc:
        raise MissingDependencyError(service, package) from exc
    return blob


class AzureProvider(CloudProvider):
    """Azure Blob Storage through azure-storage-blob (shared key auth)."""

    service = "azure"
    required = ("account_name", "account_key")
    aliases = {"accountName": "account_name", "accountKey": "account_key"}
    package = "azure-storage-blob"

    @property
    def account_url(self) -> str:
        return f"https://{self.credential['account_name']}.blob.core.windows.net"

    def create_client(self) -> Any:
        sdk = _load_sdk(self.service, self.package)
        return sdk.BlobServiceClient(
            account_url=self.account_url,
            credential={
                "account_name": self.credential["account_name"],
                "account_key": self.credential["account_key"],
            },
        )

    def bucket_exists(self, bucket: str) -> bool:
        return bool(self.client.get_container_client(bucket).exists())

    def make_bucket(self, bucket: str) -> None:
        self.client.create_container(bucket)

    def is_bucket_conflict(self, exc: BaseException) -> bool:
        return error_code(exc) == "ContainerAlreadyExists" or type(exc).__name__ == "ResourceExistsError"

    def set_public_read(self, bucket: str) -> None:
        self.client.get_container_client(bucket).set_container_access_policy(
            signed_identifiers={}, public_access="blob"
        )

    def object_exists(self, bucket: str, key: str) -> bool:
        return bool(self.client.get_blob_client(container=bucket, blob=key).exists())

    def put_object(self, bucket, key, body, mime_type, public_read):
        # access is granted per container; public_read is applied by set_public_read
        kwargs: dict[str, Any] = {"overwrite": True}
        if mime_type:
            kwargs["content_settings"] = _load_sdk(self.service, self.package).ContentSettings(
                content_type=mime_type
            )
        self.client.get_blob_client(container=bucket, blob=key).upload_blob(body, **kwargs)

    def object_url(self, bucket: str, key: str) -> str:
        return f"{self.account_url}/{bucket}/{key}"

    def get_object(self, bucket, key, version_id=None):
        blob_client = self.client.get_blob_client(container=bucket, blob=key)
        if version_id:
            return blob_client.download_blob(version_id=version_id).readall()
        return blob_client.download_blob().readall()

    def delete_object(self, bucket, key, version_id=None):
        blob_client = self.client.get_blob_client(container=bucket, blob=key)
        if version_id:
            blob_client.delete_blob(version_id=version_id)
        else:
            blob_client.delete_blob()

    def delete_all(self, bucket: str) -> int:
        container = self.client.get_container_client(bucket)
        names = [item.name for item in container.list_blobs()]
        if names:
            container.delete_blobs(*names)
        return len(names)
