"""Cloud dispatch for Disperse.

The dispatcher turns a (service, credential) pair from a request into a
provider and hands out upload and download handlers for it. Handlers never
raise for SDK failures: a failed upload resolves to an empty string and a
failed download to None, so one provider's outage cannot stop assets bound
for other providers or for local disk.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from .barrier import AsyncTaskBarrier
from .cloud import DownloadRequest, MissingDependencyError, UploadRequest
from .cloud_azure import AzureProvider
from .cloud_gcloud import GCloudProvider
from .cloud_s3 import IBMProvider, OCIProvider, S3Provider
from .logger import Logger, LogType
from .protocols import StorageProvider
from .settings import ConfigurationError, resolve_credential

ProviderFactory = Callable[..., StorageProvider]

DEFAULT_PROVIDERS: dict[str, ProviderFactory] = {
    "aws": S3Provider,
    "ibm": IBMProvider,
    "oci": OCIProvider,
    "azure": AzureProvider,
    "gcloud": GCloudProvider,
}

UploadHandler = Callable[[UploadRequest], Awaitable[str]]
DownloadHandler = Callable[[DownloadRequest], Awaitable["bytes | None"]]


class UnknownServiceError(ConfigurationError):
    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Unknown cloud service: {service}")


class CloudDispatcher:
    """Resolves providers and dispatches storage operations.

    Providers are created once per (service, credential) and share one bucket
    cache, so an existing bucket is only checked once per run.
    """

    def __init__(
        self,
        settings: Mapping[str, Any],
        barrier: AsyncTaskBarrier,
        logger: Logger | None = None,
        providers: Mapping[str, ProviderFactory] | None = None,
    ):
        self.settings = settings
        self.barrier = barrier
        self.logger = logger or Logger()
        self.providers = dict(DEFAULT_PROVIDERS if providers is None else providers)
        self.bucket_cache: set[tuple[str, ...]] = set()
        self._instances: dict[tuple[str, str], StorageProvider] = {}

    def get_provider(self, service: str, credential: str | Mapping[str, Any]) -> StorageProvider:
        """Return the provider for a service and credential.

        The SDK client is created here so a missing package fails on first
        use rather than inside a background task.

        Raises:
            UnknownServiceError: If no provider is registered for ``service``.
            CredentialError: If the credential is incomplete.
            MissingDependencyError: If the SDK is not installed.
        """
        service = service.strip().lower()
        factory = self.providers.get(service)
        if factory is None:
            raise UnknownServiceError(service)
        resolved = resolve_credential(dict(self.settings), service, credential)
        key = (service, json.dumps(resolved, sort_keys=True, default=str))
        provider = self._instances.get(key)
        if provider is None:
            provider = factory(resolved, logger=self.logger, bucket_cache=self.bucket_cache)
            provider.validate()
            try:
                provider.connect()
            except MissingDependencyError as exc:
                self.logger.write_fail([f"Install {service} SDK?", exc.hint])
                raise
            self._instances[key] = provider
        return provider

    def get_upload_handler(self, service: str, credential: str | Mapping[str, Any]) -> UploadHandler:
        """Return an upload handler resolving to the object URL or ``""``."""
        provider = self.get_provider(service, credential)

        async def upload(request: UploadRequest) -> str:
            self.barrier.begin()
            url = ""
            try:
                url = await asyncio.to_thread(provider.upload, request)
            except Exception as exc:
                self.logger.write_fail([f"{provider.service}: Upload failed", str(request.file_uri)], exc)
            finally:
                self.barrier.end()
            return url

        return upload

    def get_download_handler(self, service: str, credential: str | Mapping[str, Any]) -> DownloadHandler:
        """Return a download handler resolving to the object bytes or None."""
        provider = self.get_provider(service, credential)

        async def download(request: DownloadRequest) -> bytes | None:
            self.barrier.begin()
            data = None
            try:
                data = await asyncio.to_thread(provider.download, request)
            except Exception as exc:
                self.logger.write_fail(
                    [f"{provider.service}: Download failed", f"{request.bucket}/{request.filename}"], exc
                )
            finally:
                self.barrier.end()
            return data

        return download

    async def create_bucket(
        self,
        service: str,
        credential: str | Mapping[str, Any],
        bucket: str,
        public_read: bool | None = None,
    ) -> bool:
        """Ensure a bucket exists. Resolves True for an existing bucket."""
        provider = self.get_provider(service, credential)
        try:
            return await asyncio.to_thread(provider.create_bucket, bucket, public_read)
        except Exception as exc:
            self.logger.write_fail([f"{provider.service}: Unable to create bucket", bucket], exc)
            return False

    async def delete_objects(self, service: str, credential: str | Mapping[str, Any], bucket: str) -> None:
        """Empty a bucket."""
        provider = self.get_provider(service, credential)
        self.logger.format_message(LogType.CLOUD, provider.service, "Emptying bucket", bucket, color="blue")
        await asyncio.to_thread(provider.delete_objects, bucket)
