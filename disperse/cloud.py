"""Cloud storage providers for Disperse.

Every provider exposes the same small surface (create a bucket, empty it,
upload a buffer, download an object) over a different SDK. The SDK client is
created lazily on first use so that a missing optional package only matters
for the services actually requested.

Key classes:
- CloudProvider: Base class holding the shared upload/download flow.
- UploadRequest, DownloadRequest: What a provider is asked to do.
- MissingDependencyError, CredentialError: Provider setup failures.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .logger import Logger, LogType
from .models import CloudStorageAdmin, CloudStorageUpload
from .settings import ConfigurationError


class MissingDependencyError(Exception):
    """Error raised when a provider's SDK package is not installed.

    Attributes:
        service: Service that needed the package.
        package: Distribution name to install.
        hint: Install command.
    """

    def __init__(self, service: str, package: str):
        self.service = service
        self.package = package
        self.hint = f"pip install {package}"
        super().__init__(f"{service}: {package} is not installed")


class CredentialError(ConfigurationError):
    """Error raised when a credential lacks required fields."""

    def __init__(self, service: str, missing: list[str]):
        self.service = service
        self.missing = missing
        super().__init__(f"{service}: credential requires {', '.join(missing)}")


@dataclass
class UploadRequest:
    """One file to upload.

    Attributes:
        buffer: File contents.
        file_uri: Local path (used for the default key name).
        mime_type: Content type of the object.
        bucket: Target bucket; a random name is used when absent.
        filename: Key name; defaults to the local file name.
        upload: The upload directive.
        admin: Bucket administration directive.
        file_group: ``(buffer, suffix)`` pairs uploaded as ``key + suffix``,
            e.g. compressed siblings.
        extras: ``(buffer, name)`` pairs uploaded beside the key under their
            own names.
    """

    buffer: bytes
    file_uri: Path
    mime_type: str | None = None
    bucket: str | None = None
    filename: str | None = None
    upload: CloudStorageUpload = field(default_factory=CloudStorageUpload)
    admin: CloudStorageAdmin | None = None
    file_group: list[tuple[bytes, str]] = field(default_factory=list)
    extras: list[tuple[bytes, str]] = field(default_factory=list)


@dataclass
class DownloadRequest:
    bucket: str | None
    filename: str
    version_id: str | None = None
    delete_object: bool = False


def error_code(exc: BaseException) -> str | int | None:
    """Return the service error code carried by an SDK exception, if any."""
    response = getattr(exc, "response", None)
    if isinstance(response, Mapping):
        code = response.get("Error", {}).get("Code")
        if code is not None:
            return code
    for name in ("error_code", "code"):
        code = getattr(exc, name, None)
        if code is not None:
            return code
    return None


class CloudProvider(ABC):
    """Base class for storage providers.

    Subclasses implement the SDK calls; this class implements bucket caching,
    key renaming and the public-read policy on top of them.

    Attributes:
        service: Service name the provider is registered under.
        required: Credential fields that must be present.
        aliases: Alternative credential field names mapped to their
            canonical names.
        package: Distribution providing the SDK.
    """

    service: str = ""
    required: tuple[str, ...] = ()
    aliases: dict[str, str] = {}
    package: str = ""

    def __init__(
        self,
        credential: Mapping[str, Any],
        logger: Logger | None = None,
        client: Any = None,
        bucket_cache: set[tuple[str, ...]] | None = None,
    ):
        self.credential = self.normalize_credential(credential)
        self.logger = logger or Logger()
        self._client = client
        self.bucket_cache = bucket_cache if bucket_cache is not None else set()

    @classmethod
    def normalize_credential(cls, credential: Mapping[str, Any]) -> dict[str, Any]:
        result = dict(credential)
        for alias, name in cls.aliases.items():
            if alias in result and name not in result:
                result[name] = result.pop(alias)
        return result

    def validate(self) -> None:
        """Check the credential.

        Raises:
            CredentialError: If a required field is missing.
        """
        missing = [name for name in self.required if not self.credential.get(name)]
        if missing:
            raise CredentialError(self.service, missing)

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = self.create_client()
        return self._client

    def connect(self) -> None:
        """Create the SDK client now instead of on first use."""
        self.client

    @abstractmethod
    def create_client(self) -> Any:
        """Create the SDK client.

        Raises:
            MissingDependencyError: If the SDK is not installed.
        """
        ...

    @abstractmethod
    def bucket_exists(self, bucket: str) -> bool: ...

    @abstractmethod
    def make_bucket(self, bucket: str) -> None: ...

    @abstractmethod
    def set_public_read(self, bucket: str) -> None: ...

    @abstractmethod
    def object_exists(self, bucket: str, key: str) -> bool: ...

    @abstractmethod
    def put_object(self, bucket: str, key: str, body: bytes, mime_type: str | None, public_read: bool) -> None: ...

    @abstractmethod
    def object_url(self, bucket: str, key: str) -> str: ...

    @abstractmethod
    def get_object(self, bucket: str, key: str, version_id: str | None = None) -> bytes: ...

    @abstractmethod
    def delete_object(self, bucket: str, key: str, version_id: str | None = None) -> None: ...

    @abstractmethod
    def delete_all(self, bucket: str) -> int:
        """Delete every object of a bucket and return how many were deleted."""
        ...

    def is_bucket_conflict(self, exc: BaseException) -> bool:
        """Return True if ``exc`` means the bucket already exists."""
        return False

    def log(self, value: str | list[str], message: object = None, color: str = "green") -> None:
        self.logger.format_message(LogType.CLOUD, self.service, value, message, color=color)

    def create_bucket(self, bucket: str, public_read: bool | None = None) -> bool:
        """Ensure a bucket exists.

        An existing bucket is only checked once per run, and public-read is
        granted at most once. Creation racing with another writer counts as
        success.

        Returns:
            False if the bucket could not be created.
        """
        key = (self.service, bucket)
        granted = (self.service, bucket, "public-read")
        if key in self.bucket_cache and (not public_read or granted in self.bucket_cache):
            return True
        if key not in self.bucket_cache and not self.bucket_exists(bucket):
            try:
                self.make_bucket(bucket)
            except Exception as exc:
                if not self.is_bucket_conflict(exc):
                    self.logger.write_fail([f"{self.service}: Unable to create bucket", bucket], exc)
                    return False
            else:
                self.log("Bucket created", bucket, color="blue")
        self.bucket_cache.add(key)
        if public_read and self.grant_public_read(bucket, requested=True):
            self.bucket_cache.add(granted)
        return True

    def grant_public_read(self, bucket: str, requested: bool) -> bool:
        """Grant anonymous read access to a bucket.

        Failure is an error when the grant was requested and a warning when
        it was implied.
        """
        try:
            self.set_public_read(bucket)
        except Exception as exc:
            if requested:
                self.logger.write_fail([f"{self.service}: Unable to grant public-read", bucket], exc)
            else:
                self.log(["Unable to grant public-read", bucket], exc, color="yellow")
            return False
        self.log("Grant public-read", bucket, color="blue")
        return True

    def unique_key(self, bucket: str, pathname: str, filename: str, file_uri: Path) -> str:
        """Return ``filename`` or the first free ``name_N.ext`` variant of it."""
        index = filename.find(".")
        candidate = filename
        i = 0
        while True:
            if i > 0:
                if index == -1:
                    candidate = uuid.uuid4().hex + file_uri.suffix
                    break
                candidate = f"{filename[:index]}_{i}{filename[index:]}"
            try:
                if not self.object_exists(bucket, pathname + candidate):
                    break
            except Exception:
                candidate = uuid.uuid4().hex + file_uri.suffix
                break
            i += 1
        if candidate != filename:
            self.log("File renamed", candidate, color="yellow")
        return candidate

    def put(self, bucket: str, key: str, body: bytes, mime_type: str | None, explicit: bool, implicit: bool) -> None:
        """Upload one object, retrying without the public-read ACL when it was only implied."""
        if explicit or not implicit:
            self.put_object(bucket, key, body, mime_type, explicit)
            return
        try:
            self.put_object(bucket, key, body, mime_type, True)
        except Exception as exc:
            self.log(["Unable to grant public-read", key], exc, color="yellow")
            self.put_object(bucket, key, body, mime_type, False)

    def upload(self, request: UploadRequest) -> str:
        """Upload a file and return its URL.

        Returns:
            The URL, or an empty string if the bucket was unavailable.

        Raises:
            Exception: Whatever the SDK raised for the main object.
        """
        bucket = request.bucket or uuid.uuid4().hex
        request.bucket = bucket
        admin_public = request.admin.public_read if request.admin else None
        if not self.create_bucket(bucket, admin_public):
            return ""
        options = request.upload
        pathname = options.pathname
        filename = request.filename or options.filename
        if not filename or not options.overwrite:
            filename = self.unique_key(bucket, pathname, filename or request.file_uri.name, request.file_uri)
        explicit = options.public_read is True
        implicit = options.active and options.public_read is None
        key = pathname + filename
        self.put(bucket, key, request.buffer, request.mime_type, explicit, implicit)
        url = self.endpoint_url(options.endpoint, key) or self.object_url(bucket, key)
        self.log("Upload success", url)
        for body, name in [(body, filename + suffix) for body, suffix in request.file_group] + request.extras:
            try:
                self.put(bucket, pathname + name, body, None, explicit, implicit)
            except Exception as exc:
                self.logger.write_fail([f"{self.service}: Upload failed", pathname + name], exc)
            else:
                self.log("Upload success", self.endpoint_url(options.endpoint, pathname + name) or self.object_url(bucket, pathname + name))
        return url

    @staticmethod
    def endpoint_url(endpoint: str | None, key: str) -> str | None:
        if not endpoint:
            return None
        return endpoint.rstrip("/") + "/" + key

    def download(self, request: DownloadRequest) -> bytes | None:
        """Fetch an object, deleting it afterwards when asked.

        Returns:
            The object's bytes, or None when no bucket was named.

        Raises:
            Exception: Whatever the SDK raised for the fetch.
        """
        if not request.bucket:
            self.logger.write_fail([f"{self.service}: Bucket not specified", request.filename])
            return None
        location = f"{request.bucket}/{request.filename}"
        data = self.get_object(request.bucket, request.filename, request.version_id)
        self.log("Download success", location)
        if request.delete_object:
            try:
                self.delete_object(request.bucket, request.filename, request.version_id)
            except Exception as exc:
                self.logger.write_fail([f"{self.service}: Delete failed", location], exc)
            else:
                self.log("Delete success", location, color="white")
        return data

    def delete_objects(self, bucket: str) -> None:
        """Empty a bucket. Failure is reported as a warning."""
        try:
            count = self.delete_all(bucket)
        except Exception as exc:
            self.log(["Unable to empty bucket", bucket], exc, color="yellow")
            return
        self.log(["Bucket emptied", f"{count} files"], bucket, color="blue")
