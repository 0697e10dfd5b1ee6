"""Data model for Disperse.

Requests arrive as camelCase JSON. The classes here turn them into dataclasses
with snake_case attributes. Assets are mutated in place as each stage
completes and compare by identity, so they can be used as dict keys and set
members for the whole run.

Key classes:
- ExternalAsset: One file to be produced or relocated.
- CloudStorage: One storage target of an asset.
- RequestBody: The unit of work for one run.
- ResultSummary: What a run reports once finalize fires.
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


def _get(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return default


@dataclass
class CompressFormat:
    """A compression request such as ``{"format": "gz", "level": 9}``."""

    format: str
    level: int | None = None
    condition: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompressFormat:
        level = data.get("level")
        return cls(
            format=str(data.get("format", "")).strip().lower(),
            level=int(level) if level is not None else None,
            condition=data.get("condition"),
        )


@dataclass
class CloudStorageAdmin:
    public_read: bool | None = None
    empty_bucket: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CloudStorageAdmin | None:
        if not data:
            return None
        return cls(
            public_read=_get(data, "publicRead", "public_read"),
            empty_bucket=bool(_get(data, "emptyBucket", "empty_bucket", default=False)),
        )


@dataclass
class CloudStorageUpload:
    active: bool = False
    filename: str | None = None
    pathname: str = ""
    overwrite: bool = False
    public_read: bool | None = None
    endpoint: str | None = None
    all: bool = False
    local_storage: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CloudStorageUpload | None:
        if data is None:
            return None
        pathname = str(data.get("pathname") or "").replace("\\", "/").strip("/")
        return cls(
            active=bool(data.get("active", False)),
            filename=data.get("filename"),
            pathname=pathname + "/" if pathname else "",
            overwrite=bool(data.get("overwrite", False)),
            public_read=_get(data, "publicRead", "public_read"),
            endpoint=data.get("endpoint"),
            all=bool(data.get("all", False)),
            local_storage=_get(data, "localStorage", "local_storage", default=True) is not False,
        )


@dataclass
class CloudStorageDownload:
    filename: str
    active: bool = False
    version_id: str | None = None
    delete_object: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CloudStorageDownload | None:
        if not data or not data.get("filename"):
            return None
        return cls(
            filename=str(data["filename"]),
            active=bool(data.get("active", False)),
            version_id=_get(data, "versionId", "version_id"),
            delete_object=bool(_get(data, "deleteObject", "delete_object", default=False)),
        )


@dataclass
class CloudStorage:
    """A storage directive: which service, which credential, what to do.

    ``credential`` is either the name of a credential in the settings or an
    inline credential object.
    """

    service: str
    credential: str | dict[str, Any]
    bucket: str | None = None
    admin: CloudStorageAdmin | None = None
    upload: CloudStorageUpload | None = None
    download: CloudStorageDownload | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CloudStorage:
        return cls(
            service=str(data.get("service", "")).strip().lower(),
            credential=data.get("credential") or {},
            bucket=data.get("bucket"),
            admin=CloudStorageAdmin.from_dict(data.get("admin")),
            upload=CloudStorageUpload.from_dict(data.get("upload")),
            download=CloudStorageDownload.from_dict(data.get("download")),
        )


@dataclass
class CloudDatabase:
    """A database directive. Kept on the request; queries are not executed."""

    service: str
    credential: str | dict[str, Any]
    table: str | None = None
    query: Any = None
    options: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CloudDatabase:
        return cls(
            service=str(data.get("service", "")).strip().lower(),
            credential=data.get("credential") or {},
            table=data.get("table"),
            query=data.get("query"),
            options=dict(data.get("options") or {}),
        )


@dataclass(eq=False)
class ExternalAsset:
    """One file tracked through the pipeline.

    Attributes:
        pathname: Destination directory relative to the output root.
        filename: Destination file name.
        content: Inline text content.
        base64: Inline binary content.
        uri: Source location (http(s) URL, local path or UNC path).
        mime_type: MIME type, guessed from the filename when absent.
        format: Transform preset chain such as ``"minify+beautify"``.
        commands: Image command strings.
        compress: Ordered compression requests.
        cloud_storage: Ordered storage targets.
        bundle_id: Assets sharing an id are concatenated into one output.
        bundle_index: Position inside the bundle.
        file_uri: Absolute destination once materialized.
        buffer: File bytes once loaded.
        source_utf8: Cached decoded text.
        cloud_uri: URL of the main upload.
        transforms: Extra files produced from this asset.
        invalid: Marks a permanently failed asset.
        exclude: Marks an asset skipped on purpose (bundled into another,
            duplicate destination).
    """

    pathname: str
    filename: str
    content: str | None = None
    base64: str | None = None
    uri: str | None = None
    mime_type: str | None = None
    format: str | None = None
    commands: list[str] = field(default_factory=list)
    compress: list[CompressFormat] = field(default_factory=list)
    cloud_storage: list[CloudStorage] = field(default_factory=list)
    bundle_id: str | int | None = None
    bundle_index: int | None = None
    bundle_root: str | None = None
    file_uri: Path | None = None
    buffer: bytes | None = None
    source_utf8: str | None = None
    cloud_uri: str | None = None
    original_name: str | None = None
    transforms: list[Path] = field(default_factory=list)
    invalid: bool = False
    exclude: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExternalAsset:
        pathname = str(data.get("pathname") or "").replace("\\", "/").strip("/")
        filename = str(data.get("filename") or "")
        if not filename:
            raise ValueError(f"Asset without filename: {pathname or '(root)'}")
        bundle_index = _get(data, "bundleIndex", "bundle_index")
        return cls(
            pathname=pathname,
            filename=filename,
            content=data.get("content"),
            base64=data.get("base64"),
            uri=data.get("uri"),
            mime_type=_get(data, "mimeType", "mime_type"),
            format=data.get("format"),
            commands=list(data.get("commands") or []),
            compress=[CompressFormat.from_dict(item) for item in data.get("compress") or []],
            cloud_storage=[
                CloudStorage.from_dict(item)
                for item in _get(data, "cloudStorage", "cloud_storage", default=None) or []
            ],
            bundle_id=_get(data, "bundleId", "bundle_id"),
            bundle_index=int(bundle_index) if bundle_index is not None else None,
            bundle_root=_get(data, "bundleRoot", "bundle_root"),
        )

    @property
    def relative_uri(self) -> str:
        """Destination path relative to the output root, in forward-slash form."""
        return f"{self.pathname}/{self.filename}" if self.pathname else self.filename

    def resolve_mime_type(self) -> str:
        """Return the MIME type, guessing it from the filename when not given."""
        if not self.mime_type:
            guessed, _ = mimetypes.guess_type(self.filename)
            self.mime_type = guessed or "application/octet-stream"
        return self.mime_type

    def get_utf8(self) -> str:
        """Return the decoded text of the asset, reading it from disk once."""
        if self.source_utf8 is None:
            if self.buffer is not None:
                self.source_utf8 = self.buffer.decode("utf-8")
            elif self.file_uri is not None and self.file_uri.exists():
                self.source_utf8 = self.file_uri.read_text(encoding="utf-8")
            else:
                self.source_utf8 = self.content or ""
        return self.source_utf8


@dataclass
class RequestBody:
    assets: list[ExternalAsset]
    database: list[CloudDatabase] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RequestBody:
        """Parse a request body.

        Raises:
            ValueError: If the body is not an object or an asset is malformed.
        """
        if not isinstance(data, dict):
            raise ValueError("Request body must be an object")
        assets = data.get("assets")
        if not isinstance(assets, list):
            raise ValueError("Request body requires an 'assets' list")
        return cls(
            assets=[ExternalAsset.from_dict(item) for item in assets],
            database=[CloudDatabase.from_dict(item) for item in data.get("database") or []],
        )


@dataclass
class ResponseError:
    message: str
    hint: str | None = None


@dataclass
class ResultSummary:
    """Result of a run, reported once finalize has fired."""

    success: bool
    files: list[str] = field(default_factory=list)
    bytes: int = 0
    zipname: str | None = None
    error: ResponseError | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success, "files": self.files, "bytes": self.bytes}
        if self.zipname:
            result["zipname"] = self.zipname
        if self.error:
            result["error"] = {"message": self.error.message}
            if self.error.hint:
                result["error"]["hint"] = self.error.hint
        return result
