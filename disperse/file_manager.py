"""Finalization orchestrator for Disperse.

The FileManager drives every asset of a request through the pipeline::

    materialize -> bundle -> transform (+ source map) -> image commands
        -> compress -> cloud upload

Assets are independent of each other and run concurrently on one event loop;
the stages of one asset run strictly in order. Every unit of work registers
with the AsyncTaskBarrier, and the result summary is built by the barrier's
finalize callback once the enumeration is complete and the count drains.

Key classes:
- FileManager: Runs one request and returns a ResultSummary.
- RequestError: The only error that escapes ``run()``.
"""

from __future__ import annotations

import asyncio
import base64
import os
import shutil
import uuid
from collections.abc import Coroutine, Mapping
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import requests

from .barrier import AsyncTaskBarrier
from .cloud import DownloadRequest, MissingDependencyError, UploadRequest
from .compress import compress_file
from .dispatcher import CloudDispatcher, ProviderFactory
from .image import ImageTransformQueue
from .logger import Logger, LogType
from .models import ExternalAsset, RequestBody, ResponseError, ResultSummary
from .permission import CASE_INSENSITIVE, PermissionDeniedError, PermissionGate
from .settings import DEFAULT_SETTINGS, ConfigurationError, get_int
from .sourcemap import SourceMapChain, write_source_map
from .transforms import TransformRegistry, Transformer, category_for_mime

FETCH_TIMEOUT = 60


class RequestError(Exception):
    """Error raised for a structurally invalid request.

    Attributes:
        hint: Optional suggestion shown with the message.
    """

    def __init__(self, message: str, hint: str | None = None):
        self.hint = hint
        super().__init__(message)

    def to_response(self) -> ResponseError:
        return ResponseError(str(self), self.hint)


class FileManager:
    """Runs the assets of one request to completion.

    Attributes:
        dirname: Output root; asset destinations are relative to it.
        assets: Assets of the request, in request order.
        files: Produced files, relative to ``dirname`` in forward-slash form.
        uploads: URLs of the successful uploads, listed after the local files
            in the summary.
        summary: The result, set when finalize fires.
    """

    def __init__(
        self,
        dirname: str | Path,
        body: RequestBody,
        settings: Mapping[str, Any] | None = None,
        permission: PermissionGate | None = None,
        logger: Logger | None = None,
        registry: TransformRegistry | None = None,
        providers: Mapping[str, ProviderFactory] | None = None,
        session: requests.Session | None = None,
        empty_dir: bool = False,
    ):
        self.dirname = Path(dirname).resolve()
        self.body = body
        self.assets = body.assets
        self.settings = dict(settings if settings is not None else DEFAULT_SETTINGS)
        self.logger = logger or Logger(self.settings.get("logger"))
        self.permission = permission or PermissionGate.from_settings(self.settings)
        self.empty_dir = empty_dir
        self.session = session or requests.Session()
        node_modules = self.settings.get("node_modules")
        self.project_root = Path(node_modules) if node_modules else None

        self.barrier = AsyncTaskBarrier(self.finalize, self.logger, self._on_result)
        self.transformer = Transformer(
            registry or TransformRegistry(self.settings.get("transform") or {}, project_root=self.project_root),
            self.logger,
        )
        self.images = ImageTransformQueue(self.barrier, self.logger, self.project_root)
        self.cloud = CloudDispatcher(self.settings, self.barrier, self.logger, providers)
        self.gzip_level = get_int(self.settings, "gzip_level", 0, 9)
        self.brotli_quality = get_int(self.settings, "brotli_quality", 0, 11)

        self.files: set[str] = set()
        self.not_found: set[str] = set()
        self.uploads: list[str] = []
        self.summary: ResultSummary | None = None
        self._bundles: dict[ExternalAsset, list[ExternalAsset]] = {}
        self._emptied: dict[tuple[str, str], asyncio.Task] = {}
        self._tasks: list[asyncio.Task] = []
        self._done: asyncio.Event | None = None

    @classmethod
    def from_request(cls, dirname: str | Path, data: Any, **kwargs: Any) -> FileManager:
        """Create a manager from a decoded request body.

        Raises:
            RequestError: If the body is malformed.
        """
        try:
            body = RequestBody.from_dict(data)
        except (ValueError, TypeError, AttributeError) as exc:
            raise RequestError(str(exc), "Expected {\"assets\": [...]}") from exc
        return cls(dirname, body, **kwargs)

    # file tracking

    def relative(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.dirname).as_posix()
        except ValueError:
            return path.as_posix()

    def add(self, path: Path, parent: ExternalAsset | None = None) -> None:
        self.files.add(self.relative(path))
        if parent is not None and path not in parent.transforms:
            parent.transforms.append(path)

    def delete(self, path: Path) -> None:
        self.files.discard(self.relative(path))

    def has(self, path: Path | None) -> bool:
        return path is not None and self.relative(path) in self.files

    def _on_result(self, result: Any, asset: ExternalAsset | None) -> None:
        if isinstance(result, Path):
            self.add(result)

    # run

    async def run(self) -> ResultSummary:
        """Process every asset and return the summary.

        Raises:
            RequestError: If the request holds no assets.
        """
        if not self.assets:
            raise RequestError("No assets were requested")
        self._done = asyncio.Event()
        self.logger.format_message(LogType.SYSTEM, "start", [str(self.dirname), f"{len(self.assets)} assets"])
        for asset in self.prepare():
            self.spawn(self.process_asset(asset), asset)
        self.barrier.clear()
        await self._done.wait()
        await asyncio.gather(*self._tasks)
        assert self.summary is not None
        return self.summary

    def spawn(self, coro: Coroutine[Any, Any, Any], asset: ExternalAsset | None = None) -> asyncio.Task:
        """Start a tracked task. Its failure marks the asset invalid."""
        self.barrier.begin()
        task = asyncio.create_task(self._settle(coro, asset))
        self._tasks.append(task)
        return task

    async def _settle(self, coro: Coroutine[Any, Any, Any], asset: ExternalAsset | None) -> None:
        try:
            result = await coro
        except Exception as exc:
            if asset is not None:
                asset.invalid = True
            self.barrier.end(exc, None, asset)
            return
        self.barrier.end(None, result, asset)

    async def _tracked(self, coro: Coroutine[Any, Any, Any], asset: ExternalAsset) -> Any:
        """Await one sub-task of an asset as its own barrier task.

        Configuration and permission errors mark the asset invalid; other
        errors are logged and resolve to None.
        """
        self.barrier.begin()
        try:
            result = await coro
        except (ConfigurationError, PermissionDeniedError, MissingDependencyError) as exc:
            asset.invalid = True
            self.barrier.end(exc, None, asset)
            return None
        except Exception as exc:
            self.barrier.end(exc, None, asset)
            return None
        self.barrier.end(None, result, asset)
        return result

    def prepare(self) -> list[ExternalAsset]:
        """Resolve destinations, drop duplicates and group bundles.

        A destination that resolves outside ``dirname`` marks the asset
        invalid. When the first member of a bundle is dropped, the rest of the
        bundle is marked invalid with it.

        Returns:
            The assets to process; a bundle is represented by its first member.
        """
        seen: dict[str, ExternalAsset] = {}
        bundles: dict[Any, list[ExternalAsset]] = {}
        dropped: set[Any] = set()
        created: set[Path] = set()
        result: list[ExternalAsset] = []
        for asset in self.assets:
            if asset.exclude:
                continue
            if asset.filename.startswith("__assign__"):
                asset.filename = uuid.uuid4().hex + Path(asset.filename).suffix
            file_uri = Path(os.path.normpath(self.dirname / asset.pathname / asset.filename))
            if asset.bundle_id is not None:
                group = bundles.get(asset.bundle_id)
                if group is not None:
                    asset.file_uri = file_uri
                    group.append(asset)
                    continue
                bundles[asset.bundle_id] = [asset]
            if not file_uri.is_relative_to(self.dirname) or file_uri == self.dirname:
                asset.invalid = True
                dropped.add(asset.bundle_id)
                self.logger.write_fail(["Destination outside output directory", asset.relative_uri])
                continue
            asset.file_uri = file_uri
            key = asset.relative_uri.lower() if CASE_INSENSITIVE else asset.relative_uri
            if key in seen:
                asset.exclude = True
                dropped.add(asset.bundle_id)
                self.logger.format_message(
                    LogType.FILE, "skip", ["Duplicate destination", asset.relative_uri], color="yellow"
                )
                continue
            seen[key] = asset
            directory = file_uri.parent
            if directory not in created:
                try:
                    self.prepare_directory(directory)
                except (OSError, PermissionDeniedError) as exc:
                    asset.invalid = True
                    dropped.add(asset.bundle_id)
                    self.logger.write_fail(["Unable to create directory", str(directory)], exc)
                    continue
                created.add(directory)
            result.append(asset)

        for bundle_id, group in bundles.items():
            first = group[0]
            if bundle_id in dropped:
                for member in group[1:]:
                    member.invalid = True
                    self.logger.write_fail(["Bundle destination dropped", member.relative_uri])
                continue
            group.sort(key=lambda item: item.bundle_index if item.bundle_index is not None else 0)
            if len(group) > 1:
                self._bundles[first] = group
        return result

    def prepare_directory(self, directory: Path) -> None:
        self.permission.check_write(directory)
        if self.empty_dir and directory.is_dir() and directory != self.dirname.parent:
            for child in directory.iterdir():
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        directory.mkdir(parents=True, exist_ok=True)

    async def process_asset(self, asset: ExternalAsset) -> None:
        """Run one asset (or bundle) through every stage."""
        members = self._bundles.get(asset)
        if members is not None:
            main = await self.process_bundle(asset, members)
            if main is None:
                return
            asset = main
        elif not await self.materialize(asset):
            asset.invalid = True
            return
        try:
            await self.finalize_file(asset)
        except Exception:
            asset.invalid = True
            raise

    # materialize

    async def load_source(self, asset: ExternalAsset) -> bytes | None:
        """Return the bytes of an asset from its download, content, base64 or uri."""
        downloaded = await self.download(asset)
        if downloaded is not None:
            return downloaded
        if asset.content is not None:
            asset.source_utf8 = asset.content
            return asset.content.encode("utf-8")
        if asset.base64 is not None:
            return base64.b64decode(asset.base64)
        uri = asset.uri
        if not uri:
            self.logger.write_fail(["No source", asset.relative_uri])
            return None
        if uri in self.not_found:
            return None
        scheme = urlparse(uri).scheme.lower()
        if scheme in ("http", "https"):
            return await self.fetch(uri)
        path = unquote(urlparse(uri).path) if scheme == "file" else uri
        self.permission.check_read(path)
        return await asyncio.to_thread(Path(path).read_bytes)

    async def fetch(self, uri: str) -> bytes | None:
        """Fetch a URL. A URL that failed once is not requested again."""
        try:
            response = await asyncio.to_thread(self.session.get, uri, timeout=FETCH_TIMEOUT)
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            self.not_found.add(uri)
            self.logger.write_fail(["Unable to download", uri], exc)
            return None
        return response.content

    async def download(self, asset: ExternalAsset) -> bytes | None:
        """Try each storage target with a download directive, in order."""
        fallback = asset.content is None and asset.base64 is None and not asset.uri
        for storage in asset.cloud_storage:
            download = storage.download
            if download is None or not (download.active or fallback):
                continue
            try:
                handler = self.cloud.get_download_handler(storage.service, storage.credential)
            except (ConfigurationError, MissingDependencyError) as exc:
                self.logger.write_fail([f"{storage.service}: Download skipped", asset.relative_uri], exc)
                continue
            data = await handler(
                DownloadRequest(
                    bucket=storage.bucket,
                    filename=download.filename,
                    version_id=download.version_id,
                    delete_object=download.delete_object,
                )
            )
            if data is not None:
                return data
        return None

    async def write(self, asset: ExternalAsset, data: bytes) -> None:
        file_uri = asset.file_uri
        assert file_uri is not None
        self.permission.check_write(file_uri)
        await asyncio.to_thread(file_uri.write_bytes, data)
        asset.buffer = data
        self.add(file_uri)
        self.logger.format_message(LogType.FILE, "write", asset.relative_uri, f"{len(data)} bytes")

    async def materialize(self, asset: ExternalAsset) -> bool:
        """Write an asset to its destination.

        Raises:
            PermissionDeniedError: If the source or destination is refused.
        """
        data = await self.load_source(asset)
        if data is None:
            return False
        await self.write(asset, data)
        return True

    async def process_bundle(self, first: ExternalAsset, members: list[ExternalAsset]) -> ExternalAsset | None:
        """Concatenate a bundle into its first member that has content.

        Returns:
            The bundle's main asset, or None if no member had content.
        """
        main: ExternalAsset | None = None
        parts: list[str] = []
        for member in members:
            try:
                data = await self.load_source(member)
            except PermissionDeniedError as exc:
                member.invalid = True
                self.logger.write_fail(["Bundle member refused", member.relative_uri], exc)
                continue
            if data is None:
                member.invalid = True
                continue
            text = data.decode("utf-8")
            if main is None and text:
                main = member
            else:
                member.exclude = True
            if text:
                parts.append(text)
        if main is None:
            for member in members:
                member.exclude = False
                member.invalid = True
            self.logger.write_fail(["Bundle is empty", first.relative_uri])
            return None
        if main is not first:
            main.file_uri = first.file_uri
            main.pathname, main.filename = first.pathname, first.filename
            main.cloud_storage = main.cloud_storage or first.cloud_storage
            main.format = main.format or first.format
            main.compress = main.compress or first.compress
        content = "\n".join(parts)
        main.source_utf8 = content
        await self.write(main, content.encode("utf-8"))
        return main

    # finalize one asset

    async def finalize_file(self, asset: ExternalAsset) -> None:
        """Run the transform, image, compress and cloud stages of an asset."""
        mime_type = asset.resolve_mime_type()
        category = category_for_mime(mime_type)
        if category and asset.format:
            await self.transform(asset, category)
        if mime_type.startswith("image/"):
            commands = asset.commands if mime_type != "image/unknown" else [""]
            if commands:
                await asyncio.gather(*(self._tracked(self.images.enqueue(asset, command), asset) for command in commands))
        if asset.invalid:
            return
        file_group = await self.compress(asset, mime_type)
        await self.upload(asset, file_group)

    async def transform(self, asset: ExternalAsset, category: str) -> None:
        file_uri = asset.file_uri
        assert file_uri is not None and asset.format is not None
        source = asset.get_utf8()
        chain = SourceMapChain.create_for_asset(asset, file_uri, source)
        result = await self.transformer.transform(category, asset.format, source, chain)
        if result is None:
            return
        if chain.modified and category in ("css", "js"):
            result, map_path = write_source_map(chain, category, result)
            if map_path is not None:
                self.add(map_path, asset)
        asset.source_utf8 = result
        await self.write(asset, result.encode("utf-8"))

    async def compress(self, asset: ExternalAsset, mime_type: str) -> list[tuple[bytes, str]]:
        """Write the requested compressed siblings.

        Returns:
            ``(bytes, suffix)`` pairs for the siblings that were written.
        """
        file_uri = asset.file_uri
        assert file_uri is not None
        results = await asyncio.gather(
            *(
                self._tracked(
                    asyncio.to_thread(
                        compress_file, file_uri, fmt, mime_type, self.gzip_level, self.brotli_quality
                    ),
                    asset,
                )
                for fmt in asset.compress
            )
        )
        file_group = []
        for path in results:
            if path is not None:
                self.logger.format_message(LogType.COMPRESS, path.suffix[1:], self.relative(path))
                file_group.append((path.read_bytes(), path.suffix))
        return file_group

    async def upload(self, asset: ExternalAsset, file_group: list[tuple[bytes, str]]) -> None:
        """Upload an asset to each of its storage targets.

        Targets are independent: a failing one is logged and the others still
        run. The first active upload's URL becomes ``asset.cloud_uri``.
        """
        targets = [storage for storage in asset.cloud_storage if storage.upload is not None]
        file_uri = asset.file_uri
        if not targets or file_uri is None or not file_uri.exists():
            return
        buffer = await asyncio.to_thread(file_uri.read_bytes)

        async def dispatch(storage):
            try:
                handler = self.cloud.get_upload_handler(storage.service, storage.credential)
            except (ConfigurationError, MissingDependencyError) as exc:
                asset.invalid = True
                self.logger.write_fail([f"{storage.service}: Upload skipped", asset.relative_uri], exc)
                return ""
            if storage.admin and storage.admin.empty_bucket and storage.bucket:
                key = (storage.service, storage.bucket)
                # every upload to the bucket waits for the one emptying pass
                emptying = self._emptied.get(key)
                if emptying is None:
                    emptying = asyncio.ensure_future(
                        self.cloud.delete_objects(storage.service, storage.credential, storage.bucket)
                    )
                    self._emptied[key] = emptying
                await emptying
            extras = []
            if storage.upload.all:
                extras = [(path.read_bytes(), path.name) for path in asset.transforms if path.exists()]
            return await handler(
                UploadRequest(
                    buffer=buffer,
                    file_uri=file_uri,
                    mime_type=asset.mime_type,
                    bucket=storage.bucket,
                    filename=storage.upload.filename,
                    upload=storage.upload,
                    admin=storage.admin,
                    file_group=file_group,
                    extras=extras,
                )
            )

        urls = await asyncio.gather(*(dispatch(storage) for storage in targets))
        remove_local = False
        for storage, url in zip(targets, urls):
            if not url:
                continue
            self.uploads.append(url)
            if storage.upload.active and asset.cloud_uri is None:
                asset.cloud_uri = url
            if not storage.upload.local_storage:
                remove_local = True
        if remove_local:
            file_uri.unlink(missing_ok=True)
            self.delete(file_uri)
            self.logger.format_message(LogType.FILE, "remove", asset.relative_uri, "uploaded", color="yellow")

    # finalize the run

    def finalize(self) -> None:
        """Build the result summary. Runs exactly once per run."""
        for path in self.images.files_to_remove:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                self.logger.write_fail(["Unable to delete temp file", str(path)], exc)
            self.delete(path)
        local = sorted(item for item in self.files if (self.dirname / item).exists())
        size = sum((self.dirname / item).stat().st_size for item in local)
        files = local + list(dict.fromkeys(self.uploads))
        invalid = [asset for asset in self.assets if asset.invalid and not asset.exclude]
        success = bool(files) and not invalid
        error = None
        if invalid:
            error = ResponseError(
                f"{len(invalid)} asset(s) failed", ", ".join(asset.relative_uri for asset in invalid)
            )
        elif not files:
            error = ResponseError("No files were written")
        self.summary = ResultSummary(success=success, files=files, bytes=size, error=error)
        self.logger.format_message(
            LogType.SYSTEM, "finish", [f"{len(files)} files", f"{size} bytes"], color="green" if success else "red"
        )
        if self._done is not None:
            self._done.set()
