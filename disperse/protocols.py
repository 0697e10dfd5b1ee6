"""Protocol definitions for Disperse.

The orchestrator only talks to transform plugins and storage providers through
these interfaces, so either can be replaced (or faked in tests) without
touching the pipeline.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .cloud import DownloadRequest, UploadRequest
    from .sourcemap import SourceMapChain


@runtime_checkable
class SourceTransformer(Protocol):
    """Protocol for a text transform plugin.

    A plugin is an opaque function of (text, options, output config, source
    map chain). It returns None to leave the text unchanged, and must call
    the chain's ``next_map`` when it moves code around.
    """

    name: str

    @abstractmethod
    def supports(self, category: str) -> bool:
        """Check if the plugin handles a category (html, css, js)."""
        ...

    @abstractmethod
    def transform(
        self,
        value: str,
        options: dict[str, Any],
        output: dict[str, Any] | None,
        chain: SourceMapChain | None,
    ) -> str | None:
        """Transform source text.

        Returns:
            The new text, or None for no change.
        """
        ...


@runtime_checkable
class StorageProvider(Protocol):
    """Protocol for a cloud storage provider bound to one credential."""

    service: str

    @abstractmethod
    def validate(self) -> None:
        """Raise CredentialError if the credential is incomplete."""
        ...

    @abstractmethod
    def connect(self) -> None:
        """Create the SDK client, raising MissingDependencyError if it is not installed."""
        ...

    @abstractmethod
    def create_bucket(self, bucket: str, public_read: bool | None = None) -> bool:
        """Ensure a bucket exists. Returns True if it does afterwards."""
        ...

    @abstractmethod
    def delete_objects(self, bucket: str) -> None:
        """Empty a bucket."""
        ...

    @abstractmethod
    def upload(self, request: UploadRequest) -> str:
        """Upload a file and return its URL, or an empty string."""
        ...

    @abstractmethod
    def download(self, request: DownloadRequest) -> bytes | None:
        """Fetch an object, or return None."""
        ...
