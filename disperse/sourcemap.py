"""Source map composition for Disperse.

A SourceMapChain is created for one asset before its transform chain runs.
Each plugin receives the chain's current map as its input source map and, if
it moved code around, folds its own output map back in with ``next_map``. The
chain only ever holds one current map; the text of every successful fold is
kept in an ordered log for diagnostics.
"""

from __future__ import annotations

import json
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import ExternalAsset


@dataclass
class SourceMapOutput:
    """One entry of the chain's output log."""

    value: str
    map: dict[str, Any]
    sources_content: str | None


def parse_map(value: dict[str, Any] | str | bytes) -> dict[str, Any] | None:
    """Parse a source map and return it, or None if it is malformed."""
    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if not isinstance(value, dict):
        return None
    if not isinstance(value.get("mappings"), str) or not isinstance(value.get("sources", []), list):
        return None
    result = dict(value)
    result.setdefault("version", 3)
    result.setdefault("sources", [])
    result.setdefault("names", [])
    return result


class SourceMapChain:
    """Per-asset accumulator of successive transform outputs.

    Attributes:
        asset: The asset the chain belongs to.
        file_uri: Path the transformed text will be written to.
        sources_content: The original source text.
        map: The latest composed map, or None before the first fold.
        output: Ordered log of label -> SourceMapOutput.
    """

    def __init__(self, asset: ExternalAsset | None, file_uri: Path | None, sources_content: str | None):
        self.asset = asset
        self.file_uri = file_uri
        self.sources_content = sources_content
        self.map: dict[str, Any] | None = None
        self.output: OrderedDict[str, SourceMapOutput] = OrderedDict()

    @classmethod
    def create_for_asset(
        cls, asset: ExternalAsset, file_uri: Path | None, sources_content: str | None
    ) -> SourceMapChain:
        return cls(asset, file_uri, sources_content)

    def next_map(
        self,
        label: str,
        map: dict[str, Any] | str | bytes,
        value: str,
        include_sources: bool = True,
    ) -> bool:
        """Fold one plugin's output into the chain.

        Args:
            label: Plugin name the output is logged under.
            map: Source map object or its serialized form.
            value: Transformed text the map describes.
            include_sources: When False, ``sourcesContent`` is not filled in.

        Returns:
            False if the map was malformed, in which case the previous map and
            text stay current.
        """
        parsed = parse_map(map)
        if parsed is None:
            return False
        # the original text belongs to a map with a single source only
        if (
            include_sources
            and self.sources_content is not None
            and not parsed.get("sourcesContent")
            and len(parsed["sources"]) <= 1
        ):
            parsed["sourcesContent"] = [self.sources_content]
        if self.file_uri is not None:
            parsed["file"] = self.file_uri.name
        self.map = parsed
        self.output.pop(label, None)
        self.output[label] = SourceMapOutput(
            value=value,
            map=parsed,
            sources_content=self.sources_content if include_sources else None,
        )
        return True

    @property
    def modified(self) -> bool:
        return self.map is not None

    @property
    def latest_value(self) -> str | None:
        """Text of the last successful fold."""
        if not self.output:
            return None
        return next(reversed(self.output.values())).value


def source_mapping_comment(category: str, map_name: str) -> str:
    """Return the ``sourceMappingURL`` comment for a category."""
    if category == "css":
        return f"\n/*# sourceMappingURL={map_name} */"
    return f"\n//# sourceMappingURL={map_name}"


def write_source_map(chain: SourceMapChain, category: str, code: str) -> tuple[str, Path | None]:
    """Write the chain's current map beside its file.

    Args:
        chain: Chain holding the map.
        category: ``css`` or ``js`` (selects the comment style).
        code: Final transformed text.

    Returns:
        Tuple of (text with a ``sourceMappingURL`` comment appended, map path),
        or ``(code, None)`` when there is nothing to write.
    """
    if chain.map is None or chain.file_uri is None:
        return code, None
    map_path = chain.file_uri.with_name(chain.file_uri.name + ".map")
    data = dict(chain.map)
    data["file"] = chain.file_uri.name
    map_path.write_text(json.dumps(data), encoding="utf-8")
    if "sourceMappingURL=" not in code:
        code += source_mapping_comment(category, map_path.name)
    return code, map_path
