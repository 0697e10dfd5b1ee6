"""Image transforms for Disperse.

An image asset carries one or more command strings. A command starts with the
output type and may contain any of::

    png@(800 x auto [bicubic] ^contain [center|middle] #ffffff)(0, 0 | 400 x 300){90, 180}|80|!greyscale

- ``@`` replaces the original file instead of adding a sibling.
- ``(W x H [algorithm] ^mode [halign|valign] #color)`` resizes.
- ``(x, y | W x H)`` crops.
- ``{deg, deg, ... #color}`` rotates; every angle after the first writes an
  extra file ``<stem>.<deg>.<ext>``.
- ``|quality [preset] [nearLossless]|`` sets the JPEG/WebP quality.
- ``|0.N|`` sets the opacity.
- ``!method`` applies a filter.
- ``(min,max)`` skips files outside the size range (``*`` for no upper bound).

Key classes:
- ImageProxy: Applies the parsed operations to one Pillow image.
- ImageTransformQueue: Schedules commands for assets and reports into the
  AsyncTaskBarrier.
"""

from __future__ import annotations

import asyncio
import mimetypes
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, ImageOps

from .barrier import AsyncTaskBarrier
from .compress import within_size_range
from .executable_utils import ExecutableError, find_executable, run_executable
from .logger import Logger, LogType
from .models import ExternalAsset
from .settings import ConfigurationError

RESIZE = re.compile(
    r"\(\s*(\d+|auto)\s*x\s*(\d+|auto)"
    r"(?:\s*\[\s*(bilinear|bicubic|hermite|bezier)\s*\])?"
    r"(?:\s*\^\s*(contain|cover|scale)(?:\s*\[\s*(left|center|right)?(?:\s*\|?\s*(top|middle|bottom))?\s*\])?)?"
    r"(?:\s*#\s*([A-Fa-f\d]{1,8}))?\s*\)"
)
CROP = re.compile(r"\(\s*([+-]?\d+)\s*,\s*([+-]?\d+)\s*\|\s*(\d+)\s*x\s*(\d+)\s*\)")
ROTATE = re.compile(r"\{\s*([\d\s,]+)(?:\s*#\s*([A-Fa-f\d]{1,8}))?\s*\}")
OPACITY = re.compile(r"\|\s*(\d*\.\d+)\s*\|")
QUALITY = re.compile(
    r"\|\s*(\d+)(?:\s*\[\s*(photo|picture|drawing|icon|text)\s*\])?(?:\s*\[\s*(\d+)\s*\])?\s*\|"
)
METHOD = re.compile(r"!\s*([A-Za-z$][\w$]*)")

OUTPUT_TYPES = {
    "png": ("image/png", "png"),
    "jpeg": ("image/jpeg", "jpg"),
    "bmp": ("image/bmp", "bmp"),
}

SNIFFED_TYPES = {"PNG", "JPEG", "BMP", "GIF", "TIFF"}

RESAMPLING = {
    "bilinear": Image.Resampling.BILINEAR,
    "bicubic": Image.Resampling.BICUBIC,
    "hermite": Image.Resampling.HAMMING,
    "bezier": Image.Resampling.LANCZOS,
}

H_ALIGN = {"left": 0.0, "center": 0.5, "right": 1.0}
V_ALIGN = {"top": 0.0, "middle": 0.5, "bottom": 1.0}

SEPIA = (
    0.393, 0.769, 0.189, 0,
    0.349, 0.686, 0.168, 0,
    0.272, 0.534, 0.131, 0,
)


class ImageCommandError(ConfigurationError):
    """Error raised for a command without a recognized output type."""

    def __init__(self, command: str):
        self.command = command
        super().__init__(f"Unrecognized image command: {command}")


Color = tuple[int, int, int, int]


def parse_color(value: str | None) -> Color | None:
    """Parse ``RRGGBBAA`` hex, padding missing digits with ``F``."""
    if not value:
        return None
    value = value.ljust(8, "F")
    return tuple(int(value[i : i + 2], 16) for i in range(0, 8, 2))  # type: ignore[return-value]


@dataclass
class ResizeData:
    width: int | None
    height: int | None
    mode: str = "resize"
    algorithm: str | None = None
    align: tuple[str | None, str | None] = (None, None)
    color: Color | None = None


@dataclass
class CropData:
    x: int
    y: int
    width: int
    height: int


@dataclass
class RotateData:
    values: list[int]
    color: Color | None = None


@dataclass
class QualityData:
    value: int | None = None
    preset: str | None = None
    near_lossless: int | None = None


def parse_resize(command: str) -> ResizeData | None:
    match = RESIZE.search(command)
    if not match:
        return None
    width, height = (None if v == "auto" else int(v) for v in match.group(1, 2))
    return ResizeData(
        width=width,
        height=height,
        mode=match.group(4) or "resize",
        algorithm=match.group(3),
        align=(match.group(5), match.group(6)),
        color=parse_color(match.group(7)),
    )


def parse_crop(command: str) -> CropData | None:
    match = CROP.search(command)
    if not match:
        return None
    x, y, width, height = (int(v) for v in match.groups())
    return CropData(x, y, width, height)


def parse_rotation(command: str) -> RotateData | None:
    match = ROTATE.search(command)
    if not match:
        return None
    values: list[int] = []
    for segment in match.group(1).split(","):
        segment = segment.strip()
        if segment and int(segment) not in values:
            values.append(int(segment))
    if not values:
        return None
    return RotateData(values, parse_color(match.group(2)))


def parse_opacity(command: str) -> float | None:
    match = OPACITY.search(command)
    if match:
        opacity = float(match.group(1))
        if 0 <= opacity < 1:
            return opacity
    return None


def parse_quality(command: str) -> QualityData | None:
    match = QUALITY.search(command)
    if not match:
        return None
    result = QualityData(preset=match.group(2))
    quality = int(match.group(1))
    if 0 <= quality <= 100:
        result.value = quality
    if match.group(3):
        near_lossless = int(match.group(3))
        if 0 <= near_lossless <= 100:
            result.near_lossless = near_lossless
    return result


def parse_method(command: str) -> list[str]:
    return METHOD.findall(command)


def replace_extension(path: Path, ext: str) -> Path:
    """Replace everything after the last dot of the file name."""
    return path.with_name(f"{path.stem}.{ext}")


def _with_alpha(source: Image.Image, result: Image.Image) -> Image.Image:
    if "A" in source.getbands():
        result = result.convert("RGBA")
        result.putalpha(source.getchannel("A"))
    return result


def _dither565(img: Image.Image) -> Image.Image:
    r, g, b = img.convert("RGB").split()
    merged = Image.merge(
        "RGB", (r.point(lambda v: v & 0xF8), g.point(lambda v: v & 0xFC), b.point(lambda v: v & 0xF8))
    )
    return _with_alpha(img, merged)


def _greyscale(img: Image.Image) -> Image.Image:
    return _with_alpha(img, ImageOps.grayscale(img.convert("RGB")).convert("RGB"))


def _invert(img: Image.Image) -> Image.Image:
    return _with_alpha(img, ImageOps.invert(img.convert("RGB")))


def _normalize(img: Image.Image) -> Image.Image:
    return _with_alpha(img, ImageOps.autocontrast(img.convert("RGB")))


def _opaque(img: Image.Image) -> Image.Image:
    if "A" not in img.getbands():
        return img
    result = img.convert("RGBA")
    result.putalpha(255)
    return result


def _sepia(img: Image.Image) -> Image.Image:
    return _with_alpha(img, img.convert("RGB").convert("RGB", SEPIA))


METHODS = {
    "dither565": _dither565,
    "greyscale": _greyscale,
    "invert": _invert,
    "normalize": _normalize,
    "opaque": _opaque,
    "sepia": _sepia,
}


class ImageProxy:
    """Applies the operations of one command to a Pillow image.

    The operations run in a fixed order: methods, resize, crop, quality or
    opacity, rotate. Each step replaces ``instance``.

    Attributes:
        instance: The current image.
        variants: ``(degrees, image)`` pairs produced by extra rotation angles.
    """

    def __init__(
        self,
        instance: Image.Image,
        file_uri: Path,
        command: str = "",
        final_as: str | None = None,
        logger: Logger | None = None,
    ):
        self.instance = instance
        self.file_uri = file_uri
        self.command = command
        self.final_as = final_as
        self.logger = logger or Logger()
        self.resize_data = parse_resize(command) if command else None
        self.crop_data = parse_crop(command) if command else None
        self.rotate_data = parse_rotation(command) if command else None
        self.quality_data = parse_quality(command) if command else None
        self.opacity_value = parse_opacity(command) if command else None
        self.method_data = parse_method(command) if command else []
        self.save_quality: int | None = None
        self.variants: list[tuple[int, Image.Image]] = []

    def method(self) -> None:
        for name in self.method_data:
            handler = METHODS.get(name)
            if handler is None:
                self.logger.write_fail(["Method not supported", f"image:{name}"])
                continue
            self.instance = handler(self.instance)

    def resize(self) -> None:
        data = self.resize_data
        if data is None:
            return
        img = self.instance
        width, height = data.width, data.height
        if width is None and height is None:
            return
        if width is None:
            width = max(1, round(img.width * height / img.height))
        elif height is None:
            height = max(1, round(img.height * width / img.width))
        method = RESAMPLING.get(data.algorithm or "", Image.Resampling.NEAREST)
        centering = (H_ALIGN.get(data.align[0] or "", 0.5), V_ALIGN.get(data.align[1] or "", 0.5))
        if data.mode == "contain":
            if data.color is not None:
                img = img.convert("RGBA")
            self.instance = ImageOps.pad(img, (width, height), method, color=data.color, centering=centering)
        elif data.mode == "cover":
            self.instance = ImageOps.fit(img, (width, height), method, centering=centering)
        elif data.mode == "scale":
            self.instance = ImageOps.contain(img, (width, height), method)
        else:
            self.instance = img.resize((width, height), method)

    def crop(self) -> None:
        data = self.crop_data
        if data is not None:
            self.instance = self.instance.crop((data.x, data.y, data.x + data.width, data.y + data.height))

    def quality(self) -> None:
        if self.quality_data is not None and self.quality_data.value is not None:
            self.save_quality = self.quality_data.value

    def opacity(self) -> None:
        if self.opacity_value is None:
            return
        img = self.instance.convert("RGBA")
        alpha = img.getchannel("A").point(lambda v: int(v * self.opacity_value))
        img.putalpha(alpha)
        self.instance = img

    def rotate(self) -> None:
        """Rotate clockwise by the first angle; queue the others as variants."""
        data = self.rotate_data
        if data is None:
            return
        fill = data.color
        for deg in data.values[1:]:
            self.variants.append((deg, self._rotated(self.instance, deg, fill)))
        if data.values[0]:
            self.instance = self._rotated(self.instance, data.values[0], fill)

    @staticmethod
    def _rotated(img: Image.Image, deg: int, fill: Color | None) -> Image.Image:
        if fill is not None:
            img = img.convert("RGBA")
        return img.rotate(-deg, expand=True, fillcolor=fill)

    def run(self, jpeg: bool) -> None:
        """Apply every parsed operation in order."""
        self.method()
        self.resize()
        self.crop()
        if jpeg and not self.final_as:
            self.quality()
        else:
            self.opacity()
        self.rotate()

    def write(self, output: Path, img: Image.Image | None = None) -> None:
        img = self.instance if img is None else img
        fmt = Image.registered_extensions().get(output.suffix.lower(), "PNG")
        params = {}
        if fmt in ("JPEG", "BMP") and img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        if fmt == "JPEG" and self.save_quality is not None:
            params["quality"] = self.save_quality
        img.save(output, fmt, **params)

    def finalize(self, output: Path, project_root: Path | None = None) -> Path:
        """Run the final format conversion, returning the finished path.

        WebP is encoded with ``cwebp`` when it is installed and with Pillow
        otherwise. The intermediate file is removed.
        """
        if self.final_as != "webp":
            return output
        webp = replace_extension(output, "webp")
        binary = find_executable("cwebp", project_root)
        encoded = False
        if binary:
            args = [binary, str(output), "-mt", "-m", "6"]
            data = self.quality_data
            if data is not None:
                if data.preset:
                    args += ["-preset", data.preset]
                if data.value is not None:
                    args += ["-q", str(data.value)]
                if data.near_lossless is not None:
                    args += ["-near_lossless", str(data.near_lossless)]
            args += ["-o", str(webp)]
            try:
                run_executable(args)
                encoded = True
            except ExecutableError as exc:
                self.logger.write_fail(["Unable to encode WebP", "cwebp"], exc)
        if not encoded:
            params = {"method": 6}
            if self.quality_data is not None and self.quality_data.value is not None:
                params["quality"] = self.quality_data.value
            with Image.open(output) as img:
                img.save(webp, "WEBP", **params)
        if webp != output:
            output.unlink(missing_ok=True)
        return webp


class ImageTransformQueue:
    """Schedules image commands against the barrier.

    Every command of an asset is one task. Extra rotation angles become
    further tasks registered while their parent task is still outstanding.

    Attributes:
        files_queued: Output paths already claimed by a command.
        files_to_remove: Originals replaced by an ``@`` command, deleted at
            finalize.
    """

    def __init__(
        self,
        barrier: AsyncTaskBarrier,
        logger: Logger | None = None,
        project_root: Path | None = None,
    ):
        self.barrier = barrier
        self.logger = logger or Logger()
        self.project_root = project_root
        self.files_queued: set[Path] = set()
        self.files_to_remove: set[Path] = set()

    async def enqueue(self, asset: ExternalAsset, command: str | None = None) -> Path | None:
        """Run one command against an asset.

        Returns:
            The path written, or None when the command was skipped.

        Raises:
            ImageCommandError: If the command names no output type.
        """
        file_uri = asset.file_uri
        if file_uri is None:
            return None
        command = (command or "").strip().lower()
        mime_type = asset.mime_type or mimetypes.guess_type(file_uri.name)[0]
        if not command or not mime_type or mime_type == "image/unknown":
            return await asyncio.to_thread(self.sniff, asset)
        if not within_size_range(file_uri, command):
            return None
        asset.mime_type = mime_type

        final_as = None
        if command.startswith("webp"):
            output_mime, save_as = OUTPUT_TYPES["jpeg" if mime_type == "image/jpeg" else "png"]
            final_as = "webp"
        else:
            for prefix, (output_mime, save_as) in OUTPUT_TYPES.items():
                if command.startswith(prefix):
                    break
            else:
                raise ImageCommandError(command)

        output = self.new_image(asset, output_mime, save_as, command)
        if output is None:
            return None
        self.logger.format_message(LogType.IMAGE, "image", [asset.relative_uri, command], color="magenta")
        proxy = await asyncio.to_thread(self._process, file_uri, command, final_as, output_mime == "image/jpeg", output)
        if proxy.variants:
            await asyncio.gather(
                *(
                    self.barrier.track(asyncio.to_thread(self._write_variant, proxy, output, deg, img, asset), asset)
                    for deg, img in proxy.variants
                )
            )
        result = await asyncio.to_thread(proxy.finalize, output, self.project_root)
        return self.finalize_image(asset, file_uri, result, command)

    def new_image(self, asset: ExternalAsset, output_mime: str, save_as: str, command: str) -> Path | None:
        """Claim an output path for a command.

        A command producing the asset's own type writes to a ``__copy__``
        sibling unless it replaces the original (``@``) and nothing else has
        claimed the original yet.
        """
        file_uri = asset.file_uri
        assert file_uri is not None
        output: Path | None = None
        if asset.mime_type == output_mime:
            if "@" not in command or file_uri in self.files_queued:
                i = 1
                while True:
                    output = replace_extension(file_uri, "__copy__." + (f"({i})." if i > 1 else "") + save_as)
                    if output not in self.files_queued:
                        break
                    i += 1
                try:
                    shutil.copyfile(file_uri, output)
                except OSError as exc:
                    self.logger.write_fail(["Unable to copy image", str(file_uri)], exc)
                    return None
        else:
            i = 1
            while True:
                output = replace_extension(file_uri, (f"({i})." if i > 1 else "") + save_as)
                if output not in self.files_queued:
                    break
                i += 1
        output = output or file_uri
        self.files_queued.add(output)
        return output

    def sniff(self, asset: ExternalAsset) -> Path | None:
        """Detect the real type of an image and rename it to match."""
        file_uri = asset.file_uri
        assert file_uri is not None
        with Image.open(file_uri) as img:
            fmt = img.format
        if fmt not in SNIFFED_TYPES:
            return file_uri
        mime_type = Image.MIME[fmt]
        output = replace_extension(file_uri, mime_type.split("/")[1])
        asset.mime_type = mime_type
        if output != file_uri:
            file_uri.rename(output)
            self._replace(asset, output)
        return output

    def finalize_image(self, asset: ExternalAsset, source: Path, output: Path, command: str) -> Path:
        """Attach a finished output to its asset."""
        if output != source:
            if "@" in command and asset.original_name is None:
                if "__copy__" in output.name and output.suffix == source.suffix:
                    output.replace(source)
                    return source
                self.files_to_remove.add(source)
                self._replace(asset, output)
            else:
                asset.transforms.append(output)
        return output

    def _replace(self, asset: ExternalAsset, output: Path) -> None:
        asset.original_name = asset.original_name or asset.filename
        asset.filename = output.name
        asset.file_uri = output
        asset.mime_type = mimetypes.guess_type(output.name)[0] or asset.mime_type

    def _process(
        self, file_uri: Path, command: str, final_as: str | None, jpeg: bool, output: Path
    ) -> ImageProxy:
        with Image.open(file_uri) as img:
            img.load()
            proxy = ImageProxy(img.copy(), file_uri, command, final_as, self.logger)
        proxy.run(jpeg)
        proxy.write(output)
        return proxy

    def _write_variant(
        self, proxy: ImageProxy, output: Path, deg: int, img: Image.Image, asset: ExternalAsset
    ) -> Path:
        variant = output.with_name(f"{output.stem}.{deg}{output.suffix}")
        proxy.write(variant, img)
        result = proxy.finalize(variant, self.project_root)
        asset.transforms.append(result)
        return result
