"""
================================================================================
Image Preprocessor
================================================================================

Turns a raw Screenshot into the canonical PreprocessedImage used for training
and detection.

Steps (all deterministic):
    1. Decode with Pillow and verify the decoded size matches the capture
    2. Blank configured mask regions and DOM regions with masked tags
    3. Resize to the target resolution (unless "native")
    4. Colour-normalize: none / grayscale / perceptual (CIE L*a*b*)

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import Any, FrozenSet, List, Optional, Sequence, Tuple, Union

import numpy as np
from loguru import logger
from PIL import Image, ImageDraw, UnidentifiedImageError

from .errors import InvalidImageError
from .models import ColorMode, DomRegion, PreprocessedImage, Rect, Screenshot, freeze_array


NATIVE_RESOLUTION = "native"

# Fill used for blanked regions (RGB)
DEFAULT_MASK_FILL = (0, 0, 0)

# sRGB D65 white point for the Lab conversion
_XYZ_WHITE = np.array([0.95047, 1.0, 1.08883])
_RGB_TO_XYZ = np.array([
    [0.4124564, 0.3575761, 0.1804375],
    [0.2126729, 0.7151522, 0.0721750],
    [0.0193339, 0.1191920, 0.9503041],
])


@dataclass(frozen=True)
class PreprocessConfig:
    """
    Preprocessing configuration.

    Attributes:
        target_resolution: "native" or a fixed (width, height)
        color_mode: Colour normalization mode
        masks: Rectangles (screenshot coordinates) blanked before comparison
        mask_tags: DOM region tags blanked before comparison
        mask_fill: RGB fill colour for blanked pixels
    """
    target_resolution: Union[str, Tuple[int, int]] = NATIVE_RESOLUTION
    color_mode: ColorMode = ColorMode.NONE
    masks: Tuple[Rect, ...] = ()
    mask_tags: FrozenSet[str] = field(default_factory=frozenset)
    mask_fill: Tuple[int, int, int] = DEFAULT_MASK_FILL

    def __post_init__(self) -> None:
        resolution = self.target_resolution
        if resolution != NATIVE_RESOLUTION:
            if isinstance(resolution, str):
                # "640x480"
                parts = resolution.lower().split("x")
                if len(parts) != 2:
                    raise ValueError(f"Invalid target resolution: {resolution!r}")
                resolution = (int(parts[0]), int(parts[1]))
            width, height = int(resolution[0]), int(resolution[1])
            if width <= 0 or height <= 0:
                raise ValueError(f"Invalid target resolution: {resolution!r}")
            object.__setattr__(self, "target_resolution", (width, height))
        object.__setattr__(self, "color_mode", ColorMode(self.color_mode))
        object.__setattr__(self, "masks", tuple(Rect.from_value(m) for m in self.masks))
        object.__setattr__(self, "mask_tags", frozenset(self.mask_tags))
        object.__setattr__(self, "mask_fill", tuple(int(c) for c in self.mask_fill))

    @property
    def is_native(self) -> bool:
        return self.target_resolution == NATIVE_RESOLUTION

    @classmethod
    def from_config(cls, config) -> "PreprocessConfig":
        """Build from the ``preprocess`` section of a ConfigLoader."""
        return cls(
            target_resolution=config.get("preprocess.target_resolution", NATIVE_RESOLUTION),
            color_mode=config.get("preprocess.color_mode", ColorMode.NONE.value),
            masks=tuple(config.get("preprocess.masks", None) or ()),
            mask_tags=frozenset(config.get("preprocess.mask_tags", ()) or ()),
            mask_fill=tuple(config.get("preprocess.mask_fill", None) or DEFAULT_MASK_FILL),
        )


def decode_image(image_bytes: bytes) -> Image.Image:
    """Decode image bytes into an RGB Pillow image."""
    if not image_bytes:
        raise InvalidImageError("Screenshot contains no image data")
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as e:
        raise InvalidImageError(f"Cannot decode screenshot: {e}") from e

    if image.width <= 0 or image.height <= 0:
        raise InvalidImageError(f"Screenshot has zero dimensions: {image.width}x{image.height}")
    if image.mode != "RGB":
        if image.mode in ("RGBA", "LA", "P"):
            # Composite transparency onto white so captures with alpha stay stable
            rgba = image.convert("RGBA")
            background = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
            image = Image.alpha_composite(background, rgba)
        image = image.convert("RGB")
    return image


def _apply_masks(image: Image.Image, rects: Sequence[Rect], fill: Tuple[int, int, int]) -> Image.Image:
    if not rects:
        return image
    masked = image.copy()
    draw = ImageDraw.Draw(masked)
    for rect in rects:
        clipped = rect.clip(image.width, image.height)
        if clipped.is_empty():
            continue
        draw.rectangle(
            [clipped.x, clipped.y, clipped.right - 1, clipped.bottom - 1],
            fill=tuple(fill),
        )
    return masked


def _srgb_to_lab(rgb: np.ndarray) -> np.ndarray:
    """Convert sRGB in [0, 1] to L*a*b* scaled into [0, 1]."""
    linear = np.where(rgb <= 0.04045, rgb / 12.92, ((rgb + 0.055) / 1.055) ** 2.4)
    xyz = linear @ _RGB_TO_XYZ.T / _XYZ_WHITE
    delta = 6.0 / 29.0
    f = np.where(xyz > delta ** 3, np.cbrt(xyz), xyz / (3 * delta ** 2) + 4.0 / 29.0)
    lightness = 116.0 * f[..., 1] - 16.0
    a = 500.0 * (f[..., 0] - f[..., 1])
    b = 200.0 * (f[..., 1] - f[..., 2])
    return np.stack(
        [lightness / 100.0, (a + 128.0) / 255.0, (b + 128.0) / 255.0],
        axis=-1,
    )


def normalize_colors(image: Image.Image, mode: ColorMode) -> np.ndarray:
    """Return an H x W x C float array for the requested colour mode."""
    if mode is ColorMode.GRAYSCALE:
        gray = np.asarray(image.convert("L"), dtype=np.float64) / 255.0
        return gray[..., np.newaxis]

    rgb = np.asarray(image, dtype=np.float64) / 255.0
    if mode is ColorMode.PERCEPTUAL:
        return _srgb_to_lab(rgb)
    return rgb


def preprocess(screenshot: Screenshot, config: Optional[PreprocessConfig] = None) -> PreprocessedImage:
    """
    Normalize a screenshot into its canonical representation.

    Args:
        screenshot: Raw capture
        config: Preprocessing configuration (defaults: native size, RGB, no masks)

    Returns:
        Read-only PreprocessedImage; identical inputs give identical bytes

    Raises:
        InvalidImageError: Undecodable bytes, zero dimensions or a decoded
            size that disagrees with the declared capture size
    """
    config = config or PreprocessConfig()

    if screenshot.width <= 0 or screenshot.height <= 0:
        raise InvalidImageError(
            f"Screenshot declares zero dimensions: {screenshot.width}x{screenshot.height}"
        )

    image = decode_image(screenshot.image_bytes)
    if image.size != (screenshot.width, screenshot.height):
        raise InvalidImageError(
            f"Decoded size {image.width}x{image.height} does not match "
            f"declared size {screenshot.width}x{screenshot.height}"
        )

    mask_rects = list(config.masks)
    mask_rects.extend(r.rect for r in screenshot.dom_regions if r.tag in config.mask_tags)
    image = _apply_masks(image, mask_rects, config.mask_fill)

    dom_regions: Tuple[DomRegion, ...] = tuple(
        r for r in screenshot.dom_regions if r.tag not in config.mask_tags
    )
    if not config.is_native and image.size != config.target_resolution:
        target_w, target_h = config.target_resolution
        sx, sy = target_w / image.width, target_h / image.height
        image = image.resize((target_w, target_h), resample=Image.Resampling.BILINEAR)
        dom_regions = tuple(DomRegion(r.rect.scaled(sx, sy), r.tag) for r in dom_regions)

    dom_regions = tuple(
        DomRegion(r.rect.clip(image.width, image.height), r.tag)
        for r in dom_regions
        if not r.rect.clip(image.width, image.height).is_empty()
    )

    pixels = normalize_colors(image, config.color_mode)
    logger.debug(
        f"Preprocessed '{screenshot.page_id}' {screenshot.width}x{screenshot.height} -> "
        f"{image.width}x{image.height} ({config.color_mode.value}, {len(mask_rects)} mask(s))"
    )

    return PreprocessedImage(
        pixels=freeze_array(pixels),
        color_mode=config.color_mode,
        page_id=screenshot.page_id,
        timestamp=screenshot.timestamp,
        dom_regions=dom_regions,
        source_size=(screenshot.width, screenshot.height),
    )


class ImagePreprocessor:
    """
    Preprocessing stage bound to one PreprocessConfig.

    Usage:
        >>> preprocessor = ImagePreprocessor(PreprocessConfig(target_resolution="640x480"))
        >>> preprocessor.preprocess(screenshot).shape
        (480, 640, 3)
    """

    def __init__(self, config: Optional[PreprocessConfig] = None) -> None:
        self.config = config or PreprocessConfig()

    def preprocess(self, screenshot: Screenshot) -> PreprocessedImage:
        return preprocess(screenshot, self.config)

    def preprocess_all(self, screenshots: Sequence[Screenshot]) -> List[PreprocessedImage]:
        """Preprocess a batch; the first invalid screenshot aborts the batch."""
        return [self.preprocess(s) for s in screenshots]


def load_screenshot(
    image_bytes: bytes,
    page_id: str = "",
    dom_regions: Sequence[Any] = (),
) -> Screenshot:
    """
    Build a Screenshot from encoded bytes, reading the size from the image.

    Convenience for callers that only hold a PNG (files, Allure attachments).
    """
    image = decode_image(image_bytes)
    regions = tuple(
        r if isinstance(r, DomRegion) else DomRegion.from_dict(r) for r in dom_regions
    )
    return Screenshot(
        image_bytes=image_bytes,
        width=image.width,
        height=image.height,
        page_id=page_id,
        dom_regions=regions,
    )


__all__ = [
    "NATIVE_RESOLUTION",
    "PreprocessConfig",
    "ImagePreprocessor",
    "decode_image",
    "normalize_colors",
    "preprocess",
    "load_screenshot",
]
