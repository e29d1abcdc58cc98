"""
================================================================================
Screenshot Factory
================================================================================

Deterministic synthetic "page" screenshots for visual validation tests.

A page is a white canvas with a header bar, a sidebar, a footer and a few
content cards. Tests inject defects as coloured blocks and capture noise as
small seeded per-pixel jitter.

Usage:
    screenshot = make_screenshot(page_id="homepage")
    broken = make_screenshot(blocks=[Block(100, 100, 50, 50, RED)])

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import Sequence, Tuple

import numpy as np
from PIL import Image, ImageDraw

from visual_validation.models import DomRegion, Screenshot


RGB = Tuple[int, int, int]

WHITE: RGB = (255, 255, 255)
RED: RGB = (255, 0, 0)
NAVY: RGB = (24, 40, 92)
GREY: RGB = (220, 224, 230)
TEAL: RGB = (0, 128, 128)


@dataclass(frozen=True)
class Block:
    """Solid rectangle drawn on top of the page."""
    x: int
    y: int
    width: int
    height: int
    color: RGB = RED


@dataclass(frozen=True)
class PageLayout:
    """Static page skeleton; element boxes are fractions of the page size."""
    background: RGB = WHITE
    header_height: int = 60
    footer_height: int = 40
    sidebar_width: int = 80
    cards: Tuple[Tuple[float, float, float, float], ...] = field(
        default=((0.45, 0.20, 0.20, 0.25), (0.70, 0.20, 0.20, 0.25), (0.45, 0.55, 0.45, 0.25))
    )

    def draw(self, image: Image.Image) -> None:
        width, height = image.size
        draw = ImageDraw.Draw(image)
        draw.rectangle([0, 0, width - 1, self.header_height - 1], fill=NAVY)
        draw.rectangle([0, height - self.footer_height, width - 1, height - 1], fill=GREY)
        draw.rectangle(
            [width - self.sidebar_width, self.header_height, width - 1, height - self.footer_height - 1],
            fill=GREY,
        )
        for fx, fy, fw, fh in self.cards:
            x, y = int(fx * width), int(fy * height)
            draw.rectangle([x, y, x + int(fw * width) - 1, y + int(fh * height) - 1], outline=TEAL, width=3)


def make_png(
    width: int = 640,
    height: int = 480,
    blocks: Sequence[Block] = (),
    noise: int = 0,
    seed: int = 0,
    layout: PageLayout = PageLayout(),
) -> bytes:
    """
    Render a synthetic page as PNG bytes.

    Args:
        width: Page width in pixels
        height: Page height in pixels
        blocks: Solid rectangles drawn over the layout (injected defects)
        noise: Max absolute per-channel jitter in 8-bit units (capture noise)
        seed: Seed for the jitter
        layout: Page skeleton
    """
    image = Image.new("RGB", (width, height), layout.background)
    layout.draw(image)

    draw = ImageDraw.Draw(image)
    for block in blocks:
        draw.rectangle(
            [block.x, block.y, block.x + block.width - 1, block.y + block.height - 1],
            fill=block.color,
        )

    if noise:
        rng = np.random.default_rng(seed)
        pixels = np.asarray(image, dtype=np.int16)
        pixels = pixels + rng.integers(-noise, noise + 1, size=pixels.shape)
        image = Image.fromarray(np.clip(pixels, 0, 255).astype(np.uint8))

    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def make_screenshot(
    width: int = 640,
    height: int = 480,
    page_id: str = "homepage",
    blocks: Sequence[Block] = (),
    noise: int = 0,
    seed: int = 0,
    dom_regions: Sequence[DomRegion] = (),
) -> Screenshot:
    """Synthetic page wrapped as a Screenshot with its declared size."""
    return Screenshot(
        image_bytes=make_png(width, height, blocks=blocks, noise=noise, seed=seed),
        width=width,
        height=height,
        page_id=page_id,
        dom_regions=tuple(dom_regions),
    )
