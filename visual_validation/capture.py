"""
================================================================================
Screenshot Capture
================================================================================

Turns an open Playwright page into a Screenshot for the pipeline.

The pipeline never drives a browser. Callers open and navigate the page
(e.g. through their own browser fixtures) and hand it over here; this module
only takes the PNG and records where selected elements were rendered.

Usage:
    page = await browser.new_page()
    await page.goto("https://example.com")
    screenshot = await capture_screenshot(
        page, "homepage", dom_selectors={"header": "header", "banner": ".promo"}
    )

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations

from typing import List, Mapping, Optional, Sequence, Tuple, Union

import allure
from loguru import logger
from playwright.async_api import Page

from .models import DomRegion, Rect, Screenshot
from .preprocessor import decode_image


SelectorSpec = Union[Mapping[str, str], Sequence[str]]


def _selector_items(dom_selectors: Optional[SelectorSpec]) -> List[Tuple[str, str]]:
    """Normalize ``{tag: selector}`` or ``[selector, ...]`` (tag = selector)."""
    if not dom_selectors:
        return []
    if isinstance(dom_selectors, Mapping):
        return list(dom_selectors.items())
    return [(selector, selector) for selector in dom_selectors]


async def _page_geometry(page: Page, full_page: bool) -> Tuple[float, float, float]:
    """Device pixel ratio and the offset of the capture origin in CSS pixels."""
    ratio, scroll_x, scroll_y = await page.evaluate(
        "() => [window.devicePixelRatio || 1, window.scrollX, window.scrollY]"
    )
    if not full_page:
        scroll_x = scroll_y = 0
    return float(ratio), float(scroll_x), float(scroll_y)


@allure.step("Capture screenshot: {page_id}")
async def capture_screenshot(
    page: Page,
    page_id: str,
    dom_selectors: Optional[SelectorSpec] = None,
    full_page: bool = False,
) -> Screenshot:
    """
    Capture ``page`` as a Screenshot.

    Args:
        page: Open Playwright page
        page_id: Logical page identifier stored with the capture
        dom_selectors: ``{tag: selector}`` (or a list of selectors used as
            their own tags); every visible match becomes a DomRegion in
            screenshot pixel coordinates
        full_page: Capture the full scrollable page instead of the viewport

    Returns:
        Screenshot whose declared size is the decoded PNG size
    """
    png = await page.screenshot(full_page=full_page, type="png")
    image = decode_image(png)

    regions: List[DomRegion] = []
    items = _selector_items(dom_selectors)
    if items:
        ratio, offset_x, offset_y = await _page_geometry(page, full_page)
        for tag, selector in items:
            for element in await page.locator(selector).all():
                box = await element.bounding_box()
                if box is None:
                    # Not rendered (display: none, detached)
                    continue
                rect = Rect(
                    x=round((box["x"] + offset_x) * ratio),
                    y=round((box["y"] + offset_y) * ratio),
                    width=round(box["width"] * ratio),
                    height=round(box["height"] * ratio),
                ).clip(image.width, image.height)
                if not rect.is_empty():
                    regions.append(DomRegion(rect=rect, tag=tag))

    logger.debug(
        f"Captured '{page_id}' {image.width}x{image.height} "
        f"(full_page={full_page}, dom_regions={len(regions)})"
    )
    return Screenshot(
        image_bytes=png,
        width=image.width,
        height=image.height,
        page_id=page_id,
        dom_regions=tuple(regions),
    )


__all__ = [
    "capture_screenshot",
]
