"""
================================================================================
Allure Report Utilities
================================================================================

Helpers for attaching visual validation evidence to Allure reports.

Features:
- JSON and PNG attachment helpers
- Verdict attachment with an anomaly overlay
- Heatmap attachment for per-pixel excess maps

Attachments are silently dropped when no Allure listener is active (plain
pytest runs, library use outside tests).

================================================================================
"""

import io
import json
from typing import Any, Optional, Sequence, Tuple, Union

import allure
import numpy as np
from loguru import logger
from PIL import Image, ImageDraw

from visual_validation.models import AnomalyRegion, Severity, ValidationResult


SEVERITY_COLORS = {
    Severity.MINOR: (255, 200, 0),
    Severity.MODERATE: (255, 128, 0),
    Severity.SEVERE: (255, 0, 0),
}


# ================================================================================
# Attachment Helpers
# ================================================================================

def attach_json(data: Any, name: str) -> None:
    """Attach ``data`` as pretty-printed JSON; non-JSON values are stringified."""
    allure.attach(json.dumps(data, indent=2, default=str), name=name,
                  attachment_type=allure.attachment_type.JSON)


def attach_png(image: Union[bytes, Image.Image], name: str) -> None:
    """Attach encoded PNG bytes or a Pillow image."""
    if isinstance(image, Image.Image):
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        image = buffer.getvalue()
    allure.attach(image, name=name, attachment_type=allure.attachment_type.PNG)


# ================================================================================
# Visual Evidence
# ================================================================================

def render_anomaly_overlay(
    image_bytes: bytes,
    anomalies: Sequence[AnomalyRegion],
    canonical_size: Optional[Tuple[int, int]] = None,
    line_width: int = 2,
) -> Image.Image:
    """
    Draw anomaly boxes over a screenshot.

    Args:
        image_bytes: Encoded screenshot
        anomalies: Anomalies in canonical image coordinates
        canonical_size: (width, height) the anomalies refer to; the screenshot
            is resized to it when it differs
        line_width: Box outline width in pixels

    Returns:
        RGB Pillow image with one outlined, labelled box per anomaly
    """
    image = Image.open(io.BytesIO(image_bytes)).convert("RGB")
    if canonical_size and image.size != tuple(canonical_size):
        image = image.resize(tuple(canonical_size), resample=Image.Resampling.BILINEAR)

    draw = ImageDraw.Draw(image)
    for anomaly in anomalies:
        rect = anomaly.rect
        color = SEVERITY_COLORS.get(anomaly.severity, (128, 128, 128))
        draw.rectangle(
            [rect.x, rect.y, rect.right - 1, rect.bottom - 1],
            outline=color,
            width=line_width,
        )
        draw.text((rect.x + 2, max(rect.y - 12, 0)), f"{anomaly.kind} ({anomaly.severity.value})", fill=color)
    return image


def render_heatmap(excess: np.ndarray, scale: Optional[float] = None) -> Image.Image:
    """
    Render an excess map as a red-on-black heatmap.

    Args:
        excess: H x W excess map
        scale: Excess value rendered at full intensity (default: map maximum)
    """
    peak = scale or float(excess.max()) or 1.0
    intensity = np.clip(excess / peak, 0.0, 1.0)
    rgb = np.zeros(excess.shape + (3,), dtype=np.uint8)
    rgb[..., 0] = (intensity * 255).astype(np.uint8)
    return Image.fromarray(rgb)


def attach_validation_result(
    result: ValidationResult,
    image_bytes: Optional[bytes] = None,
    canonical_size: Optional[Tuple[int, int]] = None,
    excess: Optional[np.ndarray] = None,
    name: Optional[str] = None,
):
    """
    Attach a verdict (JSON) and, when the screenshot is given, an overlay of
    its anomalies. An excess map, when given, is attached as a heatmap.
    """
    name = name or f"{result.baseline} v{result.artifact_version}"
    status = "PASS" if result.is_valid else "FAIL"

    with allure.step(f"Visual verdict: {name} {status} (confidence {result.confidence:.3f})"):
        attach_json(result.to_dict(), name=f"{name} verdict")
        if image_bytes is not None and result.anomalies:
            try:
                overlay = render_anomaly_overlay(image_bytes, result.anomalies, canonical_size)
            except OSError as e:
                logger.warning(f"Could not render anomaly overlay for {name}: {e}")
            else:
                attach_png(overlay, name=f"{name} anomalies")
        if excess is not None:
            attach_png(render_heatmap(excess), name=f"{name} heatmap")
