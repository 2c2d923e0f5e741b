"""
ANNOTATION RENDERER
===================

Draws Moondream detect/point results over an image.

Annotations arrive as normalized coordinates (fractions of width/height in
[0, 1]). They are mapped onto the *displayed* size of the image, not its
intrinsic resolution:

    pixel_x = x * display_width
    pixel_y = y * display_height

so the same result lines up whether the image is shown at 400x200 or at its
native 4000x2000.

Geometry (compute_overlay) is kept separate from drawing (AnnotationCanvas) so
the layout can be checked without looking at pixels. Every render clears the
surface and redraws everything; nothing accumulates between renders.
"""

import base64
import binascii
import io
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import requests
from PIL import Image, ImageDraw, ImageFont

from config import IMAGE_FETCH_TIMEOUT_SECONDS, MAX_IMAGE_BYTES


logger = logging.getLogger("PocketSenpai")

BOX_COLOR = "#10b981"
BOX_LINE_WIDTH = 3
BOX_CHIP_HEIGHT = 20

POINT_COLOR = "#ef4444"
POINT_RADIUS = 8
POINT_RING_WIDTH = 2
POINT_DOT_RADIUS = 3
POINT_CHIP_HEIGHT = 18
POINT_CHIP_OFFSET = 12

LABEL_TEXT_COLOR = "#ffffff"
CHIP_PADDING = 4

TRANSPARENT = (0, 0, 0, 0)


# ==============================================================================
# GEOMETRY
# ==============================================================================

@dataclass(frozen=True)
class BoxShape:
    left: float
    top: float
    right: float
    bottom: float
    label: str


@dataclass(frozen=True)
class PointShape:
    x: float
    y: float
    label: str


@dataclass(frozen=True)
class AnnotationOverlay:
    """Pixel-space shapes for one render. Recomputed, never patched."""

    width: int
    height: int
    boxes: Tuple[BoxShape, ...] = ()
    points: Tuple[PointShape, ...] = ()


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _unit(value: Any) -> Optional[float]:
    """Return value as a float if it is a number in [0, 1], else None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if 0.0 <= value <= 1.0 else None


def compute_overlay(
    display_size: Tuple[int, int],
    boxes: Optional[Iterable[Any]] = None,
    points: Optional[Iterable[Any]] = None,
    label: str = "object",
) -> AnnotationOverlay:
    """
    Map normalized boxes ({xMin, yMin, xMax, yMax}) and points ({x, y}) to
    pixel coordinates for an image displayed at display_size (width, height).

    Labels are "<label> <n>" with n the 1-indexed position in the input.
    Entries with coordinates outside [0, 1] or min > max are skipped.
    """
    width, height = display_size
    label = label or "object"

    box_shapes = []
    for index, box in enumerate(boxes or [], start=1):
        x_min, y_min = _unit(_field(box, "xMin")), _unit(_field(box, "yMin"))
        x_max, y_max = _unit(_field(box, "xMax")), _unit(_field(box, "yMax"))
        if None in (x_min, y_min, x_max, y_max) or x_min > x_max or y_min > y_max:
            logger.debug("Skipping malformed box #%d: %r", index, box)
            continue
        box_shapes.append(
            BoxShape(
                left=x_min * width,
                top=y_min * height,
                right=x_max * width,
                bottom=y_max * height,
                label=f"{label} {index}",
            )
        )

    point_shapes = []
    for index, point in enumerate(points or [], start=1):
        x, y = _unit(_field(point, "x")), _unit(_field(point, "y"))
        if x is None or y is None:
            logger.debug("Skipping malformed point #%d: %r", index, point)
            continue
        point_shapes.append(PointShape(x=x * width, y=y * height, label=f"{label} {index}"))

    return AnnotationOverlay(
        width=width,
        height=height,
        boxes=tuple(box_shapes),
        points=tuple(point_shapes),
    )


# ==============================================================================
# DRAWING
# ==============================================================================

def _text_size(draw: ImageDraw.ImageDraw, text: str, font) -> Tuple[float, float]:
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    return right - left, bottom - top


class AnnotationCanvas:
    """
    A transparent RGBA surface holding the overlay for one image.

    render() always starts from a cleared surface, so re-rendering with fewer
    annotations leaves no trace of the previous ones.
    """

    def __init__(self, font=None):
        self.font = font or ImageFont.load_default()
        self.surface: Optional[Image.Image] = None
        self.overlay: Optional[AnnotationOverlay] = None

    def clear(self, size: Tuple[int, int]) -> Image.Image:
        if self.surface is None or self.surface.size != tuple(size):
            self.surface = Image.new("RGBA", tuple(size), TRANSPARENT)
        else:
            self.surface.paste(TRANSPARENT, (0, 0, size[0], size[1]))
        return self.surface

    def render(
        self,
        display_size: Tuple[int, int],
        boxes: Optional[Iterable[Any]] = None,
        points: Optional[Iterable[Any]] = None,
        label: str = "object",
    ) -> Image.Image:
        overlay = compute_overlay(display_size, boxes, points, label)
        surface = self.clear((overlay.width, overlay.height))
        draw = ImageDraw.Draw(surface)

        for box in overlay.boxes:
            self._draw_box(draw, box)
        for point in overlay.points:
            self._draw_point(draw, point)

        self.overlay = overlay
        return surface

    def _draw_box(self, draw: ImageDraw.ImageDraw, box: BoxShape) -> None:
        draw.rectangle(
            (box.left, box.top, box.right, box.bottom),
            outline=BOX_COLOR,
            width=BOX_LINE_WIDTH,
        )
        # Label chip sits directly above the top-left corner.
        text_w, text_h = _text_size(draw, box.label, self.font)
        chip_top = box.top - BOX_CHIP_HEIGHT
        draw.rectangle(
            (box.left, chip_top, box.left + text_w + 2 * CHIP_PADDING, box.top),
            fill=BOX_COLOR,
        )
        draw.text(
            (box.left + CHIP_PADDING, chip_top + (BOX_CHIP_HEIGHT - text_h) / 2),
            box.label,
            fill=LABEL_TEXT_COLOR,
            font=self.font,
        )

    def _draw_point(self, draw: ImageDraw.ImageDraw, point: PointShape) -> None:
        x, y = point.x, point.y
        draw.ellipse(
            (x - POINT_RADIUS, y - POINT_RADIUS, x + POINT_RADIUS, y + POINT_RADIUS),
            fill=POINT_COLOR,
            outline=LABEL_TEXT_COLOR,
            width=POINT_RING_WIDTH,
        )
        draw.ellipse(
            (x - POINT_DOT_RADIUS, y - POINT_DOT_RADIUS, x + POINT_DOT_RADIUS, y + POINT_DOT_RADIUS),
            fill=LABEL_TEXT_COLOR,
        )

        text_w, text_h = _text_size(draw, point.label, self.font)
        chip_left = x + POINT_CHIP_OFFSET
        chip_top = y - POINT_CHIP_HEIGHT / 2
        draw.rectangle(
            (chip_left, chip_top, chip_left + text_w + 2 * CHIP_PADDING, chip_top + POINT_CHIP_HEIGHT),
            fill=POINT_COLOR,
        )
        draw.text(
            (chip_left + CHIP_PADDING, chip_top + (POINT_CHIP_HEIGHT - text_h) / 2),
            point.label,
            fill=LABEL_TEXT_COLOR,
            font=self.font,
        )


# ==============================================================================
# IMAGE LOADING AND COMPOSITING
# ==============================================================================

def _check_public_host(url: str) -> None:
    """Raise ValueError unless every address the URL's host resolves to is public."""
    host = urlsplit(url).hostname
    if not host:
        raise ValueError("Image URL has no host")
    try:
        infos = socket.getaddrinfo(host, None)
    except socket.gaierror as e:
        raise ValueError(f"Could not resolve image host {host}: {e}") from e

    for info in infos:
        address = ipaddress.ip_address(info[4][0].split("%", 1)[0])
        if not address.is_global:
            raise ValueError(f"Image host {host} resolves to a non-public address")


def _download(url: str, timeout: float, max_bytes: int) -> bytes:
    _check_public_host(url)
    try:
        # Redirects are refused; a public URL could bounce to an internal one.
        with requests.get(url, timeout=timeout, stream=True, allow_redirects=False) as response:
            if response.is_redirect:
                raise ValueError("Image URL redirects are not followed")
            response.raise_for_status()

            declared = response.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise ValueError(f"Image is larger than {max_bytes} bytes")

            raw = bytearray()
            for chunk in response.iter_content(chunk_size=64 * 1024):
                raw.extend(chunk)
                if len(raw) > max_bytes:
                    raise ValueError(f"Image is larger than {max_bytes} bytes")
    except requests.exceptions.RequestException as e:
        raise ValueError(f"Could not fetch image: {e}") from e
    return bytes(raw)


def load_image(
    reference: str,
    timeout: float = IMAGE_FETCH_TIMEOUT_SECONDS,
    max_bytes: int = MAX_IMAGE_BYTES,
) -> Image.Image:
    """
    Open an image from a data URI (data:image/...;base64,...) or a public
    http(s) URL, refusing anything over max_bytes.

    Raises ValueError for anything that is not a decodable image.
    """
    if not reference:
        raise ValueError("Image reference is empty")

    if reference.startswith("data:"):
        header, _, encoded = reference.partition(",")
        if ";base64" not in header or not encoded:
            raise ValueError("Only base64 data URIs are supported")
        # Four base64 characters carry three bytes.
        if len(encoded) * 3 // 4 > max_bytes:
            raise ValueError(f"Image is larger than {max_bytes} bytes")
        try:
            raw = base64.b64decode(encoded, validate=False)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 image data: {e}") from e
    elif reference.startswith(("http://", "https://")):
        raw = _download(reference, timeout, max_bytes)
    else:
        raise ValueError("Image reference must be a data URI or an http(s) URL")

    try:
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (OSError, Image.DecompressionBombError) as e:
        raise ValueError(f"Could not decode image: {e}") from e
    return image


def annotate_image(
    image: Image.Image,
    boxes: Optional[Iterable[Any]] = None,
    points: Optional[Iterable[Any]] = None,
    label: str = "object",
    display_size: Optional[Tuple[int, int]] = None,
) -> Image.Image:
    """
    Return an RGB copy of image, shown at display_size (defaults to the image's
    own size), with the annotation overlay composited on top.
    """
    size = tuple(display_size) if display_size else image.size
    base = image.convert("RGBA")
    if base.size != size:
        base = base.resize(size)

    overlay = AnnotationCanvas().render(size, boxes, points, label)
    return Image.alpha_composite(base, overlay).convert("RGB")
