"""Viewport-by-viewport page capture and pyvips composition."""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, List, Sequence

import pyvips

from pagerelay.errors import CaptureError

LOGGER = logging.getLogger(__name__)

_PNG_ENCODE_ARGS = {
    "compression": 6,
    "interlace": False,
}
_PAGE_METRICS_JS = (
    "() => [document.documentElement.scrollHeight, document.documentElement.clientHeight]"
)
_SCROLL_JS = "(y) => window.scrollTo(0, y)"


@dataclass(slots=True)
class Tile:
    """One viewport screenshot plus where it sits on the page."""

    index: int
    png_bytes: bytes
    y_offset: int
    width: int
    height: int
    is_last: bool


@dataclass(slots=True)
class CaptureRun:
    """Tiles collected by one :meth:`ScreenshotStitcher.collect_tiles` call."""

    tiles: List[Tile]
    page_height: int
    viewport_height: int
    truncated: bool = False


class ScreenshotStitcher:
    """Scrolls a page one viewport at a time and composes the tiles."""

    def __init__(self, *, settle_ms: int = 500, max_tiles: int = 200) -> None:
        self.settle_ms = settle_ms
        self.max_tiles = max_tiles

    async def capture_full_page(self, page: Any) -> bytes:
        """Return one PNG covering the whole page (possibly from partial tiles)."""

        run = await self.collect_tiles(page)
        if not run.tiles:
            raise CaptureError("No images captured")
        if run.truncated:
            LOGGER.warning(
                "Full-page capture incomplete: %d tile(s) kept for page height %d",
                len(run.tiles),
                run.page_height,
            )
        return await asyncio.to_thread(stitch_tiles, run.tiles)

    async def collect_tiles(self, page: Any) -> CaptureRun:
        page_height, viewport_height = await page.evaluate(_PAGE_METRICS_JS)
        page_height = int(page_height)
        viewport_height = max(1, int(viewport_height))
        LOGGER.debug("Capturing page height=%d viewport=%d", page_height, viewport_height)

        tiles: List[Tile] = []
        captured_height = 0
        truncated = False
        await page.evaluate(_SCROLL_JS, 0)

        while True:
            # Decided before the screenshot so the flag describes this tile.
            is_last = captured_height + viewport_height >= page_height
            try:
                png = await page.screenshot(type="png", full_page=False)
                if not png:
                    raise CaptureError("Screenshot capture returned no data")
                width, height = _tile_size(png)
            except Exception as exc:  # noqa: BLE001 - partial pages beat no page
                LOGGER.warning("Screenshot capture failed after %d tile(s): %s", len(tiles), exc)
                truncated = True
                break

            tiles.append(
                Tile(
                    index=len(tiles),
                    png_bytes=png,
                    y_offset=captured_height,
                    width=width,
                    height=height,
                    is_last=is_last,
                )
            )
            captured_height += viewport_height

            if is_last:
                break
            if len(tiles) >= self.max_tiles:
                LOGGER.warning("Stopping capture at max_tiles=%d (page height %d)", self.max_tiles, page_height)
                truncated = True
                break

            try:
                await page.evaluate(_SCROLL_JS, captured_height)
                await page.wait_for_timeout(self.settle_ms)
            except Exception as exc:  # noqa: BLE001 - keep what was captured
                LOGGER.warning("Scroll to y=%d failed after %d tile(s): %s", captured_height, len(tiles), exc)
                truncated = True
                break

        return CaptureRun(
            tiles=tiles,
            page_height=page_height,
            viewport_height=viewport_height,
            truncated=truncated,
        )


def stitch_tiles(tiles: Sequence[Tile]) -> bytes:
    """Stack tiles top to bottom on a canvas sized from the first tile.

    Every tile is placed at ``index * first.height``; a short final viewport is
    therefore drawn at a full-tile offset, the same as the source pixels.
    """

    if not tiles:
        raise CaptureError("No tiles to stitch")

    first = pyvips.Image.new_from_buffer(tiles[0].png_bytes, "")
    tile_height = first.height
    canvas = pyvips.Image.black(first.width, tile_height * len(tiles), bands=first.bands)
    canvas = canvas.copy(interpretation=first.interpretation)

    for position, tile in enumerate(tiles):
        image = first if position == 0 else pyvips.Image.new_from_buffer(tile.png_bytes, "")
        if image.bands != first.bands:
            image = _match_bands(image, first.bands)
        canvas = canvas.insert(image, 0, position * tile_height)

    return canvas.cast(first.format).write_to_buffer(".png", **_PNG_ENCODE_ARGS)


def encode_data_url(png_bytes: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes).decode("ascii")


def _match_bands(image: Any, bands: int) -> Any:
    if image.bands > bands:
        return image.extract_band(0, n=bands)
    return image.bandjoin_const([255] * (bands - image.bands))


def _tile_size(png: bytes) -> tuple[int, int]:
    try:
        image = pyvips.Image.new_from_buffer(png, "", access="sequential")
    except pyvips.Error as exc:
        raise CaptureError(f"Screenshot is not a decodable image: {exc}") from exc
    return image.width, image.height
