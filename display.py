"""
CHIP-8 Framebuffer
==================
64x32 monochrome display held as one byte per pixel (0 or 1), row-major:
``index = y * width + x``.  The execution engine mutates it only through
``clear()`` (CLS) and ``blit_sprite()`` (DRW); ``fill()`` and
``randomize()`` are debug aids for the monitor.

There is no double-buffering and no frame clock.  Renderers read the
pixels (``render_text()``, ``snapshot()``) on their own cadence.

Sprite addressing
-----------------
By default positions are linear and unclamped: a sprite near the right
edge spills into the next scanline, and pixels past the end of the buffer
are dropped.  ``wrap=True`` wraps both axes to the opposite edge instead.
"""

from __future__ import annotations
import random
from typing import Optional

SCREEN_WIDTH = 64
SCREEN_HEIGHT = 32


class Framebuffer:
    """Monochrome pixel surface with XOR sprite blitting."""

    def __init__(self, width: int = SCREEN_WIDTH, height: int = SCREEN_HEIGHT,
                 wrap: bool = False):
        self.width = width
        self.height = height
        self.wrap = wrap
        self.pixels = bytearray(width * height)

    def __len__(self) -> int:
        return len(self.pixels)

    # -- bulk operations --

    def clear(self):
        """Zero every pixel."""
        self.pixels[:] = bytes(len(self.pixels))

    def fill(self):
        """Set every pixel."""
        self.pixels[:] = b"\x01" * len(self.pixels)

    def randomize(self, rng: Optional[random.Random] = None):
        """Set each pixel independently at random."""
        rng = rng or random
        for i in range(len(self.pixels)):
            self.pixels[i] = rng.getrandbits(1)

    # -- pixel access --

    def get_pixel(self, x: int, y: int) -> int:
        return self.pixels[y * self.width + x]

    def set_pixel(self, x: int, y: int, value: int):
        self.pixels[y * self.width + x] = 1 if value else 0

    def _offset(self, x: int, y: int) -> int:
        """Buffer index for sprite pixel (x, y), or -1 if it falls off."""
        if self.wrap:
            return (y % self.height) * self.width + (x % self.width)
        off = y * self.width + x
        return off if 0 <= off < len(self.pixels) else -1

    # -- sprite blit --

    def blit_sprite(self, x: int, y: int, sprite: bytes | bytearray) -> bool:
        """XOR *sprite* (one byte per row, MSB = leftmost) onto (x, y).

        Returns True if any pixel that was set got erased.
        """
        collision = False
        for row, byte in enumerate(sprite):
            for col in range(8):
                bit = (byte >> (7 - col)) & 1
                if not bit:
                    continue
                off = self._offset(x + col, y + row)
                if off < 0:
                    continue
                if self.pixels[off]:
                    collision = True
                self.pixels[off] ^= 1
        return collision

    # -- inspection --

    def snapshot(self) -> bytes:
        """Immutable copy of the pixel data."""
        return bytes(self.pixels)

    def lit_count(self) -> int:
        return sum(self.pixels)

    def render_text(self, on: str = "#", off: str = ".") -> str:
        """Render the framebuffer as ``height`` lines of ``width`` chars."""
        lines = []
        for y in range(self.height):
            row = self.pixels[y * self.width:(y + 1) * self.width]
            lines.append("".join(on if p else off for p in row))
        return "\n".join(lines)
