"""
Exception types raised by the MML2 asset codecs.

All of them derive from ValueError so callers that already guard codec calls
with `except ValueError` keep working.
"""

from __future__ import annotations

from typing import Optional, Sequence


class Mml2Error(ValueError):
    pass


class FormatError(Mml2Error):
    """Input does not follow the expected layout (bad OBJ face, unknown flags, ...)."""


class ImageFormatError(FormatError):
    pass


class CapacityError(Mml2Error):
    """Input is well formed but does not fit the fixed-size target format."""


class PaletteOverflowError(CapacityError):
    def __init__(self, colors: int, limit: int = 16):
        super().__init__(f"Image uses {colors} distinct colors, palette holds {limit}")
        self.colors = colors
        self.limit = limit


class TooManyVerticesError(CapacityError):
    def __init__(self, count: int, limit: int = 127):
        super().__init__(f"Submesh has {count} vertices, the limit is {limit}")
        self.count = count
        self.limit = limit


class NoSpaceError(CapacityError):
    pass


class FieldOverflow(Mml2Error):
    """A value does not fit a 10-bit sign-magnitude field."""


class EncodingError(Mml2Error):
    def __init__(self, coords: Sequence[float], message: Optional[str] = None):
        x, y, z = coords
        super().__init__(message or f"Vertex ({x}, {y}, {z}) is out of range even at half scale")
        self.coords = (x, y, z)


class SegmentNotFoundError(Mml2Error):
    def __init__(self, name: str):
        super().__init__(f"Could not find {name} in ROM")
        self.name = name
