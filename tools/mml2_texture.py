"""
MML2 4bpp texture codec.

Textures are 256x256, 16-colour paletted. Palette entries are 15-bit texels
with bit 15 as the visibility flag; index 0 is reserved for transparent
black. Two pixels share a byte, the left pixel in the low nibble.
"""

from __future__ import annotations

import dataclasses
import logging
import pathlib
import struct
from typing import Dict, List, Tuple

import numpy as np
from PIL import Image

from mml2_bits import decode_texel, encode_texel
from mml2_errors import FormatError, ImageFormatError, PaletteOverflowError

log = logging.getLogger(__name__)

TEXTURE_WIDTH = 256
TEXTURE_HEIGHT = 256
PALETTE_COLORS = 16
PALETTE_SIZE = PALETTE_COLORS * 2
IMAGE_SIZE = TEXTURE_WIDTH * TEXTURE_HEIGHT // 2

VRAM_WIDTH = 1024
VRAM_HEIGHT = 512

TEXTURE_HEADER_SIZE = 0x30


@dataclasses.dataclass
class TextureHeader:
    type: int = 0
    full_size: int = 0
    palette_x: int = 0
    palette_y: int = 0
    color_count: int = 0
    palette_count: int = 0
    image_x: int = 0
    image_y: int = 0
    width: int = 0
    height: int = 0
    bitfield_size: int = 0
    flag: int = 0

    @classmethod
    def read(cls, data: bytes, off: int = 0) -> "TextureHeader":
        if off + TEXTURE_HEADER_SIZE > len(data):
            raise FormatError(f"Texture header at 0x{off:X} runs past end of data")
        type_, full_size = struct.unpack_from("<II", data, off)
        fields = struct.unpack_from("<8H", data, off + 0x0C)
        bitfield_size, flag = struct.unpack_from("<HH", data, off + 0x24)
        return cls(type_, full_size, *fields, bitfield_size=bitfield_size, flag=flag)

    def pack(self) -> bytes:
        out = bytearray(TEXTURE_HEADER_SIZE)
        struct.pack_into("<II", out, 0x00, self.type, self.full_size)
        struct.pack_into(
            "<8H",
            out,
            0x0C,
            self.palette_x,
            self.palette_y,
            self.color_count,
            self.palette_count,
            self.image_x,
            self.image_y,
            self.width,
            self.height,
        )
        struct.pack_into("<HH", out, 0x24, self.bitfield_size, self.flag)
        return bytes(out)


def _texels_from_rgba(rgba: np.ndarray) -> np.ndarray:
    # Alpha is binary: any transparent pixel collapses to texel 0.
    px = rgba.reshape(-1, 4).astype(np.uint16)
    visible = px[:, 3] != 0
    texels = encode_texel(px[:, 0], px[:, 1], px[:, 2], px[:, 3])
    return np.where(visible, texels, 0).astype(np.uint16)


def build_palette(texels: np.ndarray, strict: bool = True) -> Tuple[List[int], np.ndarray]:
    """Assign palette indices in first-seen order, with texel 0 pinned to index 0."""
    palette: List[int] = [0]
    lookup: Dict[int, int] = {0: 0}
    indices = np.zeros(texels.shape, dtype=np.uint8)
    for i, texel in enumerate(texels.tolist()):
        idx = lookup.get(texel)
        if idx is None:
            idx = len(palette)
            palette.append(texel)
            lookup[texel] = idx
        indices[i] = idx & 0x0F
    if len(palette) > PALETTE_COLORS:
        if strict:
            raise PaletteOverflowError(len(palette), PALETTE_COLORS)
        log.warning("Palette has %d colors, dropping %d", len(palette), len(palette) - PALETTE_COLORS)
    return palette, indices


def encode_pixels(rgba: np.ndarray, width: int, height: int, strict: bool = True) -> Tuple[bytes, bytes]:
    """Encode an RGBA8 pixel array into `(palette, image)` bytes."""
    if width % 2:
        raise ImageFormatError(f"Texture width must be even, got {width}")
    arr = np.asarray(rgba, dtype=np.uint8)
    if arr.size != width * height * 4:
        raise ImageFormatError(f"Expected {width}x{height} RGBA pixels, got {arr.size // 4}")
    palette, indices = build_palette(_texels_from_rgba(arr), strict=strict)

    pairs = indices.reshape(-1, 2)
    img = (pairs[:, 0] | (pairs[:, 1] << 4)).astype(np.uint8)

    pal = bytearray(PALETTE_SIZE)
    for i, texel in enumerate(palette[:PALETTE_COLORS]):
        struct.pack_into("<H", pal, i * 2, texel)
    return bytes(pal), img.tobytes()


def encode_image(img: Image.Image, strict: bool = True) -> Tuple[bytes, bytes]:
    if img.size != (TEXTURE_WIDTH, TEXTURE_HEIGHT):
        raise ImageFormatError(f"Encoder expects a {TEXTURE_WIDTH}x{TEXTURE_HEIGHT} image, got {img.size[0]}x{img.size[1]}")
    rgba = np.asarray(img.convert("RGBA"), dtype=np.uint8)
    return encode_pixels(rgba, TEXTURE_WIDTH, TEXTURE_HEIGHT, strict=strict)


def decode_palette(pal: bytes) -> np.ndarray:
    if len(pal) < PALETTE_SIZE:
        raise FormatError(f"Palette needs {PALETTE_SIZE} bytes, got {len(pal)}")
    colors = [decode_texel(struct.unpack_from("<H", pal, i * 2)[0]) for i in range(PALETTE_COLORS)]
    return np.array(colors, dtype=np.uint8)


def _expand_nibbles(img: np.ndarray) -> np.ndarray:
    idx = np.empty(img.size * 2, dtype=np.uint8)
    idx[0::2] = img & 0x0F
    idx[1::2] = img >> 4
    return idx


def decode_image(pal: bytes, img: bytes, width: int = TEXTURE_WIDTH, height: int = TEXTURE_HEIGHT) -> Image.Image:
    if len(img) < (width * height) // 2:
        raise FormatError(f"Image data needs {(width * height) // 2} bytes, got {len(img)}")
    colors = decode_palette(pal)
    raw = np.frombuffer(img, dtype=np.uint8, count=(width * height) // 2)
    rgba = colors[_expand_nibbles(raw)].reshape(height, width, 4)
    return Image.fromarray(rgba)


def render_vram_texture(vram: bytes, image_coords: int, palette_coords: int) -> Image.Image:
    """Render the 256x256 texture page addressed by a mesh texture-table entry."""
    if len(vram) < VRAM_WIDTH * VRAM_HEIGHT * 2:
        raise FormatError(f"VRAM dump must be {VRAM_WIDTH * VRAM_HEIGHT * 2} bytes, got {len(vram)}")
    words = np.frombuffer(vram, dtype="<u2", count=VRAM_WIDTH * VRAM_HEIGHT).reshape(VRAM_HEIGHT, VRAM_WIDTH)

    image_x = (image_coords & 0x0F) << 6
    image_y = 0x100 if (image_coords & 0x10) else 0
    pal_x = (palette_coords & 0x3F) << 4
    pal_y = palette_coords >> 6

    clut = words[pal_y, pal_x : pal_x + PALETTE_COLORS].astype(np.uint16)
    colors = np.zeros((PALETTE_COLORS, 4), dtype=np.uint8)
    colors[:, 0] = (clut & 0x1F) << 3
    colors[:, 1] = ((clut >> 5) & 0x1F) << 3
    colors[:, 2] = ((clut >> 10) & 0x1F) << 3
    # The framebuffer treats any non-zero CLUT word as visible.
    colors[:, 3] = np.where(clut > 0, 255, 0)

    page = words[image_y : image_y + TEXTURE_HEIGHT, image_x : image_x + TEXTURE_WIDTH // 4]
    raw = np.ascontiguousarray(page).view(np.uint8).reshape(-1)
    rgba = colors[_expand_nibbles(raw)].reshape(TEXTURE_HEIGHT, TEXTURE_WIDTH, 4)
    return Image.fromarray(rgba)


def load_image(path: pathlib.Path) -> Image.Image:
    with Image.open(path) as img:
        return img.convert("RGBA")


def save_image(path: pathlib.Path, img: Image.Image) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    img.save(path)
