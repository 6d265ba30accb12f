from __future__ import annotations

import struct
from dataclasses import dataclass

import numpy as np
from PIL import Image

from vbspview.errors import VtfError


# VTF image formats.
IMAGE_FORMAT_NONE = -1
IMAGE_FORMAT_RGBA8888 = 0
IMAGE_FORMAT_ABGR8888 = 1
IMAGE_FORMAT_RGB888 = 2
IMAGE_FORMAT_BGR888 = 3
IMAGE_FORMAT_RGB565 = 4
IMAGE_FORMAT_I8 = 5
IMAGE_FORMAT_IA88 = 6
IMAGE_FORMAT_A8 = 8
IMAGE_FORMAT_RGB888_BLUESCREEN = 9
IMAGE_FORMAT_BGR888_BLUESCREEN = 10
IMAGE_FORMAT_ARGB8888 = 11
IMAGE_FORMAT_BGRA8888 = 12
IMAGE_FORMAT_DXT1 = 13
IMAGE_FORMAT_DXT3 = 14
IMAGE_FORMAT_DXT5 = 15
IMAGE_FORMAT_BGRX8888 = 16
IMAGE_FORMAT_BGR565 = 17
IMAGE_FORMAT_BGRX5551 = 18
IMAGE_FORMAT_BGRA4444 = 19
IMAGE_FORMAT_DXT1_ONEBITALPHA = 20
IMAGE_FORMAT_BGRA5551 = 21
IMAGE_FORMAT_UV88 = 22
IMAGE_FORMAT_UVWQ8888 = 23
IMAGE_FORMAT_RGBA16161616F = 24
IMAGE_FORMAT_RGBA16161616 = 25

# Bytes per pixel for uncompressed formats.
_BYTES_PER_PIXEL: dict[int, int] = {
    IMAGE_FORMAT_RGBA8888: 4,
    IMAGE_FORMAT_ABGR8888: 4,
    IMAGE_FORMAT_RGB888: 3,
    IMAGE_FORMAT_BGR888: 3,
    IMAGE_FORMAT_RGB565: 2,
    IMAGE_FORMAT_I8: 1,
    IMAGE_FORMAT_IA88: 2,
    IMAGE_FORMAT_A8: 1,
    IMAGE_FORMAT_RGB888_BLUESCREEN: 3,
    IMAGE_FORMAT_BGR888_BLUESCREEN: 3,
    IMAGE_FORMAT_ARGB8888: 4,
    IMAGE_FORMAT_BGRA8888: 4,
    IMAGE_FORMAT_BGRX8888: 4,
    IMAGE_FORMAT_BGR565: 2,
    IMAGE_FORMAT_BGRX5551: 2,
    IMAGE_FORMAT_BGRA4444: 2,
    IMAGE_FORMAT_BGRA5551: 2,
    IMAGE_FORMAT_UV88: 2,
    IMAGE_FORMAT_UVWQ8888: 4,
    IMAGE_FORMAT_RGBA16161616F: 8,
    IMAGE_FORMAT_RGBA16161616: 8,
}

_DXT_BLOCK_BYTES: dict[int, int] = {
    IMAGE_FORMAT_DXT1: 8,
    IMAGE_FORMAT_DXT1_ONEBITALPHA: 8,
    IMAGE_FORMAT_DXT3: 16,
    IMAGE_FORMAT_DXT5: 16,
}

TEXTUREFLAGS_ENVMAP = 0x4000

# 7.3+ resource directory tags.
_RESOURCE_LOW_RES = b"\x01\x00\x00"
_RESOURCE_HIGH_RES = b"\x30\x00\x00"


@dataclass(frozen=True)
class VTFHeader:
    version_major: int
    version_minor: int
    header_size: int
    width: int
    height: int
    flags: int
    frames: int
    first_frame: int
    high_format: int
    mip_count: int
    low_format: int
    low_width: int
    low_height: int
    depth: int
    # tag -> data offset (7.3+ only).
    resources: dict[bytes, int]

    @property
    def faces(self) -> int:
        if not (self.flags & TEXTUREFLAGS_ENVMAP):
            return 1
        # Pre-7.5 cubemaps carry a seventh spheremap face unless first_frame is 0xFFFF.
        if self.version_minor < 5 and self.first_frame != 0xFFFF:
            return 7
        return 6


def _mip_level_size(fmt: int, width: int, height: int) -> int:
    if fmt in _DXT_BLOCK_BYTES:
        return ((width + 3) // 4) * ((height + 3) // 4) * _DXT_BLOCK_BYTES[fmt]
    bpp = _BYTES_PER_PIXEL.get(fmt)
    if bpp is None:
        raise VtfError(f"Unsupported VTF format {fmt} for {width}x{height}")
    return width * height * bpp


def parse_vtf_header(blob: bytes) -> VTFHeader:
    if blob[:4] != b"VTF\x00":
        raise VtfError("Not a VTF file (bad magic)")
    if len(blob) < 64:
        raise VtfError("VTF header truncated")

    ver_major, ver_minor, header_size = struct.unpack_from("<III", blob, 4)
    width, height, flags, frames, first_frame = struct.unpack_from("<HHIHH", blob, 16)
    high_format = struct.unpack_from("<i", blob, 52)[0]
    mip_count = blob[56]
    low_format = struct.unpack_from("<i", blob, 57)[0]
    low_width = blob[61]
    low_height = blob[62]

    depth = 1
    if (ver_major, ver_minor) >= (7, 2) and len(blob) >= 65:
        depth = max(1, struct.unpack_from("<H", blob, 63)[0])

    resources: dict[bytes, int] = {}
    if (ver_major, ver_minor) >= (7, 3):
        if len(blob) < 72:
            raise VtfError("VTF 7.3 header truncated")
        (num_resources,) = struct.unpack_from("<I", blob, 68)
        for i in range(int(num_resources)):
            off = 80 + i * 8
            if off + 8 > len(blob):
                raise VtfError("VTF resource directory out of bounds")
            tag = bytes(blob[off : off + 3])
            (data,) = struct.unpack_from("<I", blob, off + 4)
            resources[tag] = int(data)

    return VTFHeader(
        version_major=int(ver_major),
        version_minor=int(ver_minor),
        header_size=int(header_size),
        width=int(width),
        height=int(height),
        flags=int(flags),
        frames=max(1, int(frames)),
        first_frame=int(first_frame),
        high_format=int(high_format),
        mip_count=int(mip_count),
        low_format=int(low_format),
        low_width=int(low_width),
        low_height=int(low_height),
        depth=int(depth),
        resources=resources,
    )


def _highres_offset(h: VTFHeader) -> int:
    if h.resources:
        off = h.resources.get(_RESOURCE_HIGH_RES)
        if off is None:
            raise VtfError("VTF has no high-res image resource")
        return off
    low_size = 0
    if h.low_format != IMAGE_FORMAT_NONE and h.low_width and h.low_height:
        low_size = _mip_level_size(h.low_format, h.low_width, h.low_height)
    return h.header_size + low_size


def _mip0_payload(blob: bytes, h: VTFHeader) -> bytes:
    if h.mip_count <= 0:
        raise VtfError(f"Bad mip count {h.mip_count}")
    if h.width <= 0 or h.height <= 0:
        raise VtfError(f"Bad VTF dimensions {h.width}x{h.height}")

    # Mips are stored smallest to largest; each mip holds frames x faces x depth slices.
    per_image = h.frames * h.faces
    off = _highres_offset(h)
    for mip in range(h.mip_count - 1, 0, -1):
        w = max(1, h.width >> mip)
        hh = max(1, h.height >> mip)
        d = max(1, h.depth >> mip)
        off += _mip_level_size(h.high_format, w, hh) * per_image * d

    size = _mip_level_size(h.high_format, h.width, h.height)
    if off + size > len(blob):
        raise VtfError(f"VTF image data truncated: need {off + size} bytes, have {len(blob)}")
    return blob[off : off + size]


def _expand_565(c: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    c = c.astype(np.uint32)
    r = (c >> 11) & 0x1F
    g = (c >> 5) & 0x3F
    b = c & 0x1F
    # Scale to 0..255.
    r = (r << 3) | (r >> 2)
    g = (g << 2) | (g >> 4)
    b = (b << 3) | (b >> 2)
    return r, g, b


def _dxt_color_palette(blocks: np.ndarray, *, punch_through: bool) -> np.ndarray:
    """Return the (n, 4, 4) RGBA palette for each 8-byte DXT colour block."""
    c0 = blocks[:, 0].astype(np.uint32) | (blocks[:, 1].astype(np.uint32) << 8)
    c1 = blocks[:, 2].astype(np.uint32) | (blocks[:, 3].astype(np.uint32) << 8)
    r0, g0, b0 = _expand_565(c0)
    r1, g1, b1 = _expand_565(c1)

    n = blocks.shape[0]
    pal = np.zeros((n, 4, 4), dtype=np.uint32)
    pal[:, 0] = np.stack([r0, g0, b0, np.full(n, 255, np.uint32)], axis=1)
    pal[:, 1] = np.stack([r1, g1, b1, np.full(n, 255, np.uint32)], axis=1)

    four = (c0 > c1) | (not punch_through)
    third_a = np.stack([(2 * r0 + r1) // 3, (2 * g0 + g1) // 3, (2 * b0 + b1) // 3], axis=1)
    third_b = np.stack([(r0 + 2 * r1) // 3, (g0 + 2 * g1) // 3, (b0 + 2 * b1) // 3], axis=1)
    half = np.stack([(r0 + r1) // 2, (g0 + g1) // 2, (b0 + b1) // 2], axis=1)

    pal[:, 2, :3] = np.where(four[:, None], third_a, half)
    pal[:, 2, 3] = 255
    pal[:, 3, :3] = np.where(four[:, None], third_b, 0)
    pal[:, 3, 3] = np.where(four, 255, 0)
    return pal


def _dxt_color_indices(blocks: np.ndarray) -> np.ndarray:
    bits = (
        blocks[:, 4].astype(np.uint32)
        | (blocks[:, 5].astype(np.uint32) << 8)
        | (blocks[:, 6].astype(np.uint32) << 16)
        | (blocks[:, 7].astype(np.uint32) << 24)
    )
    shifts = (2 * np.arange(16, dtype=np.uint32))[None, :]
    return ((bits[:, None] >> shifts) & 0x3).astype(np.intp)


def _dxt5_alpha_palette(a0: np.ndarray, a1: np.ndarray) -> np.ndarray:
    a0 = a0.astype(np.uint32)
    a1 = a1.astype(np.uint32)
    eight = np.stack(
        [
            a0,
            a1,
            (6 * a0 + 1 * a1) // 7,
            (5 * a0 + 2 * a1) // 7,
            (4 * a0 + 3 * a1) // 7,
            (3 * a0 + 4 * a1) // 7,
            (2 * a0 + 5 * a1) // 7,
            (1 * a0 + 6 * a1) // 7,
        ],
        axis=1,
    )
    six = np.stack(
        [
            a0,
            a1,
            (4 * a0 + 1 * a1) // 5,
            (3 * a0 + 2 * a1) // 5,
            (2 * a0 + 3 * a1) // 5,
            (1 * a0 + 4 * a1) // 5,
            np.zeros_like(a0),
            np.full_like(a0, 255),
        ],
        axis=1,
    )
    return np.where((a0 > a1)[:, None], eight, six)


def _blocks_to_image(px: np.ndarray, width: int, height: int) -> np.ndarray:
    # px: (blocks_y * blocks_x, 16, 4) in row-major texel order within each block.
    blocks_x = (width + 3) // 4
    blocks_y = (height + 3) // 4
    img = px.reshape(blocks_y, blocks_x, 4, 4, 4).transpose(0, 2, 1, 3, 4)
    img = img.reshape(blocks_y * 4, blocks_x * 4, 4)
    return img[:height, :width]


def _decode_dxt(data: bytes, fmt: int, width: int, height: int) -> np.ndarray:
    block_bytes = _DXT_BLOCK_BYTES[fmt]
    raw = np.frombuffer(data, dtype=np.uint8).reshape(-1, block_bytes)
    n = raw.shape[0]
    rows = np.arange(n)[:, None]

    if fmt in (IMAGE_FORMAT_DXT1, IMAGE_FORMAT_DXT1_ONEBITALPHA):
        pal = _dxt_color_palette(raw, punch_through=True)
        px = pal[rows, _dxt_color_indices(raw)]
        return _blocks_to_image(px, width, height).astype(np.uint8)

    color = raw[:, 8:16]
    pal = _dxt_color_palette(color, punch_through=False)
    px = pal[rows, _dxt_color_indices(color)]

    if fmt == IMAGE_FORMAT_DXT3:
        alpha_bits = np.zeros(n, dtype=np.uint64)
        for k in range(8):
            alpha_bits |= raw[:, k].astype(np.uint64) << np.uint64(8 * k)
        shifts = (4 * np.arange(16, dtype=np.uint64))[None, :]
        alpha = ((alpha_bits[:, None] >> shifts) & np.uint64(0xF)).astype(np.uint32) * 17
    else:
        alpha_bits = np.zeros(n, dtype=np.uint64)
        for k in range(6):
            alpha_bits |= raw[:, 2 + k].astype(np.uint64) << np.uint64(8 * k)
        shifts = (3 * np.arange(16, dtype=np.uint64))[None, :]
        a_idx = ((alpha_bits[:, None] >> shifts) & np.uint64(0x7)).astype(np.intp)
        alpha = _dxt5_alpha_palette(raw[:, 0], raw[:, 1])[rows, a_idx]

    px[:, :, 3] = alpha
    return _blocks_to_image(px, width, height).astype(np.uint8)


def _decode_uncompressed(data: bytes, fmt: int, width: int, height: int) -> np.ndarray:
    bpp = _BYTES_PER_PIXEL[fmt]
    if fmt in (IMAGE_FORMAT_RGBA16161616F, IMAGE_FORMAT_RGBA16161616):
        dtype = np.float16 if fmt == IMAGE_FORMAT_RGBA16161616F else np.uint16
        src = np.frombuffer(data, dtype=dtype).reshape(height, width, 4).astype(np.float32)
        if fmt == IMAGE_FORMAT_RGBA16161616:
            src /= 65535.0
        return (np.clip(src, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)

    if bpp == 2 and fmt not in (IMAGE_FORMAT_IA88, IMAGE_FORMAT_UV88):
        c = np.frombuffer(data, dtype="<u2").reshape(height, width).astype(np.uint32)
        out = np.empty((height, width, 4), dtype=np.uint32)
        if fmt in (IMAGE_FORMAT_RGB565, IMAGE_FORMAT_BGR565):
            hi, mid, lo = _expand_565(c)
            if fmt == IMAGE_FORMAT_RGB565:
                out[..., 0], out[..., 1], out[..., 2] = lo, mid, hi
            else:
                out[..., 0], out[..., 1], out[..., 2] = hi, mid, lo
            out[..., 3] = 255
        elif fmt == IMAGE_FORMAT_BGRA4444:
            out[..., 2] = (c & 0xF) * 17
            out[..., 1] = ((c >> 4) & 0xF) * 17
            out[..., 0] = ((c >> 8) & 0xF) * 17
            out[..., 3] = ((c >> 12) & 0xF) * 17
        else:
            b = c & 0x1F
            g = (c >> 5) & 0x1F
            r = (c >> 10) & 0x1F
            out[..., 0] = (r << 3) | (r >> 2)
            out[..., 1] = (g << 3) | (g >> 2)
            out[..., 2] = (b << 3) | (b >> 2)
            out[..., 3] = np.where(c >> 15, 255, 0) if fmt == IMAGE_FORMAT_BGRA5551 else 255
        return out.astype(np.uint8)

    src = np.frombuffer(data, dtype=np.uint8).reshape(height, width, bpp)
    out = np.empty((height, width, 4), dtype=np.uint8)
    out[..., 3] = 255
    if fmt in (IMAGE_FORMAT_RGBA8888, IMAGE_FORMAT_UVWQ8888):
        out[...] = src
    elif fmt == IMAGE_FORMAT_ABGR8888:
        out[...] = src[..., ::-1]
    elif fmt == IMAGE_FORMAT_ARGB8888:
        out[...] = src[..., [1, 2, 3, 0]]
    elif fmt == IMAGE_FORMAT_BGRA8888:
        out[...] = src[..., [2, 1, 0, 3]]
    elif fmt == IMAGE_FORMAT_BGRX8888:
        out[..., :3] = src[..., 2::-1]
    elif fmt in (IMAGE_FORMAT_RGB888, IMAGE_FORMAT_RGB888_BLUESCREEN):
        out[..., :3] = src
    elif fmt in (IMAGE_FORMAT_BGR888, IMAGE_FORMAT_BGR888_BLUESCREEN):
        out[..., :3] = src[..., ::-1]
    elif fmt == IMAGE_FORMAT_I8:
        out[..., :3] = src
    elif fmt == IMAGE_FORMAT_IA88:
        out[..., :3] = src[..., :1]
        out[..., 3] = src[..., 1]
    elif fmt == IMAGE_FORMAT_A8:
        out[..., :3] = 0
        out[..., 3] = src[..., 0]
    elif fmt == IMAGE_FORMAT_UV88:
        out[..., :2] = src
        out[..., 2] = 0
    else:
        raise VtfError(f"Unsupported VTF high format {fmt}")

    if fmt in (IMAGE_FORMAT_RGB888_BLUESCREEN, IMAGE_FORMAT_BGR888_BLUESCREEN):
        blue = (out[..., 0] == 0) & (out[..., 1] == 0) & (out[..., 2] == 255)
        out[blue] = 0
    return out


def decode_vtf_rgba(blob: bytes) -> tuple[int, int, bytes]:
    """Decode mip 0 (first frame, first face) of a VTF to 8-bit RGBA bytes."""
    h = parse_vtf_header(blob)
    if h.version_major != 7 or h.version_minor > 5:
        raise VtfError(f"Unsupported VTF version {h.version_major}.{h.version_minor}")

    payload = _mip0_payload(blob, h)
    fmt = h.high_format
    if fmt in _DXT_BLOCK_BYTES:
        rgba = _decode_dxt(payload, fmt, h.width, h.height)
    elif fmt in _BYTES_PER_PIXEL:
        rgba = _decode_uncompressed(payload, fmt, h.width, h.height)
    else:
        raise VtfError(f"Unsupported VTF high format {fmt}")
    return h.width, h.height, np.ascontiguousarray(rgba).tobytes()


def decode_vtf_image(blob: bytes) -> Image.Image:
    w, h, rgba = decode_vtf_rgba(blob)
    return Image.frombytes("RGBA", (w, h), rgba)
