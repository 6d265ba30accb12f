from __future__ import annotations

import struct

import pytest

from source_fixtures import VTF_BGR888, VTF_DXT1, VTF_DXT5, VTF_RGBA8888, build_vtf
from vbspview.errors import VtfError
from vbspview.formats.vtf import decode_vtf_image, decode_vtf_rgba, parse_vtf_header


def test_rgba8888_mip0_decode() -> None:
    pixels = bytes([255, 0, 0, 255, 0, 255, 0, 128, 0, 0, 255, 0, 10, 20, 30, 40])
    blob = build_vtf(2, 2, VTF_RGBA8888, pixels)
    w, h, rgba = decode_vtf_rgba(blob)
    assert (w, h) == (2, 2)
    assert rgba == pixels


def test_header_fields() -> None:
    blob = build_vtf(4, 2, VTF_BGR888, b"\x00" * 24)
    hdr = parse_vtf_header(blob)
    assert (hdr.version_major, hdr.version_minor) == (7, 2)
    assert (hdr.width, hdr.height) == (4, 2)
    assert hdr.high_format == VTF_BGR888
    assert hdr.low_format == -1
    assert hdr.header_size == 80


def test_bgr888_swaps_channels() -> None:
    blob = build_vtf(1, 1, VTF_BGR888, bytes([1, 2, 3]))
    assert decode_vtf_rgba(blob)[2] == bytes([3, 2, 1, 255])


def test_mip0_is_found_after_smaller_mips() -> None:
    # 2x2 with a 1x1 mip stored first (smallest to largest).
    mip1 = bytes([9, 9, 9, 9])
    mip0 = bytes([1, 2, 3, 4]) * 4
    blob = build_vtf(2, 2, VTF_RGBA8888, mip0, smaller_mips=mip1, mip_count=2)
    assert decode_vtf_rgba(blob)[2] == mip0


def test_resource_directory_layout_7_3() -> None:
    pixels = bytes([5, 6, 7, 8])
    blob = build_vtf(1, 1, VTF_RGBA8888, pixels, minor=3)
    assert parse_vtf_header(blob).resources
    assert decode_vtf_rgba(blob)[2] == pixels


def test_dxt1_solid_block() -> None:
    # c0 = pure red (565: 0xF800), c1 = black; all indices 0.
    block = struct.pack("<HHI", 0xF800, 0x0000, 0)
    blob = build_vtf(4, 4, VTF_DXT1, block)
    img = decode_vtf_image(blob)
    assert img.size == (4, 4)
    assert img.mode == "RGBA"
    assert img.getpixel((0, 0)) == (255, 0, 0, 255)
    assert img.getpixel((3, 3)) == (255, 0, 0, 255)


def test_dxt1_punch_through_alpha() -> None:
    # c0 <= c1 selects the 3-colour mode; index 3 is transparent black.
    block = struct.pack("<HHI", 0x0000, 0xFFFF, 0xFFFFFFFF)
    w, h, rgba = decode_vtf_rgba(build_vtf(4, 4, VTF_DXT1, block))
    assert rgba[0:4] == bytes([0, 0, 0, 0])


def test_dxt5_interpolated_alpha() -> None:
    # alpha0=255, alpha1=0, every alpha index 1 -> alpha 0; colour white.
    alpha_bits = 0
    for i in range(16):
        alpha_bits |= 1 << (3 * i)
    alpha_block = bytes([255, 0]) + alpha_bits.to_bytes(6, "little")
    color_block = struct.pack("<HHI", 0xFFFF, 0x0000, 0)
    blob = build_vtf(4, 4, VTF_DXT5, alpha_block + color_block)
    img = decode_vtf_image(blob)
    assert img.getpixel((1, 2)) == (255, 255, 255, 0)


def test_bad_magic_raises() -> None:
    with pytest.raises(VtfError):
        decode_vtf_rgba(b"NOPE" + b"\x00" * 100)


def test_truncated_payload_raises() -> None:
    blob = build_vtf(4, 4, VTF_RGBA8888, b"\x00" * 10)
    with pytest.raises(VtfError):
        decode_vtf_rgba(blob)
