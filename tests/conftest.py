"""
Shared fixtures: in-memory images and a controllable tracing engine.
"""

import io
import struct
import threading
import zlib

import numpy as np
import pytest
from PIL import Image


SIMPLE_SVG = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="40" height="40" viewBox="0 0 40 40">'
    '<path d="M10 10L30 10L30 30L10 30Z" fill="#000000"/></svg>'
)


def encode(image: Image.Image, fmt: str = "PNG", **kwargs) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format=fmt, **kwargs)
    return buf.getvalue()


def square_png(size: int = 500, inset: int = 100) -> bytes:
    """Black square on white, ``inset`` pixels from each edge."""
    pixels = np.full((size, size), 255, dtype=np.uint8)
    pixels[inset:size - inset, inset:size - inset] = 0
    return encode(Image.fromarray(pixels))


def gray_png(width: int, height: int, value: int = 128) -> bytes:
    return encode(Image.new("L", (width, height), value))


def png_header_only(width: int, height: int) -> bytes:
    """A PNG declaring the given dimensions with no pixel data behind it."""
    def chunk(tag: bytes, data: bytes) -> bytes:
        crc = zlib.crc32(tag + data) & 0xFFFFFFFF
        return struct.pack(">I", len(data)) + tag + data + struct.pack(">I", crc)

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 0, 0, 0, 0)
    return (b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr)
            + chunk(b"IDAT", zlib.compress(b"")) + chunk(b"IEND", b""))


class BlockingEngine:
    """Function-shaped engine that holds its worker thread until opened."""

    name = "blocking"

    def __init__(self, markup: str = SIMPLE_SVG):
        self.markup = markup
        self.gate = threading.Event()
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, image_bytes, options):
        with self._lock:
            self.calls += 1
        if not self.gate.wait(timeout=10):
            raise RuntimeError("engine was never released")
        return self.markup


class FailingEngine:
    name = "failing"

    def __call__(self, image_bytes, options):
        raise RuntimeError("engine exploded")


@pytest.fixture
def square_image():
    return square_png(500, 100)


@pytest.fixture
def small_square_image():
    return square_png(40, 10)


@pytest.fixture
def blocking_engine():
    engine = BlockingEngine()
    yield engine
    engine.gate.set()
