"""
SVGTrace Image Preprocessing Module.

Turns an uploaded bitmap into the grayscale raster the tracer expects:

1. Decode, apply EXIF orientation, flatten transparency onto white
2. Downscale oversized images (aspect preserved)
3. Either stretch contrast (plain mode) or extract edges with a
   blur + Sobel pass (edge mode), so outlines render dark on light

Edge extraction on flat or tiny inputs yields a blank raster; those cases
fall back to the plain grayscale output. Images that cannot be decoded, or
whose preparation fails later on, are handed on untouched as a
``RawImage``. Every fallback is recorded on the returned value.
"""

import io
import logging
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image, ImageOps

from .config import FlatnessTuning, ServiceConfig
from .errors import PreprocessError
from .models import Fallback, NormalizedBitmap, PreparedImage, PreprocessMode, RawImage

logger = logging.getLogger(__name__)

# Sobel kernels, row-major over the 3x3 window
SOBEL_X = np.array([-1, 0, 1, -2, 0, 2, -1, 0, 1], dtype=np.float64).reshape(3, 3)
SOBEL_Y = np.array([-1, -2, -1, 0, 0, 0, 1, 2, 1], dtype=np.float64).reshape(3, 3)

BACKGROUND = 255

# Integer grayscale modes Pillow uses for 16-bit PNG and TIFF data
WIDE_GRAY_MODES = ("I;16", "I;16L", "I;16B", "I;16N", "I")


# ============================================================================
# PIXEL OPERATIONS
# ============================================================================

def probe_dimensions(data: bytes) -> Tuple[int, int]:
    """
    Read (width, height) from the image header without decoding pixels.

    Raises:
        PIL.UnidentifiedImageError: Not a recognizable image.
        PIL.Image.DecompressionBombError: Declared size is absurdly large.
    """
    with Image.open(io.BytesIO(data)) as img:
        return img.size


def reduce_depth(img: Image.Image) -> Image.Image:
    """Scale 16/32-bit integer grayscale down to 8-bit ``L``."""
    wide = np.asarray(img).astype(np.int64)
    return Image.fromarray((np.clip(wide, 0, 0xFFFF) >> 8).astype(np.uint8))


def flatten_to_gray(img: Image.Image) -> np.ndarray:
    """Composite any alpha onto white and return an 8-bit luminance array."""
    if img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        canvas = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        canvas.alpha_composite(rgba)
        img = canvas
    return np.asarray(img.convert("L"), dtype=np.uint8)


def stretch_contrast(gray: np.ndarray) -> np.ndarray:
    """Map the 1st..99th percentile range onto 0..255. Uniform images pass through."""
    lo, hi = np.percentile(gray, (1, 99))
    if hi - lo < 1:
        return gray.copy()
    scaled = (gray.astype(np.float32) - lo) * (255.0 / (hi - lo))
    return np.clip(np.rint(scaled), 0, 255).astype(np.uint8)


def gaussian_blur(gray: np.ndarray, sigma: float) -> np.ndarray:
    if not np.isfinite(sigma):
        raise ValueError(f"blur sigma must be finite, got {sigma}")
    if sigma <= 0:
        return gray
    return cv2.GaussianBlur(gray, (0, 0), sigmaX=sigma, sigmaY=sigma,
                            borderType=cv2.BORDER_REPLICATE)


def sobel_edges(gray: np.ndarray, edge_boost: float) -> np.ndarray:
    """
    Inverted Sobel gradient magnitude.

    Interior pixels get ``255 - min(sqrt(gx^2 + gy^2) * edge_boost, 255)``;
    the one-pixel border has no full 3x3 window and stays at 255.

    Args:
        gray: 2-D uint8 array.
        edge_boost: Multiplier applied to the magnitude.

    Returns:
        2-D uint8 array of the same shape, edges dark on white.
    """
    h, w = gray.shape
    out = np.full((h, w), BACKGROUND, dtype=np.uint8)
    if h < 3 or w < 3:
        return out

    src = gray.astype(np.float64)
    gx = np.zeros((h - 2, w - 2), dtype=np.float64)
    gy = np.zeros((h - 2, w - 2), dtype=np.float64)
    for j in range(3):
        for i in range(3):
            window = src[j:h - 2 + j, i:w - 2 + i]
            if SOBEL_X[j, i]:
                gx += SOBEL_X[j, i] * window
            if SOBEL_Y[j, i]:
                gy += SOBEL_Y[j, i] * window

    magnitude = np.minimum(np.sqrt(gx * gx + gy * gy) * edge_boost, 255.0)
    out[1:-1, 1:-1] = (255.0 - magnitude).astype(np.uint8)
    return out


def is_flat(buffer: np.ndarray, tuning: FlatnessTuning = FlatnessTuning()) -> bool:
    """
    Decide whether a raster is effectively blank.

    Samples every ``sample_step``-th byte and reports flat when the range is
    tiny, the mean hugs either extreme, or the variance is negligible.
    """
    samples = np.asarray(buffer).reshape(-1)[::tuning.sample_step].astype(np.float64)
    if samples.size == 0:
        return True

    value_range = samples.max() - samples.min()
    if value_range <= tuning.min_range:
        return True

    mean = samples.mean()
    if mean <= tuning.mean_margin or mean >= 255 - tuning.mean_margin:
        return True

    variance = np.sum((samples - mean) ** 2) / max(samples.size - 1, 1)
    return variance < tuning.min_variance


# ============================================================================
# PREPROCESSOR
# ============================================================================

class Preprocessor:
    """Bitmap normalization bounded by the service's safety limits."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        self.config = config or ServiceConfig()

    def _needs_downscale(self, width: int, height: int) -> bool:
        cfg = self.config
        megapixels = (width * height) / 1_000_000
        return width > cfg.max_side or height > cfg.max_side or megapixels > cfg.max_megapixels

    def decode(self, data: bytes) -> np.ndarray:
        """
        Decode bytes into an oriented, flattened, size-capped grayscale array.

        Raises:
            PreprocessError: The bytes could not be decoded.
        """
        try:
            with Image.open(io.BytesIO(data)) as img:
                img = ImageOps.exif_transpose(img)
                if img.mode in WIDE_GRAY_MODES:
                    img = reduce_depth(img)
                elif img.mode not in ("L", "RGB", "RGBA", "LA"):
                    img = img.convert("RGBA")
                if self._needs_downscale(*img.size):
                    side = self.config.downscale_side
                    logger.info("Downscaling %dx%d image to fit %dpx", img.size[0], img.size[1], side)
                    img.thumbnail((side, side), Image.LANCZOS)
                return flatten_to_gray(img)
        except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
            raise PreprocessError(f"could not decode image: {e}") from e

    def normalize(
        self,
        data: bytes,
        mode: PreprocessMode = PreprocessMode.none,
        blur_sigma: float = 0.8,
        edge_boost: float = 1.0,
    ) -> PreparedImage:
        """
        Prepare an uploaded bitmap for tracing.

        Args:
            data: Encoded image bytes (PNG, JPEG ...).
            mode: ``none`` for plain grayscale, ``edge`` for outline extraction.
            blur_sigma: Gaussian sigma before edge extraction (0 disables).
            edge_boost: Gradient magnitude multiplier.

        Returns:
            NormalizedBitmap, or RawImage holding ``data`` when decoding or
            any later preprocessing step failed.
        """
        try:
            gray = self.decode(data)
        except PreprocessError as e:
            logger.info("Preprocessing fell back to original bytes: %s", e.message)
            return RawImage(data=data, fallback=Fallback.DECODE_FAILED, reason=e.message)

        try:
            return self._prepare(gray, PreprocessMode(mode), blur_sigma, edge_boost)
        except Exception as e:
            reason = f"preprocessing failed: {e}"
            logger.warning("Preprocessing fell back to original bytes: %s", reason)
            return RawImage(data=data, fallback=Fallback.PREPROCESS_FAILED, reason=reason)

    def _prepare(self, gray: np.ndarray, mode: PreprocessMode,
                 blur_sigma: float, edge_boost: float) -> NormalizedBitmap:
        if mode is not PreprocessMode.edge:
            return NormalizedBitmap(stretch_contrast(gray))

        blurred = gaussian_blur(gray, blur_sigma)
        height, width = blurred.shape
        if width <= 1 or height <= 1:
            logger.info("Image too small for edge extraction (%dx%d), using grayscale", width, height)
            return NormalizedBitmap(stretch_contrast(gray), fallback=Fallback.TINY_IMAGE)

        edges = sobel_edges(blurred, edge_boost)
        if is_flat(edges, self.config.flatness):
            logger.info("Edge map is flat, using grayscale instead")
            return NormalizedBitmap(stretch_contrast(gray), fallback=Fallback.FLAT_EDGES)
        return NormalizedBitmap(edges)
