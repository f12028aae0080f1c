"""
SVGTrace Data Model.

Value types passed between the stages of a conversion:

    ConversionRequest -> NormalizedBitmap | RawImage -> markup
        -> VectorDocument -> ConversionResult
"""

import math
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

import cv2
import numpy as np

from .config import DARK_BACKGROUND
from .errors import ValidationError


class TurnPolicy(str, Enum):
    """Tie-breaking rule for ambiguous pixel junctions."""
    black = "black"
    white = "white"
    left = "left"
    right = "right"
    minority = "minority"
    majority = "majority"


class PreprocessMode(str, Enum):
    """Raster preparation before tracing."""
    none = "none"
    edge = "edge"


class Fallback(str, Enum):
    """Why the preprocessor did not return the output it was asked for."""
    NONE = "none"
    TINY_IMAGE = "tiny_image"
    FLAT_EDGES = "flat_edges"
    DECODE_FAILED = "decode_failed"
    PREPROCESS_FAILED = "preprocess_failed"


class ConversionStage(str, Enum):
    VALIDATING = "validating"
    AWAITING_SLOT = "awaiting_slot"
    PREPROCESSING = "preprocessing"
    TRACING = "tracing"
    POST_PROCESSING = "post_processing"
    DONE = "done"
    FAILED = "failed"
    REJECTED = "rejected"


_COLOR_RE = re.compile(
    r"^(?:#[0-9a-fA-F]{3,4}|#[0-9a-fA-F]{6}|#[0-9a-fA-F]{8}"
    r"|[a-zA-Z]+"
    r"|(?:rgb|rgba|hsl|hsla)\(\s*[0-9.%,\s/-]+\))$"
)

# Gaussian kernel width grows with sigma; cap it
MAX_BLUR_SIGMA = 50.0

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def is_color(value: str) -> bool:
    """True for hex, named and functional color notations."""
    return bool(_COLOR_RE.match(value.strip()))


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValidationError(f"Invalid boolean for {name}: {value!r}")


def _parse_number(name: str, value: Any, kind):
    try:
        if kind is int and isinstance(value, str):
            return int(float(value))
        return kind(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"Invalid number for {name}: {value!r}") from None


def _is_finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


# ============================================================================
# TRACE PARAMETERS
# ============================================================================

@dataclass(frozen=True)
class TraceParameters:
    """
    User-facing knobs for one conversion.

    Attributes:
        threshold: Luminance below which a pixel counts as ink (0-255).
        turd_size: Speckles up to this area are dropped.
        opt_tolerance: Curve optimization tolerance.
        turn_policy: Tie-breaking rule at ambiguous junctions.
        line_color: Fill applied to every traced path.
        invert: Render white-on-dark instead of dark-on-light.
        transparent: Leave the canvas without a background rectangle.
        bg_color: Background fill when not transparent.
        preprocess: ``none`` or ``edge`` (outline extraction for photos).
        blur_sigma: Gaussian sigma applied before edge extraction.
        edge_boost: Multiplier on the gradient magnitude.
    """
    threshold: int = 224
    turd_size: int = 2
    opt_tolerance: float = 0.28
    turn_policy: TurnPolicy = TurnPolicy.minority
    line_color: str = "#000000"
    invert: bool = False
    transparent: bool = True
    bg_color: str = "#ffffff"
    preprocess: PreprocessMode = PreprocessMode.none
    blur_sigma: float = 0.8
    edge_boost: float = 1.0

    def __post_init__(self):
        try:
            object.__setattr__(self, "turn_policy", TurnPolicy(self.turn_policy))
        except ValueError:
            raise ValidationError(f"Unknown turn policy: {self.turn_policy!r}") from None
        try:
            object.__setattr__(self, "preprocess", PreprocessMode(self.preprocess))
        except ValueError:
            raise ValidationError(f"Unknown preprocess mode: {self.preprocess!r}") from None

        if not isinstance(self.threshold, int) or isinstance(self.threshold, bool):
            raise ValidationError("threshold must be an integer")
        if not 0 <= self.threshold <= 255:
            raise ValidationError("threshold must be between 0 and 255")
        if not isinstance(self.turd_size, int) or self.turd_size < 0:
            raise ValidationError("turdSize must be a non-negative integer")
        if not _is_finite(self.opt_tolerance) or self.opt_tolerance <= 0:
            raise ValidationError("optTolerance must be a positive number")
        if not _is_finite(self.blur_sigma) or not 0 <= self.blur_sigma <= MAX_BLUR_SIGMA:
            raise ValidationError(f"blurSigma must be between 0 and {MAX_BLUR_SIGMA:g}")
        if not _is_finite(self.edge_boost) or self.edge_boost <= 0:
            raise ValidationError("edgeBoost must be a positive number")
        for name in ("line_color", "bg_color"):
            value = getattr(self, name)
            if not isinstance(value, str) or not is_color(value):
                raise ValidationError(f"Invalid color for {name}: {value!r}")
            object.__setattr__(self, name, value.strip())

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "TraceParameters":
        """
        Parse the flat parameter map sent alongside an upload.

        Keys follow the wire names (``turdSize``, ``optTolerance`` ...);
        missing keys take their defaults.
        """
        defaults = cls()

        def get(key, default):
            value = form.get(key)
            return default if value is None else value

        return cls(
            threshold=_parse_number("threshold", get("threshold", defaults.threshold), int),
            turd_size=_parse_number("turdSize", get("turdSize", defaults.turd_size), int),
            opt_tolerance=_parse_number("optTolerance", get("optTolerance", defaults.opt_tolerance), float),
            turn_policy=str(get("turnPolicy", defaults.turn_policy.value)).strip().lower(),
            line_color=str(get("lineColor", defaults.line_color)),
            invert=_parse_bool("invert", get("invert", defaults.invert)),
            transparent=_parse_bool("transparent", get("transparent", defaults.transparent)),
            bg_color=str(get("bgColor", defaults.bg_color)),
            preprocess=str(get("preprocess", defaults.preprocess.value)).strip().lower(),
            blur_sigma=_parse_number("blurSigma", get("blurSigma", defaults.blur_sigma), float),
            edge_boost=_parse_number("edgeBoost", get("edgeBoost", defaults.edge_boost), float),
        )

    def with_polarity(self) -> "TraceParameters":
        """
        Resolve the white-on-dark rendering requested by ``invert``.

        Inverted output always gets an opaque background. A white
        background becomes the dark default and black lines become white.
        """
        if not self.invert:
            return self
        bg = self.bg_color
        if bg.lower() in ("#ffffff", "#fff"):
            bg = DARK_BACKGROUND
        line = self.line_color
        if line.lower() == "#000000":
            line = "#ffffff"
        return replace(self, transparent=False, bg_color=bg, line_color=line)


# ============================================================================
# REQUEST / INTERMEDIATE / RESULT
# ============================================================================

@dataclass(frozen=True)
class ConversionRequest:
    data: bytes
    mime_type: str
    size: int
    params: TraceParameters = field(default_factory=TraceParameters)

    def __post_init__(self):
        if not isinstance(self.data, (bytes, bytearray)):
            raise ValidationError("No file uploaded.")
        object.__setattr__(self, "data", bytes(self.data))
        object.__setattr__(self, "mime_type", (self.mime_type or "").strip().lower())
        if self.size != len(self.data):
            raise ValidationError("Declared size does not match payload length.")

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str,
                   params: Optional[TraceParameters] = None) -> "ConversionRequest":
        return cls(data=data, mime_type=mime_type, size=len(data),
                   params=params or TraceParameters())


@dataclass(frozen=True)
class NormalizedBitmap:
    """Grayscale raster ready for tracing; dark pixels are ink."""
    pixels: np.ndarray
    fallback: Fallback = Fallback.NONE

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def to_png(self) -> bytes:
        ok, buf = cv2.imencode(".png", self.pixels)
        if not ok:
            raise ValueError("PNG encoding failed")
        return buf.tobytes()


@dataclass(frozen=True)
class RawImage:
    """Original upload bytes, passed through when decoding failed."""
    data: bytes
    fallback: Fallback = Fallback.DECODE_FAILED
    reason: str = ""


PreparedImage = Union[NormalizedBitmap, RawImage]


@dataclass(frozen=True)
class VectorDocument:
    markup: str
    width: int
    height: int


@dataclass(frozen=True)
class ConversionResult:
    svg: str
    width: int
    height: int
    running: int
    queued: int
    preprocess_fallback: Fallback = Fallback.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "svg": self.svg,
            "width": self.width,
            "height": self.height,
            "gate": {"running": self.running, "queued": self.queued},
        }
