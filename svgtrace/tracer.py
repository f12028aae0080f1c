"""
SVGTrace Tracer Adapter.

Wraps a bitmap-to-vector engine behind one coroutine:

    markup = await VectorTracer(engine).trace(image, params)

Two engine shapes are supported:

- function: ``engine(image_bytes, options) -> str``
  (``vtracer_engine`` is one, built on vtracer)
- stateful: an object, or a class instantiated per trace, exposing
  ``load_image(image)``, ``set_parameters(options)`` and ``get_svg()``
  (``PotraceEngine`` is one, built on potracer)

Engines run in a worker thread. Any exception they raise becomes a
``TraceError``; nothing is retried.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np
import cv2
import potrace
import svgwrite

from .errors import TraceError
from .models import NormalizedBitmap, PreparedImage, RawImage, TraceParameters

try:
    import vtracer
    VTRACER_AVAILABLE = True
except ImportError:
    VTRACER_AVAILABLE = False

logger = logging.getLogger(__name__)


POTRACE_TURN_POLICIES = {
    "black": potrace.POTRACE_TURNPOLICY_BLACK,
    "white": potrace.POTRACE_TURNPOLICY_WHITE,
    "left": potrace.POTRACE_TURNPOLICY_LEFT,
    "right": potrace.POTRACE_TURNPOLICY_RIGHT,
    "minority": potrace.POTRACE_TURNPOLICY_MINORITY,
    "majority": potrace.POTRACE_TURNPOLICY_MAJORITY,
}


@dataclass(frozen=True)
class TraceOptions:
    """
    Option set handed to an engine.

    Paths are always traced black on white; line color, inversion and
    background are applied afterwards by the post-processor.
    """
    color: str = "#000000"
    threshold: int = 224
    turd_size: int = 2
    opt_tolerance: float = 0.28
    turn_policy: str = "minority"
    invert: bool = False
    black_on_white: bool = True

    @classmethod
    def from_parameters(cls, params: TraceParameters) -> "TraceOptions":
        return cls(
            threshold=params.threshold,
            turd_size=params.turd_size,
            opt_tolerance=params.opt_tolerance,
            turn_policy=params.turn_policy.value,
        )

    def ink_mask(self, gray: np.ndarray) -> np.ndarray:
        """Boolean array, True where a pixel should become part of a shape."""
        if self.black_on_white:
            ink = gray < self.threshold
        else:
            ink = gray >= self.threshold
        return ~ink if self.invert else ink


def decode_gray(data: bytes) -> np.ndarray:
    gray = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_GRAYSCALE)
    if gray is None:
        raise ValueError("unsupported image data")
    return gray


def _num(value: float) -> str:
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


def curve_to_path_data(curve) -> str:
    """SVG path commands for one closed potrace curve."""
    start = curve.start_point
    d = [f"M{_num(start.x)} {_num(start.y)}"]
    for segment in curve.segments:
        end = segment.end_point
        if segment.is_corner:
            c = segment.c
            d.append(f"L{_num(c.x)} {_num(c.y)}L{_num(end.x)} {_num(end.y)}")
        else:
            c1, c2 = segment.c1, segment.c2
            d.append(f"C{_num(c1.x)} {_num(c1.y)} {_num(c2.x)} {_num(c2.y)} {_num(end.x)} {_num(end.y)}")
    d.append("Z")
    return "".join(d)


# ============================================================================
# ENGINES
# ============================================================================

class PotraceEngine:
    """Stateful engine on top of potracer's ``Bitmap``."""

    name = "potrace"

    def __init__(self):
        self._gray = None
        self._options = TraceOptions()

    def load_image(self, image: PreparedImage) -> None:
        if isinstance(image, NormalizedBitmap):
            self._gray = image.pixels
        elif isinstance(image, RawImage):
            self._gray = decode_gray(image.data)
        else:
            raise TypeError(f"cannot trace {type(image).__name__}")

    def set_parameters(self, options: TraceOptions) -> None:
        if options.turn_policy not in POTRACE_TURN_POLICIES:
            raise ValueError(f"unknown turn policy: {options.turn_policy}")
        self._options = options

    def get_svg(self) -> str:
        if self._gray is None:
            raise RuntimeError("no image loaded")
        opts = self._options
        height, width = self._gray.shape[:2]

        # Bitmap inverts its input: pass background as True so ink ends up set
        bitmap = potrace.Bitmap(~opts.ink_mask(self._gray))
        traced = bitmap.trace(
            turdsize=opts.turd_size,
            turnpolicy=POTRACE_TURN_POLICIES[opts.turn_policy],
            alphamax=1.0,
            opticurve=True,
            opttolerance=opts.opt_tolerance,
        )

        dwg = svgwrite.Drawing(size=(width, height), profile="full", debug=False)
        dwg.attribs["viewBox"] = f"0 0 {width} {height}"
        d = "".join(curve_to_path_data(curve) for curve in traced.curves)
        if d:
            dwg.add(dwg.path(d=d, fill=opts.color, fill_rule="evenodd", stroke="none"))
        return dwg.tostring()


def vtracer_engine(image_bytes: bytes, options: TraceOptions) -> str:
    """Function engine on top of vtracer's binary mode."""
    if not VTRACER_AVAILABLE:
        raise RuntimeError("vtracer is not installed")
    gray = decode_gray(image_bytes)
    # Threshold here so vtracer's own fixed cutoff sees a clean two-tone image
    binary = np.where(options.ink_mask(gray), 0, 255).astype(np.uint8)
    ok, buf = cv2.imencode(".png", binary)
    if not ok:
        raise ValueError("PNG encoding failed")
    return vtracer.convert_raw_image_to_svg(
        buf.tobytes(),
        img_format="png",
        colormode="binary",
        hierarchical="stacked",
        mode="spline",
        filter_speckle=options.turd_size,
        corner_threshold=60,
        length_threshold=4.0,
        splice_threshold=45,
        path_precision=3,
    )


vtracer_engine.name = "vtracer"


def build_engine(name: str):
    """Engine for a configured name (``potrace`` or ``vtracer``)."""
    if name == "potrace":
        return PotraceEngine
    if name == "vtracer":
        if not VTRACER_AVAILABLE:
            raise RuntimeError("vtracer engine requested but vtracer is not installed")
        return vtracer_engine
    raise ValueError(f"unknown tracer engine: {name}")


# ============================================================================
# ADAPTER
# ============================================================================

def _is_stateful(engine: Any) -> bool:
    return all(callable(getattr(engine, m, None)) for m in ("load_image", "set_parameters", "get_svg"))


class VectorTracer:
    """Single asynchronous entry point over either engine shape."""

    def __init__(self, engine: Any = PotraceEngine):
        if _is_stateful(engine):
            self._run: Callable[[PreparedImage, TraceOptions], Any] = self._run_stateful
        elif callable(engine):
            self._run = self._run_function
        else:
            raise TypeError("engine must be a callable or expose load_image/set_parameters/get_svg")
        self.engine = engine
        self.name = getattr(engine, "name", None) or getattr(engine, "__name__", type(engine).__name__)
        # Shared engine instances keep state between steps
        self._lock: Optional[threading.Lock] = None if isinstance(engine, type) else threading.Lock()

    def _run_function(self, image: PreparedImage, options: TraceOptions):
        payload = image.to_png() if isinstance(image, NormalizedBitmap) else image.data
        return self.engine(payload, options)

    def _run_stateful(self, image: PreparedImage, options: TraceOptions):
        if self._lock is None:
            return self._steps(self.engine(), image, options)
        with self._lock:
            return self._steps(self.engine, image, options)

    @staticmethod
    def _steps(engine, image: PreparedImage, options: TraceOptions):
        engine.load_image(image)
        engine.set_parameters(options)
        return engine.get_svg()

    async def trace(self, image: PreparedImage, params: TraceParameters) -> str:
        """
        Trace a prepared image into SVG markup.

        Args:
            image: Output of the preprocessor.
            params: Conversion parameters.

        Returns:
            Raw SVG markup from the engine.

        Raises:
            TraceError: The engine raised or returned something other than text.
        """
        options = TraceOptions.from_parameters(params)
        try:
            markup = await asyncio.to_thread(self._run, image, options)
        except Exception as e:
            logger.warning("Tracer %s failed: %s", self.name, e)
            raise TraceError(f"Tracing failed: {e}") from e
        if isinstance(markup, bytes):
            markup = markup.decode("utf-8", errors="replace")
        if not isinstance(markup, str):
            raise TraceError(f"Tracer {self.name} returned {type(markup).__name__}, expected SVG text")
        return markup
