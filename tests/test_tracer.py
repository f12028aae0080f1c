"""
Tests for the tracer adapter and its engines.
"""

import asyncio
from types import SimpleNamespace

import numpy as np
import pytest

from conftest import SIMPLE_SVG, FailingEngine, square_png
from svgtrace.errors import TraceError
from svgtrace.models import NormalizedBitmap, RawImage, TraceParameters
from svgtrace.tracer import (
    VTRACER_AVAILABLE,
    PotraceEngine,
    TraceOptions,
    VectorTracer,
    build_engine,
    curve_to_path_data,
    vtracer_engine,
)


def square_bitmap(size=100, inset=25) -> NormalizedBitmap:
    pixels = np.full((size, size), 255, dtype=np.uint8)
    pixels[inset:size - inset, inset:size - inset] = 0
    return NormalizedBitmap(pixels)


class RecordingEngine:
    name = "recording"

    def __init__(self, result=SIMPLE_SVG):
        self.result = result
        self.calls = []

    def __call__(self, image_bytes, options):
        self.calls.append((image_bytes, options))
        return self.result


class StatefulEngine:
    """Records the order of the three engine steps."""

    log = []

    def __init__(self):
        StatefulEngine.log.append("init")

    def load_image(self, image):
        StatefulEngine.log.append("load")

    def set_parameters(self, options):
        StatefulEngine.log.append("set")

    def get_svg(self):
        StatefulEngine.log.append("get")
        return SIMPLE_SVG


class TestFunctionShape:
    def test_receives_png_and_options(self):
        """Bitmaps are handed over PNG-encoded with options from the parameters."""
        engine = RecordingEngine()
        params = TraceParameters(threshold=128, turd_size=5, opt_tolerance=0.5, turn_policy="black")
        markup = asyncio.run(VectorTracer(engine).trace(square_bitmap(), params))

        assert markup == SIMPLE_SVG
        payload, options = engine.calls[0]
        assert payload.startswith(b"\x89PNG")
        assert options == TraceOptions(threshold=128, turd_size=5, opt_tolerance=0.5, turn_policy="black")

    def test_raw_image_passed_through(self):
        engine = RecordingEngine()
        asyncio.run(VectorTracer(engine).trace(RawImage(b"original"), TraceParameters()))
        assert engine.calls[0][0] == b"original"

    def test_engine_never_sees_inversion(self):
        """Polarity is a post-processing concern; engines always trace black on white."""
        engine = RecordingEngine()
        asyncio.run(VectorTracer(engine).trace(square_bitmap(), TraceParameters(invert=True)))
        options = engine.calls[0][1]
        assert options.invert is False
        assert options.black_on_white is True
        assert options.color == "#000000"

    def test_bytes_result_decoded(self):
        engine = RecordingEngine(SIMPLE_SVG.encode())
        assert asyncio.run(VectorTracer(engine).trace(square_bitmap(), TraceParameters())) == SIMPLE_SVG


class TestStatefulShape:
    def test_class_instantiated_per_trace(self):
        StatefulEngine.log = []
        tracer = VectorTracer(StatefulEngine)
        asyncio.run(tracer.trace(square_bitmap(), TraceParameters()))
        asyncio.run(tracer.trace(square_bitmap(), TraceParameters()))
        assert StatefulEngine.log == ["init", "load", "set", "get"] * 2

    def test_shared_instance(self):
        StatefulEngine.log = []
        engine = StatefulEngine()
        tracer = VectorTracer(engine)
        asyncio.run(tracer.trace(square_bitmap(), TraceParameters()))
        assert StatefulEngine.log == ["init", "load", "set", "get"]

    def test_name_taken_from_engine(self):
        assert VectorTracer(PotraceEngine).name == "potrace"
        assert VectorTracer(RecordingEngine()).name == "recording"


class TestFailures:
    def test_engine_error_wrapped(self):
        with pytest.raises(TraceError) as excinfo:
            asyncio.run(VectorTracer(FailingEngine()).trace(square_bitmap(), TraceParameters()))
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert "engine exploded" in excinfo.value.message

    def test_non_text_result(self):
        with pytest.raises(TraceError):
            asyncio.run(VectorTracer(RecordingEngine(None)).trace(square_bitmap(), TraceParameters()))

    def test_invalid_engine(self):
        with pytest.raises(TypeError):
            VectorTracer(42)

    def test_build_engine(self):
        assert build_engine("potrace") is PotraceEngine
        with pytest.raises(ValueError):
            build_engine("autotrace")


class TestTraceOptions:
    def test_ink_mask_polarity(self):
        gray = np.array([[0, 127, 128, 255]], dtype=np.uint8)
        assert TraceOptions(threshold=128).ink_mask(gray).tolist() == [[True, True, False, False]]
        assert TraceOptions(threshold=128, invert=True).ink_mask(gray).tolist() == [[False, False, True, True]]
        assert TraceOptions(threshold=128, black_on_white=False).ink_mask(gray).tolist() == \
            [[False, False, True, True]]

    def test_path_data(self):
        point = lambda x, y: SimpleNamespace(x=x, y=y)
        curve = SimpleNamespace(
            start_point=point(0.0, 0.0),
            segments=[
                SimpleNamespace(is_corner=True, c=point(10.0, 0.0), end_point=point(10.0, 10.0)),
                SimpleNamespace(is_corner=False, c1=point(5.0, 15.0), c2=point(0.25, 15.0),
                                end_point=point(0.0, 0.0)),
            ],
        )
        assert curve_to_path_data(curve) == "M0 0L10 0L10 10C5 15 0.25 15 0 0Z"


class TestPotraceEngine:
    """End-to-end tracing with potracer."""

    def test_square_traces_to_one_path(self):
        markup = asyncio.run(VectorTracer(PotraceEngine).trace(square_bitmap(), TraceParameters()))
        assert markup.startswith("<svg")
        assert 'viewBox="0 0 100 100"' in markup
        assert markup.count("<path") == 1

    def test_blank_image_has_no_paths(self):
        blank = NormalizedBitmap(np.full((30, 30), 255, dtype=np.uint8))
        markup = asyncio.run(VectorTracer(PotraceEngine).trace(blank, TraceParameters()))
        assert "<path" not in markup

    def test_raw_png_decoded(self):
        markup = asyncio.run(VectorTracer(PotraceEngine).trace(RawImage(square_png(80, 20)), TraceParameters()))
        assert markup.count("<path") == 1

    def test_unknown_turn_policy(self):
        with pytest.raises(ValueError):
            PotraceEngine().set_parameters(TraceOptions(turn_policy="sideways"))


@pytest.mark.skipif(not VTRACER_AVAILABLE, reason="vtracer not installed")
class TestVTracerEngine:
    def test_square(self):
        markup = vtracer_engine(square_png(100, 25), TraceOptions())
        assert "<svg" in markup
        assert "<path" in markup

    def test_through_adapter(self):
        markup = asyncio.run(VectorTracer(build_engine("vtracer")).trace(square_bitmap(), TraceParameters()))
        assert "<path" in markup
