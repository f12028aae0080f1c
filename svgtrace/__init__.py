"""
SVGTrace - Raster to Vector Conversion Service

SVGTrace turns uploaded bitmaps (PNG, JPEG) into SVG outlines. Conversions
are CPU-bound, so every one of them passes through a shared admission gate
that bounds concurrency and queues or rejects excess demand.
"""

from .config import ServiceConfig, FlatnessTuning
from .errors import (
    ConversionError,
    ValidationError,
    BusyError,
    PreprocessError,
    TraceError,
    PostProcessError,
    error_payload,
)
from .gate import AdmissionGate, GateSlot, GateSnapshot
from .models import (
    TraceParameters,
    TurnPolicy,
    PreprocessMode,
    Fallback,
    ConversionStage,
    ConversionRequest,
    ConversionResult,
    NormalizedBitmap,
    RawImage,
    VectorDocument,
)
from .preprocess import Preprocessor
from .tracer import VectorTracer, PotraceEngine, TraceOptions, vtracer_engine
from .postprocess import postprocess
from .service import ConversionService

__version__ = "0.1.0"

__all__ = [
    # Service
    'ConversionService',
    'ServiceConfig',
    'FlatnessTuning',
    # Admission
    'AdmissionGate',
    'GateSlot',
    'GateSnapshot',
    # Pipeline stages
    'Preprocessor',
    'VectorTracer',
    'PotraceEngine',
    'TraceOptions',
    'vtracer_engine',
    'postprocess',
    # Data model
    'TraceParameters',
    'TurnPolicy',
    'PreprocessMode',
    'Fallback',
    'ConversionStage',
    'ConversionRequest',
    'ConversionResult',
    'NormalizedBitmap',
    'RawImage',
    'VectorDocument',
    # Errors
    'ConversionError',
    'ValidationError',
    'BusyError',
    'PreprocessError',
    'TraceError',
    'PostProcessError',
    'error_payload',
]
