"""
SVGTrace Conversion Service.

Drives one conversion through its stages:

    validating -> awaiting_slot -> preprocessing -> tracing
        -> post_processing -> done

Any stage may end in ``failed``; ``awaiting_slot`` may end in ``rejected``
when the admission gate is saturated. Validation runs before a slot is
requested, so oversized or malformed uploads never occupy one. The slot
is held in an ``async with`` block and released on every exit path.
Retries are left to the caller, guided by ``BusyError.retry_after_ms``.

Usage:
    service = ConversionService.create(ServiceConfig.from_env())
    result = await service.convert(ConversionRequest.from_bytes(data, "image/png"))
"""

import asyncio
import logging
import mimetypes
import time
from collections import Counter
from pathlib import Path
from typing import Any, Optional, Tuple, Union

from PIL import Image, UnidentifiedImageError

from .config import ServiceConfig
from .errors import (
    BusyError,
    ConversionError,
    GENERIC_FAILURE,
    PostProcessError,
    PreprocessError,
    TraceError,
    ValidationError,
)
from .gate import AdmissionGate
from .models import (
    ConversionRequest,
    ConversionResult,
    ConversionStage,
    TraceParameters,
)
from .postprocess import postprocess
from .preprocess import Preprocessor, probe_dimensions
from .tracer import VectorTracer, build_engine

logger = logging.getLogger(__name__)

_STAGE_ERRORS = {
    ConversionStage.PREPROCESSING: PreprocessError,
    ConversionStage.TRACING: TraceError,
    ConversionStage.POST_PROCESSING: PostProcessError,
}


class ConversionService:
    """
    Raster-to-vector conversion behind a shared admission gate.

    Build one instance at startup and hand it to whatever receives
    requests; all conversions must share its gate.
    """

    def __init__(
        self,
        config: ServiceConfig,
        gate: AdmissionGate,
        preprocessor: Preprocessor,
        tracer: VectorTracer,
    ):
        self.config = config
        self.gate = gate
        self.preprocessor = preprocessor
        self.tracer = tracer
        self.outcomes = Counter()

    @classmethod
    def create(cls, config: Optional[ServiceConfig] = None, engine: Any = None) -> "ConversionService":
        """Wire a service with the default collaborators for ``config``."""
        config = config or ServiceConfig()
        if engine is None:
            engine = build_engine(config.tracer_engine)
        return cls(
            config=config,
            gate=AdmissionGate.from_config(config),
            preprocessor=Preprocessor(config),
            tracer=VectorTracer(engine),
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def check_transport(self, method: str, content_type: str, content_length: Optional[int] = None) -> None:
        """
        Cheap checks on the envelope of an upload, before reading the body.

        Raises:
            ValidationError: Wrong method (405), not multipart (415) or a
                declared length that cannot fit the upload limit (413).
        """
        if (method or "").upper() != "POST":
            raise ValidationError("Method not allowed", status_code=405)
        if not (content_type or "").lower().startswith("multipart/form-data"):
            raise ValidationError("Unsupported content type. Use multipart/form-data.", status_code=415)
        limit = self.config.max_upload_bytes + self.config.max_upload_overhead_bytes
        if content_length and content_length > limit:
            raise ValidationError(
                "Upload too large for live conversion. Please resize and try again.",
                status_code=413,
            )

    def validate(self, request: ConversionRequest) -> Tuple[int, int]:
        """
        Reject requests that must not consume a slot.

        Returns:
            (width, height) read from the image header.

        Raises:
            ValidationError: Disallowed type, empty or oversized payload,
                unreadable header or dimensions past the limits.
        """
        cfg = self.config
        if request.mime_type not in cfg.allowed_mime:
            raise ValidationError("Only PNG or JPEG images are allowed.", status_code=415)
        if request.size == 0:
            raise ValidationError("No file uploaded.", status_code=400)
        if request.size > cfg.max_upload_bytes:
            raise ValidationError(f"File too large. Max {cfg.max_upload_mb} MB per image.", status_code=413)

        try:
            width, height = probe_dimensions(request.data)
        except Image.DecompressionBombError:
            raise ValidationError(
                f"Image too large. Max {cfg.max_side}px per side or {cfg.max_megapixels:g} MP.",
                status_code=413,
            ) from None
        except (UnidentifiedImageError, OSError, ValueError, SyntaxError):
            raise ValidationError("Could not read image dimensions. Try a different file.",
                                  status_code=415) from None

        if not width or not height:
            raise ValidationError("Could not read image dimensions. Try a different file.", status_code=415)
        megapixels = (width * height) / 1_000_000
        if width > cfg.max_side or height > cfg.max_side or megapixels > cfg.max_megapixels:
            raise ValidationError(
                f"Image too large: {width}×{height} (~{megapixels:.1f} MP). "
                f"Max {cfg.max_side}px per side or {cfg.max_megapixels:g} MP.",
                status_code=413,
            )
        return width, height

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    async def convert(self, request: ConversionRequest) -> ConversionResult:
        """
        Convert one uploaded bitmap into SVG markup.

        Args:
            request: The validated-on-construction request.

        Returns:
            ConversionResult with the final markup, its dimensions and the
            gate occupancy seen while the job held its slot.

        Raises:
            ValidationError: Rejected before any slot was requested.
            BusyError: The gate's wait queue is full.
            TraceError: The tracing engine failed.
            ConversionError: Any other failure, with ``stage`` set.
        """
        stage = ConversionStage.VALIDATING
        started = time.perf_counter()

        def enter(next_stage):
            nonlocal stage
            logger.debug("conversion: %s -> %s", stage.value, next_stage.value)
            stage = next_stage

        try:
            self.validate(request)
            params = request.params.with_polarity()

            enter(ConversionStage.AWAITING_SLOT)
            async with self.gate.slot():
                enter(ConversionStage.PREPROCESSING)
                prepared = await asyncio.to_thread(
                    self.preprocessor.normalize,
                    request.data,
                    params.preprocess,
                    params.blur_sigma,
                    params.edge_boost,
                )

                enter(ConversionStage.TRACING)
                markup = await self.tracer.trace(prepared, params)

                enter(ConversionStage.POST_PROCESSING)
                doc = postprocess(markup, params)
                snapshot = self.gate.snapshot()
        except ConversionError as e:
            e.stage = stage
            self._record_failure(e, stage)
            raise
        except Exception as e:
            error_cls = _STAGE_ERRORS.get(stage, ConversionError)
            wrapped = error_cls(GENERIC_FAILURE)
            wrapped.stage = stage
            logger.exception("conversion: unexpected failure during %s", stage.value)
            self._record_failure(wrapped, stage)
            raise wrapped from e

        enter(ConversionStage.DONE)
        self.outcomes[ConversionStage.DONE] += 1
        logger.info("conversion: done %dx%d in %.0f ms (engine=%s, fallback=%s)",
                    doc.width, doc.height, (time.perf_counter() - started) * 1000,
                    self.tracer.name, prepared.fallback.value)
        return ConversionResult(
            svg=doc.markup,
            width=doc.width,
            height=doc.height,
            running=snapshot.running,
            queued=snapshot.queued,
            preprocess_fallback=prepared.fallback,
        )

    def _record_failure(self, error: ConversionError, stage: ConversionStage) -> None:
        if isinstance(error, BusyError):
            self.outcomes[ConversionStage.REJECTED] += 1
            logger.info("conversion: rejected while %s, retry after %d ms", stage.value, error.retry_after_ms)
        else:
            self.outcomes[ConversionStage.FAILED] += 1
            log = logger.info if isinstance(error, ValidationError) else logger.warning
            log("conversion: failed during %s: %s", stage.value, error.message)

    async def convert_file(
        self,
        path: Union[str, Path],
        params: Optional[TraceParameters] = None,
        mime_type: Optional[str] = None,
    ) -> ConversionResult:
        """Convert an image file, guessing its MIME type from the extension."""
        path = Path(path)
        data = await asyncio.to_thread(path.read_bytes)
        if mime_type is None:
            mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return await self.convert(ConversionRequest.from_bytes(data, mime_type, params))
