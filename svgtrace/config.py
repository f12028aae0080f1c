"""
SVGTrace Configuration.

Limits and tuning knobs of the conversion service. Defaults mirror the
limits of the hosted converters; every field can be overridden from
``SVGTRACE_*`` environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from typing import FrozenSet, Mapping, Optional

MB = 1024 * 1024

DEFAULT_DIMENSION = 1024
DARK_BACKGROUND = "#0b1020"
TRACER_ENGINES = ("potrace", "vtracer")


def default_max_concurrent(cpu_count: Optional[int] = None) -> int:
    """Concurrent conversions allowed: the CPU count clamped to 1..2."""
    if cpu_count is None:
        cpu_count = os.cpu_count() or 1
    return max(1, min(2, cpu_count))


@dataclass(frozen=True)
class FlatnessTuning:
    """
    Thresholds for deciding an edge map came out blank.

    These were tuned by eye to catch clearly empty output; they are not
    derived from a model.
    """
    sample_step: int = 53
    min_range: int = 2
    mean_margin: int = 8
    min_variance: float = 8.0


@dataclass(frozen=True)
class ServiceConfig:
    max_upload_bytes: int = 30 * MB
    max_upload_overhead_bytes: int = 5 * MB
    max_megapixels: float = 30.0
    max_side: int = 8000
    downscale_side: int = 4000
    allowed_mime: FrozenSet[str] = frozenset({"image/png", "image/jpeg"})
    max_concurrent: int = field(default_factory=default_max_concurrent)
    max_queued: int = 8
    estimated_job_ms: int = 3000
    retry_min_ms: int = 1000
    retry_max_ms: int = 15000
    tracer_engine: str = "potrace"
    flatness: FlatnessTuning = field(default_factory=FlatnessTuning)

    def __post_init__(self):
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if self.max_queued < 0:
            raise ValueError("max_queued must not be negative")
        if self.retry_min_ms > self.retry_max_ms:
            raise ValueError("retry_min_ms must not exceed retry_max_ms")
        if self.tracer_engine not in TRACER_ENGINES:
            raise ValueError(f"unknown tracer engine: {self.tracer_engine}")

    @property
    def max_upload_mb(self) -> int:
        return self.max_upload_bytes // MB

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServiceConfig":
        """
        Build a configuration, overriding defaults from the environment.

        Recognized variables: SVGTRACE_MAX_UPLOAD_MB, SVGTRACE_MAX_MEGAPIXELS,
        SVGTRACE_MAX_SIDE, SVGTRACE_DOWNSCALE_SIDE, SVGTRACE_ALLOWED_MIME
        (comma separated), SVGTRACE_MAX_CONCURRENT, SVGTRACE_MAX_QUEUED,
        SVGTRACE_ESTIMATED_JOB_MS, SVGTRACE_TRACER.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``).

        Returns:
            A validated ServiceConfig.
        """
        env = os.environ if environ is None else environ
        overrides = {}

        def read(name, convert):
            raw = env.get(name)
            if raw is None or raw.strip() == "":
                return None
            try:
                return convert(raw.strip())
            except ValueError:
                raise ValueError(f"invalid value for {name}: {raw!r}") from None

        upload_mb = read("SVGTRACE_MAX_UPLOAD_MB", int)
        if upload_mb is not None:
            overrides["max_upload_bytes"] = upload_mb * MB
        for name, key, convert in (
            ("SVGTRACE_MAX_MEGAPIXELS", "max_megapixels", float),
            ("SVGTRACE_MAX_SIDE", "max_side", int),
            ("SVGTRACE_DOWNSCALE_SIDE", "downscale_side", int),
            ("SVGTRACE_MAX_CONCURRENT", "max_concurrent", int),
            ("SVGTRACE_MAX_QUEUED", "max_queued", int),
            ("SVGTRACE_ESTIMATED_JOB_MS", "estimated_job_ms", int),
            ("SVGTRACE_TRACER", "tracer_engine", str.lower),
        ):
            value = read(name, convert)
            if value is not None:
                overrides[key] = value
        mime = read("SVGTRACE_ALLOWED_MIME", str)
        if mime is not None:
            overrides["allowed_mime"] = frozenset(
                m.strip().lower() for m in mime.split(",") if m.strip()
            )
        return replace(cls(), **overrides)
