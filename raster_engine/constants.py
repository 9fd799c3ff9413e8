from __future__ import annotations

from enum import Enum


class ContentType(str, Enum):
    """Content classes produced by the analyzer."""
    PHOTO = "photo"
    ART = "art"
    TEXT = "text"
    MIXED = "mixed"

    @classmethod
    def list(cls):
        return list(map(lambda c: c.value, cls))


class Algorithm(str, Enum):
    """Resampling strategies. AUTO lets the planner pick from the analysis."""
    AUTO = "auto"
    NEAREST = "nearest"
    BICUBIC = "bicubic"
    LANCZOS3 = "lanczos3"
    LANCZOS4 = "lanczos4"
    BSPLINE = "bspline"
    RESIDUAL = "residual"                      # ESRGAN-like two-pass + detail
    LINE_ART = "line_art"                      # waifu2x-like
    ARTIFACT_REDUCTION = "artifact_reduction"
    GENERAL = "general"                        # SRCNN-like

    @classmethod
    def list(cls):
        return list(map(lambda c: c.value, cls))

    @classmethod
    def parse(cls, value: "str | Algorithm | None") -> "Algorithm":
        if value is None:
            return cls.AUTO
        if isinstance(value, Algorithm):
            return value
        key = str(value).strip().lower().replace("-", "_")
        return cls(ALGORITHM_ALIASES.get(key, key))


# Alternative names accepted on input
ALGORITHM_ALIASES = {
    "lanczos": "lanczos3",
    "esrgan": "residual",
    "waifu2x": "line_art",
    "srcnn": "general",
    "cubic": "bicubic",
}


class OutputFormat(str, Enum):
    PNG = "png"
    WEBP = "webp"
    JPEG = "jpeg"

    @classmethod
    def parse(cls, value: "str | OutputFormat") -> "OutputFormat":
        if isinstance(value, OutputFormat):
            return value
        key = str(value).strip().lower()
        if key == "jpg":
            key = "jpeg"
        return cls(key)

    @property
    def extension(self) -> str:
        return ".jpg" if self is OutputFormat.JPEG else f".{self.value}"


class Refinement(str, Enum):
    """Edge-preserving mask smoothing variants."""
    GUIDED = "guided"
    RELAXATION = "relaxation"
