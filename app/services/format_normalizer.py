# services/format_normalizer.py
"""
Format Normalizer

Turns an uploaded image into a payload every analysis backend can decode,
no larger than the configured ceiling.

Pipeline:
1. Classify the upload (image / video) from extension + declared MIME.
2. Detect encodings that need conversion (HEIC/HEIF, including iOS uploads
   whose browser-reported MIME is empty or generic).
3. Convert through an ordered chain of decoder strategies. The first one
   that succeeds wins; if all fail, ConversionFailed carries every cause.
4. Recompress oversized results on a fixed JPEG quality ladder
   (80 -> 30, step 10). Still too large at the floor -> PayloadTooLarge.

Everything here is a pure function of the input bytes and safe to retry.
"""

import io
import os
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from PIL import Image

from core.config import settings
from core.exceptions import ConversionFailed, PayloadTooLarge, UnsupportedMediaType
from core.logger import logger
from models.media import MediaKind

JPEG_MIME = "image/jpeg"
# Pillow raises DecompressionBombError, not OSError, for oversized pixel counts
DECODE_ERRORS = (OSError, ValueError, Image.DecompressionBombError)
HEIC_EXTENSIONS = (".heic", ".heif")
HEIC_MIME_TYPES = {"image/heic", "image/heif", "image/heic-sequence", "image/heif-sequence"}
GENERIC_MIME_TYPES = {"", "application/octet-stream", "text/plain", "binary/octet-stream"}

# iOS camera roll names; Safari often reports these with an empty MIME type
IOS_CAMERA_NAME = re.compile(r"^IMG_E?\d{3,}", re.IGNORECASE)

EXTENSION_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".heic": "image/heic",
    ".heif": "image/heif",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".m4v": "video/x-m4v",
}


def _extension(file_name: str) -> str:
    return os.path.splitext(file_name or "")[1].lower()


def _clean_mime(mime_type: Optional[str]) -> str:
    return (mime_type or "").split(";")[0].strip().lower()


def normalize_mime_type(mime_type: Optional[str], file_name: str) -> str:
    """Trust a specific declared MIME type, otherwise guess from the extension."""
    declared = _clean_mime(mime_type)
    if declared not in GENERIC_MIME_TYPES:
        return declared
    return EXTENSION_MIME_TYPES.get(_extension(file_name), JPEG_MIME)


def is_video_file(file_name: str, mime_type: Optional[str]) -> bool:
    return _extension(file_name) in settings.VIDEO_EXTENSIONS or _clean_mime(mime_type).startswith("video/")


def needs_conversion(file_name: str, mime_type: Optional[str]) -> bool:
    """
    True for encodings the analysis side cannot be trusted to decode.

    Extension and declared MIME are both checked; neither is sufficient on
    its own because mobile browsers misreport HEIC uploads. When the MIME is
    generic, an iOS camera file name without a web-image extension is also
    treated as HEIC.
    """
    ext = _extension(file_name)
    declared = _clean_mime(mime_type)

    if ext in HEIC_EXTENSIONS or declared in HEIC_MIME_TYPES:
        return True

    base_name = os.path.basename(file_name or "")
    if declared in GENERIC_MIME_TYPES and IOS_CAMERA_NAME.match(base_name):
        return ext not in (".jpg", ".jpeg", ".png", ".gif", ".webp")

    return False


def classify_upload(file_name: str, mime_type: Optional[str]) -> MediaKind:
    """Decide whether an upload is an image or a video, or reject it."""
    if is_video_file(file_name, mime_type):
        return MediaKind.VIDEO

    declared = _clean_mime(mime_type)
    has_image_extension = _extension(file_name) in settings.IMAGE_EXTENSIONS
    is_potential_mobile_image = declared in GENERIC_MIME_TYPES and has_image_extension

    if declared.startswith("image/") or is_potential_mobile_image or needs_conversion(file_name, mime_type):
        return MediaKind.IMAGE

    raise UnsupportedMediaType(
        "Invalid file type. Please upload an image (JPEG, PNG, GIF, HEIC, HEIF) "
        "or video (MP4, MOV, AVI, WebM)."
    )


# ============================================================================
# CONVERSION STRATEGIES
# ============================================================================

class ConversionStrategy:
    """Decodes a payload and re-encodes it as JPEG at the given quality."""

    name = "strategy"

    def convert(self, data: bytes, quality: int) -> bytes:
        raise NotImplementedError


class HeifDecoderStrategy(ConversionStrategy):
    """libheif through pillow-heif."""

    name = "pillow-heif"

    def convert(self, data: bytes, quality: int) -> bytes:
        import pillow_heif

        heif_file = pillow_heif.open_heif(io.BytesIO(data), convert_hdr_to_8bit=True)
        image = Image.frombytes(
            heif_file.mode,
            heif_file.size,
            heif_file.data,
            "raw",
            heif_file.mode,
            heif_file.stride,
        )
        return encode_jpeg(image, quality)


class OpenCVDecoderStrategy(ConversionStrategy):
    """OpenCV's own codec stack; a different decoder than libheif."""

    name = "opencv"

    def convert(self, data: bytes, quality: int) -> bytes:
        import cv2
        import numpy as np

        buffer = np.frombuffer(data, dtype=np.uint8)
        decoded = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        if decoded is None:
            raise ValueError("OpenCV could not decode the payload")

        ok, encoded = cv2.imencode(".jpg", decoded, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
        if not ok:
            raise ValueError("OpenCV could not encode JPEG output")
        return encoded.tobytes()


def default_strategies() -> List[ConversionStrategy]:
    return [HeifDecoderStrategy(), OpenCVDecoderStrategy()]


# ============================================================================
# ENCODING HELPERS
# ============================================================================

def open_image(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def encode_jpeg(image: Image.Image, quality: int) -> bytes:
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    out = io.BytesIO()
    image.save(out, format="JPEG", quality=quality, optimize=True)
    return out.getvalue()


def replace_extension(file_name: str, extension: str = ".jpg") -> str:
    root, _ = os.path.splitext(file_name)
    return f"{root or 'upload'}{extension}"


@dataclass
class NormalizedPayload:
    data: bytes
    mime_type: str
    file_name: str
    original_file_name: str
    converted: bool = False
    compression_applied: bool = False
    quality_used: Optional[int] = None
    strategy: Optional[str] = None
    conversion_failures: List[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.data)

    def describe(self) -> dict:
        return {
            "converted": self.converted,
            "strategy": self.strategy,
            "compressionApplied": self.compression_applied,
            "qualityUsed": self.quality_used,
            "failedStrategies": self.conversion_failures,
        }


class FormatNormalizer:
    def __init__(
        self,
        strategies: Optional[Sequence[ConversionStrategy]] = None,
        max_bytes: Optional[int] = None,
        start_quality: Optional[int] = None,
        quality_step: Optional[int] = None,
        min_quality: Optional[int] = None,
        force_jpeg: Optional[bool] = None,
        encoder: Optional[Callable[[Image.Image, int], bytes]] = None,
    ):
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.max_bytes = max_bytes or settings.MAX_PAYLOAD_BYTES
        self.start_quality = start_quality or settings.COMPRESSION_START_QUALITY
        self.quality_step = quality_step or settings.COMPRESSION_QUALITY_STEP
        self.min_quality = min_quality or settings.COMPRESSION_MIN_QUALITY
        self.force_jpeg = settings.FORCE_JPEG_CONVERSION if force_jpeg is None else force_jpeg
        self._encode = encoder or encode_jpeg

        if self.quality_step <= 0:
            raise ValueError("quality_step must be positive")
        if self.min_quality > self.start_quality:
            raise ValueError("min_quality cannot exceed start_quality")

    def quality_ladder(self) -> List[int]:
        """Qualities tried by the recompression loop, highest first."""
        return list(range(self.start_quality, self.min_quality - 1, -self.quality_step))

    def convert(self, data: bytes) -> Tuple[bytes, str, List[str]]:
        """
        Try each strategy in order; the first success short-circuits.
        Returns (jpeg bytes, winning strategy name, names of strategies that failed).
        """
        failures: List[Tuple[str, BaseException]] = []
        for strategy in self.strategies:
            try:
                converted = strategy.convert(data, self.start_quality)
            except Exception as e:  # third-party decoders raise arbitrary types
                logger.warning(f"Conversion strategy {strategy.name} failed: {e}")
                failures.append((strategy.name, e))
                continue
            logger.info(f"Conversion strategy {strategy.name} succeeded ({len(converted)} bytes)")
            return converted, strategy.name, [name for name, _ in failures]

        raise ConversionFailed(
            "Image conversion failed with every decoder. Please convert the image to JPEG and try again",
            causes=failures,
        )

    def recompress(self, data: bytes) -> Tuple[bytes, int]:
        """Walk the quality ladder until the payload fits under max_bytes."""
        try:
            image = open_image(data)
        except DECODE_ERRORS as e:
            raise ConversionFailed("Payload could not be decoded for compression", causes=[("pillow", e)]) from e

        size_mb = len(data) / (1024 * 1024)
        logger.info(f"Payload too large ({size_mb:.2f}MB), compressing...")

        encoded = data
        quality = self.start_quality
        for quality in self.quality_ladder():
            encoded = self._encode(image, quality)
            logger.debug(f"Trying quality {quality}, size: {len(encoded) / (1024 * 1024):.2f}MB")
            if len(encoded) <= self.max_bytes:
                reduction = (1 - len(encoded) / len(data)) * 100
                logger.info(f"Payload compressed to {len(encoded)} bytes ({reduction:.1f}% reduction, quality: {quality})")
                return encoded, quality

        raise PayloadTooLarge(len(encoded), self.max_bytes, quality)

    def normalize(self, data: bytes, file_name: str, mime_type: Optional[str]) -> NormalizedPayload:
        result = NormalizedPayload(
            data=data,
            mime_type=normalize_mime_type(mime_type, file_name),
            file_name=file_name,
            original_file_name=file_name,
        )

        if needs_conversion(file_name, mime_type):
            logger.info(f"Converting {file_name} ({len(data)} bytes, declared {mime_type or 'empty'})")
            result.data, result.strategy, result.conversion_failures = self.convert(data)
            result.mime_type = JPEG_MIME
            result.converted = True
        elif self.force_jpeg and result.mime_type != JPEG_MIME:
            try:
                result.data = self._encode(open_image(data), self.start_quality)
                result.mime_type = JPEG_MIME
                result.converted = True
                result.strategy = "pillow"
            except DECODE_ERRORS as e:
                logger.warning(f"Forced JPEG conversion failed for {file_name}, keeping original: {e}")

        if result.size > self.max_bytes:
            result.data, result.quality_used = self.recompress(result.data)
            result.mime_type = JPEG_MIME
            result.compression_applied = True

        if result.converted or result.compression_applied:
            result.file_name = replace_extension(file_name)

        logger.info(
            f"Normalization complete: {result.file_name}, {result.size} bytes, {result.mime_type}, "
            f"converted={result.converted}, compressed={result.compression_applied}"
        )
        return result

    def check_video(self, size: int, max_bytes: Optional[int] = None) -> None:
        limit = max_bytes or settings.MAX_VIDEO_BYTES
        if size > limit:
            raise PayloadTooLarge(size, limit)
