"""OCR text extraction for uploaded credential documents.

Wraps Google Cloud Vision ``DOCUMENT_TEXT_DETECTION`` behind a small
:class:`OCREngine` protocol so the document verifier can be exercised
with any engine that returns text plus a confidence value.  Uploaded
bytes are sent for annotation and never persisted.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import structlog
from google.cloud import vision

from src.services.verification.exceptions import OCRError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


@dataclass(slots=True, frozen=True)
class OCRResult:
    """Extracted text and mean page confidence in ``[0, 1]``."""

    text: str
    confidence: float
    processing_time_ms: float = 0.0


@runtime_checkable
class OCREngine(Protocol):
    async def extract_text(self, document: bytes) -> OCRResult: ...


class VisionOCREngine:
    """Async wrapper around the Cloud Vision ``ImageAnnotator`` API.

    Credentials are resolved the standard way (``GOOGLE_APPLICATION_CREDENTIALS``
    or the runtime service account).
    """

    def __init__(self, client: vision.ImageAnnotatorAsyncClient | None = None) -> None:
        self._client = client or vision.ImageAnnotatorAsyncClient()

    async def extract_text(self, document: bytes) -> OCRResult:
        start = time.perf_counter()

        request = vision.AnnotateImageRequest(
            image=vision.Image(content=document),
            features=[vision.Feature(type_=vision.Feature.Type.DOCUMENT_TEXT_DETECTION)],
        )
        response = await self._client.batch_annotate_images(requests=[request])
        if not response.responses:
            raise OCRError("Vision API returned no annotation")

        annotation = response.responses[0]
        if annotation.error.message:
            raise OCRError(annotation.error.message)

        full_text = annotation.full_text_annotation
        pages = list(full_text.pages)
        confidence = sum(p.confidence for p in pages) / len(pages) if pages else 0.0
        elapsed_ms = (time.perf_counter() - start) * 1000

        logger.info(
            "ocr.extracted",
            chars=len(full_text.text),
            pages=len(pages),
            confidence=round(confidence, 3),
            processing_time_ms=round(elapsed_ms, 1),
        )
        return OCRResult(
            text=full_text.text,
            confidence=max(0.0, min(1.0, confidence)),
            processing_time_ms=elapsed_ms,
        )

    async def close(self) -> None:
        """Release underlying gRPC resources."""
        transport = self._client.transport
        if hasattr(transport, "close"):
            await transport.close()  # type: ignore[misc]
