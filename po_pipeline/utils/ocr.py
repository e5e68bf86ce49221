"""
Text extraction for email attachments.
Handles PDFs, images and Word documents, with OCR for scanned content.
"""

import asyncio
import os
import re
import shutil
from io import BytesIO
from typing import Optional, List, Tuple

import docx
import pdfplumber
import pytesseract
from PIL import Image

from po_pipeline.config import get_config
from po_pipeline.schemas.results import TextQualityReport
from po_pipeline.utils.confidence import (
    combine_confidence_scores,
    confidence_level_name,
    penalize_confidence,
    word_confidences,
)
from po_pipeline.utils.logging import setup_logging
from po_pipeline.utils.preprocessing import load_image, preprocess_for_ocr, assess_image_quality


logger = setup_logging(__name__)
config = get_config()

# pytesseract needs the external tesseract executable as well
TESSERACT_INSTALLED = shutil.which("tesseract") is not None

PDF_CONTENT_TYPE = "application/pdf"
DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

EXTENSION_CONTENT_TYPES = {
    ".pdf": PDF_CONTENT_TYPE,
    ".docx": DOCX_CONTENT_TYPE,
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".webp": "image/webp",
}

CURRENCY_PATTERN = re.compile(r"[$€£¥₹]|\b(USD|EUR|GBP|JPY|INR|CAD|AUD)\b", re.IGNORECASE)
PO_TEXT_PATTERN = re.compile(
    r"\b(purchase\s+order|p\.?o\.?|order|qty|quantity|unit\s+price|total|amount|vendor|supplier|invoice)\b",
    re.IGNORECASE,
)


class OcrWorker:
    """
    Single shared OCR resource.

    Tesseract is not safe for concurrent use from one handle, so callers
    queue through an asyncio lock and recognition runs in a worker thread.
    """

    def __init__(self, language: Optional[str] = None):
        self.language = language or config.OCR_LANGUAGE
        self._lock = asyncio.Lock()

    @property
    def available(self) -> bool:
        return config.ENABLE_OCR and TESSERACT_INSTALLED

    async def recognize(self, image: Image.Image) -> Tuple[str, float]:
        """
        Run OCR on an image.

        Returns:
            (extracted_text, confidence_score)
        """
        if not self.available:
            logger.warning("OCR unavailable (disabled or tesseract binary not found in PATH); skipping")
            return "", 0.0

        async with self._lock:
            try:
                return await asyncio.to_thread(self._recognize_sync, image)
            except Exception as e:
                logger.error(f"Error running OCR: {e}")
                return "", 0.0

    def _recognize_sync(self, image: Image.Image) -> Tuple[str, float]:
        text = pytesseract.image_to_string(image, lang=self.language)

        data = pytesseract.image_to_data(image, lang=self.language, output_type=pytesseract.Output.DICT)
        confidences = word_confidences(data["conf"])

        if confidences:
            confidence = combine_confidence_scores(confidences, method="mean")
        else:
            confidence = 0.5 if text.strip() else 0.0

        logger.debug(f"OCR extracted {len(text)} characters with confidence {confidence:.2f}")
        return text.strip(), confidence


def resolve_content_type(content_type: Optional[str], filename: Optional[str]) -> str:
    """Normalize a MIME type, falling back to the filename extension for generic types."""
    resolved = (content_type or "").split(";")[0].strip().lower()
    if resolved in ("", "application/octet-stream", "binary/octet-stream"):
        extension = os.path.splitext(filename or "")[1].lower()
        return EXTENSION_CONTENT_TYPES.get(extension, resolved)
    return resolved


def is_supported_attachment(content_type: Optional[str], filename: Optional[str]) -> bool:
    """Whether the text extractor can handle this attachment."""
    resolved = resolve_content_type(content_type, filename)
    return resolved in (PDF_CONTENT_TYPE, DOCX_CONTENT_TYPE) or resolved.startswith("image/")


class TextExtractor:
    """Converts attachment bytes into plain text. Never raises."""

    def __init__(self, ocr_worker: Optional[OcrWorker] = None):
        self.ocr_worker = ocr_worker or OcrWorker()

    async def extract_text(self, data: bytes, content_type: str, filename: str) -> str:
        resolved = resolve_content_type(content_type, filename)
        logger.info(f"Extracting text from {filename} ({resolved or 'unknown type'})")

        try:
            if resolved == PDF_CONTENT_TYPE:
                return await self._extract_from_pdf(data)
            elif resolved.startswith("image/"):
                return await self._extract_from_image(data)
            elif resolved == DOCX_CONTENT_TYPE:
                return await asyncio.to_thread(self._extract_from_docx, data)
            else:
                logger.warning(f"Unsupported content type for {filename}: {content_type}")
                return ""
        except Exception as e:
            logger.error(f"Error extracting text from {filename}: {e}")
            return ""

    async def _extract_from_pdf(self, data: bytes) -> str:
        try:
            pages = await asyncio.to_thread(self._read_pdf_pages, data, self.ocr_worker.available)
        except Exception as e:
            # Mislabelled attachments are often images; a genuinely broken PDF decodes to nothing
            logger.error(f"Error parsing PDF, trying the bytes as an image: {e}")
            return await self._extract_from_image(data)

        text_parts = []
        for page_num, (page_text, page_image) in enumerate(pages, start=1):
            if page_image is not None:
                logger.debug(f"Using OCR for sparse PDF page {page_num}")
                ocr_text, _ = await self.ocr_worker.recognize(preprocess_for_ocr(page_image))
                if len(ocr_text) > len(page_text):
                    page_text = ocr_text
            if page_text:
                text_parts.append(page_text)

        return "\n".join(text_parts).strip()

    @staticmethod
    def _read_pdf_pages(data: bytes, render_sparse: bool) -> List[Tuple[str, Optional[Image.Image]]]:
        """Page texts, with a rendered image for pages too sparse to trust."""
        pages = []
        with pdfplumber.open(BytesIO(data)) as pdf:
            for page in pdf.pages:
                page_text = (page.extract_text() or "").strip()
                page_image = None
                if render_sparse and len(page_text) < config.PDF_MIN_PAGE_TEXT:
                    page_image = page.to_image(resolution=config.OCR_RENDER_RESOLUTION).original
                pages.append((page_text, page_image))
        return pages

    async def _extract_from_image(self, data: bytes) -> str:
        try:
            image = load_image(data)
        except Exception as e:
            logger.error(f"Could not decode image for OCR: {e}")
            return ""

        quality = assess_image_quality(image)
        if quality == "poor":
            logger.warning(f"Low resolution image {image.size}; OCR results may be unreliable")

        text, confidence = await self.ocr_worker.recognize(preprocess_for_ocr(image))
        logger.debug(f"Image OCR confidence {confidence:.2f} ({confidence_level_name(confidence)})")
        return text

    @staticmethod
    def _extract_from_docx(data: bytes) -> str:
        document = docx.Document(BytesIO(data))
        parts = [p.text for p in document.paragraphs if p.text.strip()]
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    parts.append(" | ".join(cells))
        return "\n".join(parts).strip()


def assess_text_quality(text: str) -> TextQualityReport:
    """
    Estimate how usable extracted text is.
    Informs downstream handling; it never blocks extraction.
    """
    stripped = (text or "").strip()
    if not stripped:
        return TextQualityReport(is_valid=False, confidence=0.0, issues=["No text extracted"])

    confidence = 1.0
    issues = []

    if len(stripped) < config.TEXT_MIN_LENGTH:
        issues.append(f"Text too short ({len(stripped)} characters)")
        confidence = penalize_confidence(confidence, 0.5)

    visible = [c for c in stripped if not c.isspace()]
    alpha_ratio = sum(1 for c in visible if c.isalpha()) / len(visible)
    if alpha_ratio < config.TEXT_MIN_ALPHA_RATIO:
        issues.append(f"Low alphabetic character ratio ({alpha_ratio:.2f}); text may be garbled")
        confidence = penalize_confidence(confidence, 0.6)

    if not any(c.isdigit() for c in stripped):
        issues.append("No numeric values found")
        confidence = penalize_confidence(confidence, 0.8)

    if not CURRENCY_PATTERN.search(stripped) and not PO_TEXT_PATTERN.search(stripped):
        issues.append("No currency symbols or purchase-order keywords found")
        confidence = penalize_confidence(confidence, 0.8)

    return TextQualityReport(
        is_valid=confidence >= config.TEXT_VALID_CONFIDENCE,
        confidence=round(confidence, 3),
        issues=issues,
    )
