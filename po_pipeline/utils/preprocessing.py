"""
Image preprocessing utilities.
"""

from io import BytesIO
from PIL import Image, ImageOps

from po_pipeline.config import get_config


config = get_config()


def load_image(data: bytes) -> Image.Image:
    """Decode an image from raw attachment bytes."""
    image = Image.open(BytesIO(data))
    image.load()
    return image


def preprocess_for_ocr(image: Image.Image) -> Image.Image:
    """
    Prepare an image for OCR.
    Applies EXIF orientation, grayscale conversion, autocontrast and
    upscaling of narrow scans.
    """
    image = ImageOps.exif_transpose(image)

    if config.PREPROCESS_GRAYSCALE:
        image = image.convert("L")
    elif image.mode not in ("RGB", "L"):
        image = image.convert("RGB")

    if config.PREPROCESS_AUTOCONTRAST:
        image = ImageOps.autocontrast(image)

    width, height = image.size
    if 0 < width < config.PREPROCESS_MIN_WIDTH:
        scale = config.PREPROCESS_MIN_WIDTH / width
        image = image.resize((config.PREPROCESS_MIN_WIDTH, max(1, int(height * scale))), Image.LANCZOS)

    return image


def assess_image_quality(image: Image.Image) -> str:
    """
    Quick assessment of image quality for OCR.

    Returns: "good", "acceptable", or "poor"
    """
    width, height = image.size

    # Very small images are problematic
    if width < 400 or height < 300:
        return "poor"

    if width > 2000 and height > 1500:
        return "good"

    return "acceptable"
