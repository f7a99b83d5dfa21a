import io
import os
from typing import Optional

import pillow_heif
from PIL import Image, UnidentifiedImageError
from pdf2image import convert_from_bytes
from pdf2image.exceptions import PDFPageCountError, PDFSyntaxError

from config import SUPPORTED_UPLOAD_EXTS
from .errors import InvalidUpload

pillow_heif.register_heif_opener()

PDF_EXT = ".pdf"


class UploadTooLarge(InvalidUpload):
    pass


class UnsupportedUploadType(InvalidUpload):
    pass


def _to_jpeg(img: Image.Image) -> bytes:
    buffer = io.BytesIO()
    img.convert("RGB").save(buffer, "JPEG", quality=95)
    return buffer.getvalue()


def convert_to_jpeg(data: bytes, filename: Optional[str], max_bytes: int) -> bytes:
    """
    Converts an uploaded image / HEIC / PDF into JPEG bytes.
    PDFs contribute their first page only; identity documents are single-page.
    """
    if not data:
        raise InvalidUpload("Empty upload")
    if len(data) > max_bytes:
        raise UploadTooLarge(f"Upload exceeds {max_bytes} bytes")

    ext = os.path.splitext(filename or "")[1].lower()
    if ext not in SUPPORTED_UPLOAD_EXTS:
        raise UnsupportedUploadType(f"Unsupported file type: {ext or 'none'}")

    # -------- PDF: first page --------
    if ext == PDF_EXT:
        try:
            pages = convert_from_bytes(data, dpi=300, first_page=1, last_page=1)
        except (PDFPageCountError, PDFSyntaxError) as e:
            raise InvalidUpload("Unreadable PDF", detail=str(e))
        if not pages:
            raise InvalidUpload("PDF has no pages")
        return _to_jpeg(pages[0])

    # -------- Normal image or HEIC --------
    try:
        with Image.open(io.BytesIO(data)) as img:
            return _to_jpeg(img)
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidUpload("Unreadable image", detail=str(e))
