import logging
import math
import re
from typing import Any, Dict, Optional

import openai
from openai import OpenAI

from config import (
    DOCUMENT_TYPE_ALIASES, EXTRACTED_FIELD_NAMES, EXTRACTION_REQUIRED_KEYS, Settings
)
from .checks import mask_id_number
from .errors import Err, ExtractionFailed, MalformedExtractionResponse, Ok, Result, unwrap
from .models import DocumentType, ExtractedFields, ExtractionRecord
from .utils import (
    build_classifier_client, classifier_error, encode_image, is_number, safe_json_parse
)

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = """
Analyze this identity document and extract the following information:
1. Document type (Aadhaar/Passport/Driver's License/Unknown)
2. Full name
3. ID number
4. Date of birth (format: YYYY-MM-DD)
5. Address
6. Confidence level (0-100) for the extraction
7. If there's a person's photo in the document, describe its approximate location (e.g., "top-right", "left-side")

Return a JSON object with this structure:
{
  "documentType": "string",
  "name": "string",
  "idNumber": "string",
  "dob": "string",
  "address": "string",
  "confidence": number,
  "hasPhoto": boolean,
  "photoLocation": "string"
}

Rules:
- If a field is not visible, return null
- DO NOT guess or hallucinate
"""


def normalize_document_type(value: Any) -> DocumentType:
    """Map a free-form classifier label onto a known document type"""
    if not isinstance(value, str):
        return DocumentType.UNKNOWN
    key = re.sub(r"['’]", "", value).lower()
    key = re.sub(r"[\s_\-]+", " ", key).strip()
    return DocumentType(DOCUMENT_TYPE_ALIASES.get(key, DocumentType.UNKNOWN.value))


def _field_text(value: Any) -> Optional[str]:
    if value is None:
        return ""
    if isinstance(value, bool):
        return None
    if isinstance(value, (str, int)):
        return str(value).strip()
    return None


def parse_extraction(text: Optional[str]) -> Result[ExtractionRecord]:
    """
    Validate the classifier's document-analysis output.

    Returns Ok(ExtractionRecord) or Err(MalformedExtractionResponse); never
    coerces a bad confidence value into range.
    """
    data = safe_json_parse(text)
    if data is None:
        return Err(MalformedExtractionResponse("No JSON object in classifier output"))

    missing = [key for key in EXTRACTION_REQUIRED_KEYS if key not in data]
    if missing:
        return Err(MalformedExtractionResponse(f"Missing keys: {', '.join(missing)}"))

    confidence = data["confidence"]
    if not is_number(confidence):
        return Err(MalformedExtractionResponse(f"Non-numeric confidence: {confidence!r}"))
    if not 0 <= confidence <= 100:
        return Err(MalformedExtractionResponse(f"Confidence out of range: {confidence}"))

    fields: Dict[str, str] = {}
    for name in EXTRACTED_FIELD_NAMES:
        text_value = _field_text(data[name])
        if text_value is None:
            return Err(MalformedExtractionResponse(f"Invalid value for {name}"))
        fields[name] = text_value

    has_photo = data["hasPhoto"]
    if has_photo is None:
        has_photo = False
    if not isinstance(has_photo, bool):
        return Err(MalformedExtractionResponse(f"Invalid hasPhoto: {has_photo!r}"))

    location = data["photoLocation"]
    if location is not None and not isinstance(location, str):
        return Err(MalformedExtractionResponse(f"Invalid photoLocation: {location!r}"))

    return Ok(ExtractionRecord(
        document_type=normalize_document_type(data["documentType"]),
        extracted_fields=ExtractedFields(**fields),
        ocr_confidence=math.floor(confidence),
        has_photo=has_photo,
        photo_location_hint=location if has_photo else None,
    ))


class DocumentExtractor:
    """
    Extracts identity fields from a document image through the external classifier
    """

    def __init__(self, settings: Settings, client: Optional[OpenAI] = None):
        self.client = client or build_classifier_client(settings)
        self.model = settings.EXTRACTION_MODEL
        self.timeout = settings.CLASSIFIER_TIMEOUT_SECONDS

    def extract(self, image: bytes) -> ExtractionRecord:
        """Analyze one document image; raises ExtractionFailed or MalformedExtractionResponse"""
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": EXTRACTION_PROMPT},
                            {"type": "image_url", "image_url": {"url": encode_image(image)}},
                        ],
                    }
                ],
                max_tokens=1000,
                temperature=0.1,
                timeout=self.timeout,
            )
        except openai.OpenAIError as e:
            raise classifier_error(e, ExtractionFailed, "Extraction") from e

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            content = None

        result = parse_extraction(content)
        if isinstance(result, Err):
            logger.warning(f"Unparsable extraction response: {result.error.message}")
            result.error.detail = content
        record = unwrap(result)
        logger.info(
            f"Extracted {record.document_type.value} "
            f"id={mask_id_number(record.extracted_fields.id_number)} "
            f"confidence={record.ocr_confidence}"
        )
        return record
