import base64
import json
import logging
from typing import Any, Dict, Optional, Type

import openai
from openai import OpenAI

from config import Settings
from .errors import NEW_DOCUMENT, TRY_AGAIN, VerificationError

logger = logging.getLogger(__name__)

_decoder = json.JSONDecoder()


def encode_image(data: bytes) -> str:
    """Encode JPEG bytes as a base64 data URL"""
    return f"data:image/jpeg;base64,{base64.b64encode(data).decode('utf-8')}"


def safe_json_parse(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Return the first well-formed JSON object embedded in text.

    Classifier output is often wrapped in prose or ```json fences, so every
    opening brace is tried in turn until one decodes to an object.
    """
    if not text:
        return None
    idx = text.find("{")
    while idx != -1:
        try:
            obj, _ = _decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            pass
        else:
            if isinstance(obj, dict):
                return obj
        idx = text.find("{", idx + 1)
    return None


def build_classifier_client(settings: Settings) -> OpenAI:
    """OpenAI-compatible client for the classifier gateway; retries are left to the caller."""
    return OpenAI(
        api_key=settings.CLASSIFIER_API_KEY,
        base_url=settings.CLASSIFIER_ENDPOINT,
        timeout=settings.CLASSIFIER_TIMEOUT_SECONDS,
        max_retries=0,
    )


def classifier_error(exc: Exception, error_cls: Type[VerificationError], stage: str) -> VerificationError:
    """Translate a classifier transport error into a pipeline error"""
    if isinstance(exc, openai.APITimeoutError):
        logger.warning(f"{stage}: classifier timed out")
        return error_cls(f"{stage} timed out", detail=str(exc), retry=TRY_AGAIN)
    if isinstance(exc, openai.APIStatusError):
        logger.error(f"{stage}: classifier returned {exc.status_code}: {exc.message}")
        # 4xx other than rate limiting means the classifier refused the input
        transient = exc.status_code >= 500 or exc.status_code in (408, 429)
        return error_cls(
            f"{stage} failed: {exc.status_code}",
            detail=exc.message,
            retry=TRY_AGAIN if transient else NEW_DOCUMENT,
        )
    logger.error(f"{stage}: classifier call failed: {exc}")
    return error_cls(f"{stage} failed", detail=str(exc), retry=TRY_AGAIN)


def is_number(value: Any) -> bool:
    """True for real numbers; booleans and NaN are rejected"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return value == value
