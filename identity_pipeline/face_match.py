import json
import math
import logging
from typing import Any, Optional

import openai
from openai import OpenAI

from config import Settings
from .errors import Err, Ok, Result, VerificationAdapterFailed, unwrap
from .models import VerificationScores
from .utils import build_classifier_client, classifier_error, encode_image, is_number

logger = logging.getLogger(__name__)

SCORE_KEYS = ["livenessScore", "faceMatchScore", "documentValidation"]

VERIFY_TOOL = {
    "type": "function",
    "function": {
        "name": "verify_identity",
        "description": "Return verification scores for liveness detection and face matching",
        "parameters": {
            "type": "object",
            "properties": {
                "livenessScore": {
                    "type": "number",
                    "minimum": 0,
                    "maximum": 100,
                    "description": "Liveness score from 0-100",
                },
                "faceMatchScore": {
                    "type": "number",
                    "minimum": 0,
                    "maximum": 100,
                    "description": "Face match score from 0-100",
                },
                "documentValidation": {
                    "type": "number",
                    "minimum": 0,
                    "maximum": 100,
                    "description": "Document validation score from 0-100",
                },
                "notes": {
                    "type": "string",
                    "description": "Brief explanation of the verification",
                },
            },
            "required": ["livenessScore", "faceMatchScore", "documentValidation", "notes"],
        },
    },
}

VERIFY_PROMPT = """
You are a facial biometric verification system. Determine whether two photos show the SAME PERSON.

IMAGE 1: Identity document containing a person's photo
IMAGE 2: Live selfie photo of a person

1. LIVENESS SCORE (0-100) - Is IMAGE 2 a real, live person?
   - 0-30: blurred, out of focus, too dark, overexposed, motion blur
   - 0-40: photo of a photo, screen display, printed image, mask, 3D model
   - 70-100: clear, sharp image of a real person with natural skin texture

2. FACE MATCH SCORE (0-100) - Are these the SAME person?
   Compare core biometric features: eye shape and spacing, nose bridge and length,
   mouth and philtrum, jawline and chin, face proportions, bone structure.
   Ignore facial hair, glasses, makeup, hair style, moderate aging, angle,
   lighting and expression.
   - 0-45: core facial structure does NOT match
   - 46-69: uncertain, significant differences in core features
   - 70-100: core facial structure matches

3. DOCUMENT VALIDATION SCORE (0-100) - Does IMAGE 1 look like a genuine government ID?
   Check for tampering or manipulation; be lenient with wear on older IDs.
   - 0-40: obviously fake or manipulated
   - 70-100: appears authentic

If the two faces look like DIFFERENT PEOPLE, face match MUST be low (0-45).
"""


def _tool_arguments(response: Any) -> Any:
    try:
        tool_calls = response.choices[0].message.tool_calls
    except (AttributeError, IndexError, TypeError):
        return None
    if not tool_calls:
        return None
    call = tool_calls[0]
    if call.function.name != VERIFY_TOOL["function"]["name"]:
        return None
    return call.function.arguments


def parse_verification(arguments: Any) -> Result[VerificationScores]:
    """
    Validate the verify_identity tool arguments.

    All three scores must be present, numeric and within 0-100; a score of
    zero is a real score, not a missing one.
    """
    if arguments is None:
        return Err(VerificationAdapterFailed("No verification data returned"))
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError:
            return Err(VerificationAdapterFailed("Unparsable verification arguments"))
    if not isinstance(arguments, dict):
        return Err(VerificationAdapterFailed("Verification arguments are not an object"))

    scores = {}
    for key in SCORE_KEYS:
        value = arguments.get(key)
        if not is_number(value):
            return Err(VerificationAdapterFailed(f"Missing or non-numeric {key}"))
        if not 0 <= value <= 100:
            return Err(VerificationAdapterFailed(f"{key} out of range: {value}"))
        # Floored so a fractional score never lands on a passing threshold
        scores[key] = math.floor(value)

    notes = arguments.get("notes")
    return Ok(VerificationScores(
        liveness_score=scores["livenessScore"],
        face_match_score=scores["faceMatchScore"],
        document_validation=scores["documentValidation"],
        notes=notes if isinstance(notes, str) else "",
    ))


class IdentityVerifier:
    """
    Scores liveness, face match and document authenticity through the external classifier
    """

    def __init__(self, settings: Settings, client: Optional[OpenAI] = None):
        self.client = client or build_classifier_client(settings)
        self.model = settings.VERIFICATION_MODEL
        self.timeout = settings.CLASSIFIER_TIMEOUT_SECONDS

    def verify(self, document_image: bytes, live_image: bytes) -> VerificationScores:
        """Raises VerificationAdapterFailed on any transport, timeout or schema problem"""
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": VERIFY_PROMPT},
                            {"type": "image_url", "image_url": {"url": encode_image(document_image)}},
                            {"type": "image_url", "image_url": {"url": encode_image(live_image)}},
                        ],
                    }
                ],
                tools=[VERIFY_TOOL],
                tool_choice={"type": "function", "function": {"name": "verify_identity"}},
                temperature=0.1,
                timeout=self.timeout,
            )
        except openai.OpenAIError as e:
            raise classifier_error(e, VerificationAdapterFailed, "Verification") from e

        result = parse_verification(_tool_arguments(response))
        if isinstance(result, Err):
            logger.warning(f"Unusable verification response: {result.error.message}")
        scores = unwrap(result)
        logger.info(
            f"Scores liveness={scores.liveness_score} face_match={scores.face_match_score} "
            f"document={scores.document_validation}"
        )
        return scores
