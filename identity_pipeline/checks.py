import re
from datetime import datetime
from typing import Optional

from config import DOB_FORMAT
from .errors import VerificationError
from .models import ExtractedFields


class InvalidFields(VerificationError):
    """Confirmed fields failed validation; the session stays in Extracted."""
    kind = "InvalidFields"


def normalize_text(text: Optional[str]) -> str:
    """Trim and collapse whitespace, keeping the first line only"""
    if not text:
        return ""
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    return re.sub(r"\s+", " ", first_line).strip()


def normalize_address(text: Optional[str]) -> str:
    """Addresses legitimately span lines; join them with commas"""
    if not text:
        return ""
    lines = [re.sub(r"\s+", " ", line).strip() for line in text.splitlines()]
    return ", ".join(line for line in lines if line)


def normalize_fields(fields: ExtractedFields) -> ExtractedFields:
    return ExtractedFields(
        name=normalize_text(fields.name),
        id_number=normalize_text(fields.id_number),
        dob=normalize_text(fields.dob),
        address=normalize_address(fields.address),
    )


def validate_fields(fields: ExtractedFields) -> ExtractedFields:
    """Normalize user-confirmed fields and check their formats"""
    fields = normalize_fields(fields)
    if not fields.name:
        raise InvalidFields("Name is required")
    if not fields.id_number:
        raise InvalidFields("ID number is required")
    if fields.dob:
        try:
            datetime.strptime(fields.dob, DOB_FORMAT)
        except ValueError:
            raise InvalidFields("Date of birth must be YYYY-MM-DD")
    return fields


def mask_id_number(id_number: Optional[str]) -> Optional[str]:
    """Show only the last 4 characters of an identity number"""
    if not id_number:
        return id_number
    clean = re.sub(r"[\s-]", "", id_number)
    if len(clean) <= 4:
        return "X" * len(clean)
    return "X" * (len(clean) - 4) + clean[-4:]


def mask_name(name: Optional[str]) -> Optional[str]:
    """Show only the first initial and last name"""
    if not name:
        return name
    parts = name.strip().split()
    if len(parts) == 1:
        return f"{parts[0][0]}XXXX"
    return f"{parts[0][0]}XXXX {parts[-1]}"


def mask_fields(fields: ExtractedFields) -> dict:
    masked = fields.model_dump(by_alias=True)
    masked["name"] = mask_name(fields.name)
    masked["idNumber"] = mask_id_number(fields.id_number)
    return masked
