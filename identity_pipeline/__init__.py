"""
Identity Verification Pipeline

This package contains the verification session pipeline:
- Document data extraction through an external vision classifier
- User confirmation of the extracted fields
- Liveness, face-match and document-authenticity scoring
- Threshold-based decision fusion
- Signed attestation tokens and an append-only audit trail
"""

__version__ = "1.0.0"
