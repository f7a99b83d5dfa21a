from typing import Optional, Tuple

import cv2
import numpy as np

from config import Settings
from .errors import InvalidUpload
from .models import CaptureQuality


class ImageQualityGate:
    """
    Evaluates the quality of a live capture.
    The assessment is advisory and never feeds the verification decision.
    """

    def __init__(self, settings: Settings):
        self.min_width = settings.MIN_IMAGE_WIDTH
        self.min_height = settings.MIN_IMAGE_HEIGHT
        self.blur_threshold = settings.BLUR_THRESHOLD
        self.min_brightness = settings.MIN_BRIGHTNESS
        self.max_brightness = settings.MAX_BRIGHTNESS
        self.min_contrast = settings.MIN_CONTRAST
        self.quality_threshold_proceed = settings.QUALITY_THRESHOLD_PROCEED
        self.quality_threshold_caution = settings.QUALITY_THRESHOLD_CAUTION

    def load_image(self, data: bytes) -> np.ndarray:
        """Decode image bytes; raises InvalidUpload if OpenCV cannot read them"""
        buffer = np.frombuffer(data, dtype=np.uint8)
        img = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
        if img is None:
            raise InvalidUpload("Image could not be loaded")
        return img

    def check_resolution(self, img: np.ndarray, gray: np.ndarray) -> Tuple[bool, Optional[str]]:
        h, w = img.shape[:2]
        if w < self.min_width or h < self.min_height:
            return False, f"Low resolution ({w}x{h})"
        return True, None

    def check_blur(self, img: np.ndarray, gray: np.ndarray) -> Tuple[bool, Optional[str]]:
        """Laplacian variance"""
        score = cv2.Laplacian(gray, cv2.CV_64F).var()
        if score < self.blur_threshold:
            return False, f"Blur detected (score={score:.1f})"
        return True, None

    def check_brightness(self, img: np.ndarray, gray: np.ndarray) -> Tuple[bool, Optional[str]]:
        mean = gray.mean()
        if mean < self.min_brightness:
            return False, f"Too dark (mean={mean:.1f})"
        if mean > self.max_brightness:
            return False, f"Too bright (mean={mean:.1f})"
        return True, None

    def check_contrast(self, img: np.ndarray, gray: np.ndarray) -> Tuple[bool, Optional[str]]:
        std = gray.std()
        if std < self.min_contrast:
            return False, f"Low contrast (std={std:.1f})"
        return True, None

    def evaluate(self, data: bytes) -> CaptureQuality:
        img = self.load_image(data)
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)

        checks = [
            self.check_resolution,
            self.check_blur,
            self.check_brightness,
            self.check_contrast,
        ]

        passed = 0
        failures = []
        for check in checks:
            ok, msg = check(img, gray)
            if ok:
                passed += 1
            else:
                failures.append(msg)

        risk_score = passed / len(checks)

        if risk_score >= self.quality_threshold_proceed:
            quality, action = "good", "proceed"
        elif risk_score >= self.quality_threshold_caution:
            quality, action = "risky", "proceed_with_caution"
        else:
            quality, action = "bad", "recapture"

        return CaptureQuality(
            quality=quality,
            risk_score=round(risk_score, 2),
            signals=failures,
            recommended_action=action,
        )
