"""
Content fingerprints for photos.

An image is normalized (longest side capped, re-encoded as JPEG at a fixed
quality) and the normalized bytes are hashed with SHA-256. Two uploads
collide only if they are identical after normalization; this is an exact
duplicate check, not a perceptual similarity measure.
"""
import hashlib

import cv2
import numpy as np

from config import FINGERPRINT_JPEG_QUALITY, FINGERPRINT_MAX_DIMENSION
from errors import DecodeError


def decode_image(image_bytes: bytes) -> np.ndarray:
    """Decode encoded image bytes into a BGR array."""
    if not image_bytes:
        raise DecodeError("Empty image")

    nparr = np.frombuffer(image_bytes, np.uint8)
    img = cv2.imdecode(nparr, cv2.IMREAD_COLOR)

    if img is None:
        raise DecodeError("Invalid image format")
    return img


def normalize(image_bytes: bytes,
              max_dimension: int = FINGERPRINT_MAX_DIMENSION,
              quality: int = FINGERPRINT_JPEG_QUALITY) -> bytes:
    """
    Bring an image to its canonical encoding.

    Args:
        image_bytes: Encoded image (JPEG, PNG, ...)
        max_dimension: Longest side after resizing; smaller images are not upscaled
        quality: JPEG quality used for re-encoding

    Returns:
        Canonical JPEG bytes
    """
    img = decode_image(image_bytes)

    height, width = img.shape[:2]
    longest = max(height, width)
    if longest > max_dimension:
        scale = max_dimension / longest
        new_width = max(1, round(width * scale))
        new_height = max(1, round(height * scale))
        img = cv2.resize(img, (new_width, new_height), interpolation=cv2.INTER_AREA)

    success, buffer = cv2.imencode('.jpg', img, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not success:
        raise DecodeError("Failed to re-encode image")
    return buffer.tobytes()


def digest(normalized_bytes: bytes) -> str:
    return hashlib.sha256(normalized_bytes).hexdigest()


def fingerprint(image_bytes: bytes) -> str:
    """Fixed-length hex digest of the normalized image."""
    return digest(normalize(image_bytes))
