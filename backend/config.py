"""
Runtime configuration, read from environment variables.
"""
import os


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Storage
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./attendance.db")
STRICT_LEDGER_INVARIANTS = _flag("STRICT_LEDGER_INVARIANTS")

# Matching
MATCH_CONFIDENCE_THRESHOLD = float(os.getenv("MATCH_CONFIDENCE_THRESHOLD", "0.75"))
MATCHER_TIMEOUT_SECONDS = float(os.getenv("MATCHER_TIMEOUT_SECONDS", "15"))
INSIGHTFACE_MODEL = os.getenv("INSIGHTFACE_MODEL", "buffalo_l")
USE_GPU = _flag("USE_GPU", "1")

# Fingerprint normalization
FINGERPRINT_MAX_DIMENSION = int(os.getenv("FINGERPRINT_MAX_DIMENSION", "512"))
FINGERPRINT_JPEG_QUALITY = int(os.getenv("FINGERPRINT_JPEG_QUALITY", "80"))

# Capture workflow
CAPTURE_COOLDOWN_SECONDS = float(os.getenv("CAPTURE_COOLDOWN_SECONDS", "3.0"))
CAMERA_SOURCE = os.getenv("CAMERA_SOURCE", "0")
CAMERA_TYPE = os.getenv("CAMERA_TYPE", "webcam")
CAPTURE_ACTOR = os.getenv("CAPTURE_ACTOR", "camera")

# Logging
LOG_FILE = os.getenv("LOG_FILE", "attendance_service.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
