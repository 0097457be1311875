"""
capture.py - Descriptor Extraction

The descriptor extractor is an external collaborator: it turns a live capture
into a BiometricDescriptor, or returns None when no face is confidently
detected.  Two implementations are provided:

  - simulation : deterministic per-seed vector plus sensor noise
  - webcam     : OpenCV frame + face_recognition encoding (optional extra)
"""

import hashlib
import logging
from typing import Optional

import numpy as np

from client.config import DESCRIPTOR_DIM
from common.codec import validate_descriptor
from common.models import BiometricDescriptor

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────
# CONSTANTS
# ─────────────────────────────────────────────
FACE_SCALE    = 0.09      # per-coordinate spread between different faces
DEFAULT_NOISE = 0.01      # per-coordinate sensor noise between captures


# ─────────────────────────────────────────────
# SIMULATION MODE
# ─────────────────────────────────────────────
def simulate_descriptor(seed_key: str, noise_std: float = DEFAULT_NOISE,
                        dim: int = DESCRIPTOR_DIM) -> BiometricDescriptor:
    """
    Deterministically generate a face descriptor for *seed_key*.

    Two different keys land about 1.4 apart; two captures of the same key
    with the default noise land about 0.15 apart, like a real extractor
    under the 0.5 threshold.
    """
    seed_int = int(hashlib.sha256(seed_key.encode()).hexdigest(), 16) % (2**31)
    base = np.random.default_rng(seed_int).normal(0.0, FACE_SCALE, dim)
    if noise_std > 0:
        base = base + np.random.default_rng().normal(0.0, noise_std, dim)
    return validate_descriptor(base.tolist(), dim)


# ─────────────────────────────────────────────
# WEBCAM CAPTURE (real mode)
# ─────────────────────────────────────────────
def capture_from_webcam(camera_index: int = 0) -> Optional[BiometricDescriptor]:
    """
    Open the webcam, grab one frame and return its 128-D face encoding.
    Returns None if no face is detected.  Needs the ``webcam`` extra.
    """
    import cv2
    import face_recognition

    logger.info("Opening webcam – please look at the camera …")
    cap = cv2.VideoCapture(camera_index)
    if not cap.isOpened():
        logger.error("Cannot open webcam.")
        return None

    ret, frame = cap.read()
    cap.release()
    if not ret:
        logger.error("Failed to read frame from webcam.")
        return None

    rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
    face_locations = face_recognition.face_locations(rgb_frame)
    if len(face_locations) != 1:
        logger.warning(f"Expected exactly one face, found {len(face_locations)}.")
        return None

    encodings = face_recognition.face_encodings(rgb_frame, face_locations)
    if not encodings:
        return None

    logger.info("Face encoding extracted successfully.")
    return validate_descriptor(encodings[0].tolist(), DESCRIPTOR_DIM)


# ─────────────────────────────────────────────
# PUBLIC API
# ─────────────────────────────────────────────
def capture_descriptor(seed_key: str, use_simulation: bool = True) -> Optional[BiometricDescriptor]:
    """
    Main entry point.

    Parameters
    ----------
    seed_key      : identifies the simulated face (ignored for the webcam)
    use_simulation: if True, skip the webcam and use the simulated extractor
    """
    if use_simulation:
        logger.info(f"Mode: SIMULATION (face seed '{seed_key}')")
        return simulate_descriptor(seed_key)
    logger.info("Mode: WEBCAM")
    return capture_from_webcam()
