"""
Face comparison service using InsightFace.
Implements the VisualMatcherService contract; supports GPU with CPU fallback.
"""
import asyncio
import hashlib
import logging
from typing import Dict, List, Optional, Sequence

import numpy as np
import cv2
from insightface.app import FaceAnalysis

from domain import Candidate
from matcher import VisualMatcherService

logger = logging.getLogger(__name__)


def select_providers(use_gpu: bool) -> List[str]:
    """Pick onnxruntime execution providers, preferring GPU when asked."""
    if not use_gpu:
        logger.info("Using CPU (GPU disabled)")
        return ['CPUExecutionProvider']

    try:
        import onnxruntime as ort
        available_providers = ort.get_available_providers()
    except Exception as e:
        logger.warning("Error checking GPU: %s, falling back to CPU", e)
        return ['CPUExecutionProvider']

    if 'CUDAExecutionProvider' in available_providers:
        logger.info("GPU (CUDA) available, using GPU acceleration")
        return ['CUDAExecutionProvider', 'CPUExecutionProvider']
    if 'CoreMLExecutionProvider' in available_providers:
        logger.info("CoreML available, using Apple GPU acceleration")
        return ['CoreMLExecutionProvider', 'CPUExecutionProvider']
    logger.warning("GPU not available, using CPU")
    return ['CPUExecutionProvider']


class InsightFaceMatcherService(VisualMatcherService):
    """
    Compares the single face in a query image against candidate reference
    photos with InsightFace embeddings and cosine similarity.
    """

    def __init__(self, model_name: str = "buffalo_l", det_size: tuple = (640, 640),
                 use_gpu: bool = True, min_face_size: int = 30):
        """
        Args:
            model_name: InsightFace model name (buffalo_l, buffalo_sc, etc.)
            det_size: Detection size for face detector
            use_gpu: Try to use GPU, fallback to CPU if unavailable
            min_face_size: Faces smaller than this (pixels) are ignored
        """
        logger.info("Loading InsightFace model: %s...", model_name)
        self.providers = select_providers(use_gpu)
        self.app = FaceAnalysis(name=model_name, providers=self.providers)
        self.app.prepare(ctx_id=0, det_size=det_size)
        self.model_name = model_name
        self.min_face_size = min_face_size
        # Reference embeddings keyed by sha256 of the reference photo
        self._reference_cache: Dict[str, Optional[np.ndarray]] = {}
        logger.info("Model %s loaded with providers: %s", model_name, self.providers)

    def get_provider_info(self) -> Dict:
        """Get information about active execution providers."""
        return {
            "model": self.model_name,
            "providers": self.providers,
            "using_gpu": any(p in ['CUDAExecutionProvider', 'CoreMLExecutionProvider'] for p in self.providers)
        }

    def detect_embeddings(self, image: np.ndarray) -> List[np.ndarray]:
        """Embeddings of every face at least ``min_face_size`` wide and tall."""
        embeddings = []
        for face in self.app.get(image):
            x1, y1, x2, y2 = face.bbox.astype(int)
            if (x2 - x1) < self.min_face_size or (y2 - y1) < self.min_face_size:
                continue
            embeddings.append(face.embedding)
        return embeddings

    @staticmethod
    def compare_embeddings(emb1: np.ndarray, emb2: np.ndarray) -> float:
        """Cosine similarity of two embeddings."""
        emb1_norm = emb1 / np.linalg.norm(emb1)
        emb2_norm = emb2 / np.linalg.norm(emb2)
        return float(np.dot(emb1_norm, emb2_norm))

    def _reference_embedding(self, reference_image: bytes) -> Optional[np.ndarray]:
        key = hashlib.sha256(reference_image).hexdigest()
        if key not in self._reference_cache:
            img = cv2.imdecode(np.frombuffer(reference_image, np.uint8), cv2.IMREAD_COLOR)
            faces = self.detect_embeddings(img) if img is not None else []
            # A reference photo must show exactly one face to be usable
            self._reference_cache[key] = faces[0] if len(faces) == 1 else None
        return self._reference_cache[key]

    def compare_sync(self, query_image: bytes, candidates: Sequence[Candidate]) -> dict:
        img = cv2.imdecode(np.frombuffer(query_image, np.uint8), cv2.IMREAD_COLOR)
        if img is None:
            raise ValueError("Query image could not be decoded")

        faces = self.detect_embeddings(img)
        if not faces:
            return {"status": "NO_FACE"}
        if len(faces) > 1:
            return {"status": "MULTIPLE_FACES"}

        embedding = faces[0]
        best_id = None
        best_score = -1.0
        for candidate in candidates:
            reference = self._reference_embedding(candidate.reference_image)
            if reference is None:
                continue
            score = self.compare_embeddings(embedding, reference)
            if score > best_score:
                best_score = score
                best_id = candidate.identity_id

        if best_id is None:
            return {"status": "NO_MATCH", "confidence": 0.0}

        confidence = min(max(best_score, 0.0), 1.0)
        return {"status": "MATCH", "identity_id": best_id, "confidence": confidence}

    async def compare(self, query_image: bytes, candidates: Sequence[Candidate]) -> dict:
        return await asyncio.to_thread(self.compare_sync, query_image, list(candidates))
