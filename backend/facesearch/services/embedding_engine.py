import json
import os
import threading
import time
from typing import Dict, List, Optional

import numpy as np
import onnxruntime as ort

from facesearch.core.config import settings
from facesearch.core.errors import ErrorCode, FaceSearchError, Result
from facesearch.core.logging import get_logger
from facesearch.schemas.search_schema import BoundingBox, FaceDetection
from facesearch.utils.image_processing import (
    align_face,
    convert_and_resize,
    decode_image_bytes,
    downscale_for_detection,
    prepare_tensor_for_onnx,
)
from facesearch.utils.validation import validate_image


logger = get_logger(__name__)

MANIFEST_FILE = "manifest.json"
MIN_WEIGHT_BYTES = 100
MAX_WEIGHT_BYTES = 50 * 1024 * 1024

DETECTION_INPUT_SIZE = (640, 640)
DETECTION_THRESHOLD = 0.5
NMS_IOU_THRESHOLD = 0.4

DEFAULT_MODEL_FILES = {
    "detection": "detection/det_500m.onnx",
    "recognition": "recognition/w600k_mbf.onnx",
}


class ModelIntegrityError(ValueError):
    """The model directory failed the manifest or weight-size checks."""


class EmbeddingEngine:
    """
    Process-wide holder of the ONNX sessions used for search.
    Handles SCRFD face detection and ArcFace recognition.

    Initialization is memoized: the first call loads the models, later
    calls return immediately. A failed initialization is remembered and
    every detection call is refused until the process restarts.
    """
    def __init__(self, models_path: Optional[str] = None):
        self.models_path = models_path or settings.MODELS_PATH
        self.sessions = {}
        self.model_paths = {
            name: os.path.join(self.models_path, relative)
            for name, relative in DEFAULT_MODEL_FILES.items()
        }
        self.init_error: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return "detection" in self.sessions and "recognition" in self.sessions

    # --- Integrity checks ---

    def _read_manifest(self) -> Dict[str, str]:
        """
        Parses MODELS_PATH/manifest.json.

        Expected layout:
            {"weightsManifest": [{"name": "detection", "paths": ["detection/det_500m.onnx"]}, ...]}

        Returns the model paths, with manifest entries overriding the defaults.
        """
        manifest_path = os.path.join(self.models_path, MANIFEST_FILE)

        if not os.path.exists(manifest_path):
            raise FileNotFoundError(f"Model manifest not found at {manifest_path}")

        try:
            with open(manifest_path, "r", encoding="utf-8") as f:
                manifest = json.load(f)
        except json.JSONDecodeError as e:
            raise ModelIntegrityError(f"Model manifest is not valid JSON: {e}") from e

        if not isinstance(manifest, dict) or not isinstance(manifest.get("weightsManifest"), list):
            raise ModelIntegrityError("Model manifest has no 'weightsManifest' array")

        paths = dict(self.model_paths)
        for entry in manifest["weightsManifest"]:
            if not isinstance(entry, dict):
                raise ModelIntegrityError("Malformed weightsManifest entry")
            name = entry.get("name")
            files = entry.get("paths") or []
            if name in DEFAULT_MODEL_FILES and files:
                paths[name] = os.path.join(self.models_path, files[0])

        return paths

    def check_model_files(self) -> List[str]:
        """
        Runs the manifest and weight-size checks without loading anything.

        Returns:
            List[str]: Problems found. Empty when the model directory looks sane.
        """
        try:
            paths = self._read_manifest()
        except (FileNotFoundError, ModelIntegrityError) as e:
            return [str(e)]

        problems = []
        for name, path in paths.items():
            if not os.path.exists(path):
                problems.append(f"Model file not found at {path}")
                continue

            size = os.path.getsize(path)
            if not MIN_WEIGHT_BYTES <= size <= MAX_WEIGHT_BYTES:
                problems.append(
                    f"Model '{name}' has implausible size {size} bytes "
                    f"(expected {MIN_WEIGHT_BYTES}..{MAX_WEIGHT_BYTES})"
                )

        return problems

    def validate_models(self) -> bool:
        return not self.check_model_files()

    # --- Lifecycle ---

    def load_models(self):
        """
        Verifies the model directory and creates the ONNX Runtime sessions.
        Optimized for CPU usage using CPUExecutionProvider.

        Raises:
            FileNotFoundError: A manifest or weight file is missing.
            ModelIntegrityError: The manifest or a weight file is malformed.
        """
        providers = ['CPUExecutionProvider']

        self.model_paths = self._read_manifest()

        problems = self.check_model_files()
        if problems:
            raise ModelIntegrityError("; ".join(problems))

        try:
            for name, path in self.model_paths.items():
                self.sessions[name] = ort.InferenceSession(path, providers=providers)
                logger.info(f"Model '{name}' loaded successfully.")

        except Exception as e:
            self.sessions.clear()
            logger.error(f"Error loading ONNX models: {e}", exc_info=True)
            raise e

    def initialize(self) -> None:
        """
        Loads the models once. Safe to call from several executor threads.

        Raises:
            FaceSearchError: FACE_DETECTION_FAILED if this or any earlier
                             initialization failed.
        """
        with self._lock:
            if self.is_initialized:
                return

            if self.init_error is not None:
                raise FaceSearchError(ErrorCode.FACE_DETECTION_FAILED, self.init_error)

            start = time.time()
            try:
                self.load_models()
            except Exception as e:
                self.init_error = str(e)
                logger.critical(f"Embedding engine initialization failed: {e}")
                raise FaceSearchError(ErrorCode.FACE_DETECTION_FAILED, self.init_error) from e

            logger.info(f"Embedding engine ready in {time.time() - start:.2f}s")

    def get_session(self, model_name: str):
        """
        Returns the specific inference session.
        """
        return self.sessions.get(model_name)

    def clear_models(self):
        """
        Clears sessions from memory during shutdown.
        """
        self.sessions.clear()

    # --- Raw model calls ---

    def run_detector(self, image: np.ndarray, threshold: float = DETECTION_THRESHOLD) -> list:
        """
        Executes the SCRFD model to detect faces in a given image.

        Args:
            image (np.ndarray): The BGR image.
            threshold (float): The minimum confidence score to consider a valid face.

        Returns:
            list: A list of dictionaries, each containing 'bbox', 'score', and 'landmarks'
                  for every detected face, in the coordinates of `image`.
        """
        session = self.get_session("detection")

        if not session:
            raise RuntimeError("Detection model session is not initialized.")

        original_height, original_width = image.shape[:2]

        resized_image = convert_and_resize(image, DETECTION_INPUT_SIZE, to_rgb=True)

        # InsightFace SCRFD normalization: (pixel_value - 127.5) / 128.0
        image_normalized = (resized_image.astype(np.float32) - 127.5) / 128.0
        chw_image = np.transpose(image_normalized, (2, 0, 1))
        input_tensor = np.expand_dims(chw_image, axis=0)

        input_name = session.get_inputs()[0].name
        raw_outputs = session.run(None, {input_name: input_tensor})

        return self._decode_scrfd_outputs(
            raw_outputs,
            threshold,
            DETECTION_INPUT_SIZE,
            (original_height, original_width)
        )

    def _decode_scrfd_outputs(self, raw_outputs: list, threshold: float, input_size: tuple, original_size: tuple) -> list:
        # Tensor order of det_500m:
        # [0:3] -> Scores (12800, 3200, 800)
        # [3:6] -> BBoxes (12800x4, 3200x4, 800x4)
        # [6:9] -> KPS / Landmarks (12800x10, 3200x10, 800x10)

        scores_list = raw_outputs[0:3]
        bboxes_list = raw_outputs[3:6]
        kps_list = raw_outputs[6:9]

        total_faces = []
        strides = [8, 16, 32]

        for i, stride in enumerate(strides):
            scores = scores_list[i]
            bboxes = bboxes_list[i] * stride
            kps = kps_list[i] * stride

            height = input_size[0] // stride
            width = input_size[1] // stride

            # Anchors per grid cell (12800 / 6400 = 2)
            num_anchors = scores.shape[0] // (height * width)

            X, Y = np.meshgrid(np.arange(width), np.arange(height))
            anchor_grid = np.stack([X, Y], axis=-1)
            anchor_grid = (anchor_grid * stride).reshape((-1, 2))
            anchor_grid = np.repeat(anchor_grid, num_anchors, axis=0)

            scores_flat = scores.flatten()
            pos_indices = np.where(scores_flat > threshold)[0]

            for idx in pos_indices:
                conf = scores_flat[idx]
                anchor = anchor_grid[idx]

                # Decode Bounding Box (xmin, ymin, xmax, ymax)
                reg_bbox = bboxes.reshape((-1, 4))[idx]
                xmin = anchor[0] - reg_bbox[0]
                ymin = anchor[1] - reg_bbox[1]
                xmax = anchor[0] + reg_bbox[2]
                ymax = anchor[1] + reg_bbox[3]

                # Decode Landmarks (5 points = 10 coordinates)
                reg_kps = kps.reshape((-1, 10))[idx]
                landmarks = [
                    [anchor[0] + reg_kps[k], anchor[1] + reg_kps[k + 1]]
                    for k in range(0, 10, 2)
                ]

                total_faces.append({
                    "bbox": [xmin, ymin, xmax, ymax],
                    "score": float(conf),
                    "landmarks": np.array(landmarks, dtype=np.float32)
                })

        return self._apply_nms(total_faces, iou_threshold=NMS_IOU_THRESHOLD, original_size=original_size, input_size=input_size)

    def _apply_nms(self, faces, iou_threshold, original_size, input_size):

        if not faces:
            return []

        # Stable sort keeps decode order among equal scores
        faces.sort(key=lambda x: x['score'], reverse=True)
        keep = []

        while faces:
            best_face = faces.pop(0)
            keep.append(best_face)
            faces = [f for f in faces if self._compute_iou(best_face['bbox'], f['bbox']) < iou_threshold]

        # Back to the size of the image given to the detector
        h_ratio = original_size[0] / input_size[0]
        w_ratio = original_size[1] / input_size[1]

        for f in keep:
            f['bbox'] = [f['bbox'][0]*w_ratio, f['bbox'][1]*h_ratio, f['bbox'][2]*w_ratio, f['bbox'][3]*h_ratio]
            f['landmarks'][:, 0] *= w_ratio
            f['landmarks'][:, 1] *= h_ratio

        return keep

    def _compute_iou(self, boxA, boxB):

        xA = max(boxA[0], boxB[0]); yA = max(boxA[1], boxB[1])
        xB = min(boxA[2], boxB[2]); yB = min(boxA[3], boxB[3])
        interArea = max(0, xB - xA) * max(0, yB - yA)
        boxAArea = (boxA[2] - boxA[0]) * (boxA[3] - boxA[1])
        boxBArea = (boxB[2] - boxB[0]) * (boxB[3] - boxB[1])

        union = float(boxAArea + boxBArea - interArea)
        if union <= 0:
            return 0.0

        return interArea / union

    def get_face_embedding(self, aligned_face: np.ndarray) -> np.ndarray:
        """
        Extracts the biometric embedding using ArcFace.

        Args:
            aligned_face (np.ndarray): The 112x112 aligned face image.

        Returns:
            np.ndarray: A 1D L2-normalized embedding of shape (EMBEDDING_DIM,).
        """
        session = self.get_session("recognition")

        if not session:
            raise RuntimeError("Recognition model session is not initialized.")

        input_tensor = prepare_tensor_for_onnx(aligned_face, mean=0.5, std=0.5)

        input_name = session.get_inputs()[0].name
        raw_outputs = session.run(None, {input_name: input_tensor})

        # Batch of one: (1, 512) -> (512,)
        embedding = raw_outputs[0].flatten().astype(np.float32)

        # Unit hypersphere, required for cosine similarity
        norm = np.linalg.norm(embedding)
        if norm > 0:
            embedding = embedding / norm

        return embedding

    # --- Face detection API ---

    def detect_faces_array(self, image: np.ndarray) -> List[FaceDetection]:
        """
        Detects every face of a decoded BGR image and computes its embedding.

        The image is downscaled so its longest side is at most 1024 px;
        bounding boxes are reported in the pixel space of `image`.

        Raises:
            FaceSearchError: FACE_DETECTION_FAILED on any model error.
        """
        self.initialize()

        original_height, original_width = image.shape[:2]
        working = downscale_for_detection(image)
        scale_x = original_width / working.shape[1]
        scale_y = original_height / working.shape[0]

        try:
            raw_faces = self.run_detector(working)

            detections = []
            for face in raw_faces:
                aligned = align_face(working, face["landmarks"])
                embedding = self.get_face_embedding(aligned)

                if embedding.shape[0] != settings.EMBEDDING_DIM:
                    raise ValueError(
                        f"Recognition model produced {embedding.shape[0]}-d vectors, "
                        f"expected {settings.EMBEDDING_DIM}"
                    )

                detections.append(FaceDetection(
                    bounding_box=self._to_bounding_box(face["bbox"], scale_x, scale_y, original_width, original_height),
                    embedding=embedding.tolist(),
                    confidence=min(1.0, max(0.0, face["score"])),
                ))

        except Exception as e:
            logger.error(f"Face detection failed: {e}", exc_info=True)
            raise FaceSearchError(ErrorCode.FACE_DETECTION_FAILED, str(e)) from e

        logger.debug(f"{len(detections)} face(s) detected")
        return detections

    @staticmethod
    def _to_bounding_box(bbox, scale_x: float, scale_y: float, max_width: int, max_height: int) -> BoundingBox:
        xmin = min(max(0, int(round(bbox[0] * scale_x))), max_width - 1)
        ymin = min(max(0, int(round(bbox[1] * scale_y))), max_height - 1)
        xmax = min(max_width, int(round(bbox[2] * scale_x)))
        ymax = min(max_height, int(round(bbox[3] * scale_y)))

        return BoundingBox(
            x=xmin,
            y=ymin,
            width=max(1, xmax - xmin),
            height=max(1, ymax - ymin),
        )

    def detect_faces(self, image_bytes: bytes, ip_address: Optional[str] = None) -> Result[List[FaceDetection]]:
        """
        Validates an uploaded image and returns every face found in it.

        Returns:
            Result: The faces, or NO_FACE_DETECTED / FACE_DETECTION_FAILED /
                    an Input Guard error code.
        """
        try:
            validated = validate_image(image_bytes, ip_address=ip_address)
        except FaceSearchError as e:
            return Result.failure(e.code, e.detail)

        return self._faces_in(validated.image)

    def _faces_in(self, image: np.ndarray) -> Result[List[FaceDetection]]:
        try:
            faces = self.detect_faces_array(image)
        except FaceSearchError as e:
            return Result.failure(e.code, e.detail)

        if not faces:
            return Result.failure(ErrorCode.NO_FACE_DETECTED)

        return Result.success(faces)

    def embed_primary_face(self, image: np.ndarray) -> Result[List[float]]:
        """
        Embedding of the most prominent face of an image that has already
        passed validate_image().
        """
        result = self._faces_in(image)
        if not result.ok:
            return result

        return Result.success(select_primary_face(result.value).embedding)

    def generate_embedding(self, image_bytes: bytes, ip_address: Optional[str] = None) -> Result[List[float]]:
        """
        Embedding of the most prominent face of an image.
        """
        try:
            validated = validate_image(image_bytes, ip_address=ip_address)
        except FaceSearchError as e:
            return Result.failure(e.code, e.detail)

        return self.embed_primary_face(validated.image)

    def detect_faces_in_file(self, path: str) -> List[FaceDetection]:
        """
        Face scan of a normalized thumbnail on disk. An empty list means no face.

        Raises:
            FaceSearchError: THUMBNAIL_EXTRACTION_FAILED for unreadable files,
                             FACE_DETECTION_FAILED on model errors.
        """
        with open(path, "rb") as f:
            image = decode_image_bytes(f.read())

        if image is None:
            raise FaceSearchError(ErrorCode.THUMBNAIL_EXTRACTION_FAILED, f"undecodable thumbnail {os.path.basename(path)}")

        return self.detect_faces_array(image)


def select_primary_face(faces: List[FaceDetection]) -> FaceDetection:
    """
    Largest bounding box wins. Equal areas fall back to the higher
    confidence, then to the first face encountered.
    """
    best = faces[0]
    for face in faces[1:]:
        area, best_area = face.bounding_box.area, best.bounding_box.area
        if area > best_area or (area == best_area and face.confidence > best.confidence):
            best = face
    return best


# Global instance for the Singleton pattern
embedding_engine = EmbeddingEngine()
