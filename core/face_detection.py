# core/face_detection.py

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
import onnxruntime as ort
from onnxruntime.capi.onnxruntime_pybind11_state import (Fail, InvalidArgument, InvalidGraph,
                                                        InvalidProtobuf, NoSuchFile,
                                                        RuntimeException)
from PIL import Image

from core.errors import InferenceError
from utils.image_utils import load_rgb_array, resize_maintain_aspect

logger = logging.getLogger(__name__)

# Failures confined to one image or one model run
PER_IMAGE_ERRORS = (OSError, ValueError, RuntimeError, cv2.error, Image.DecompressionBombError,
                    Fail, InvalidArgument, InvalidGraph, InvalidProtobuf, NoSuchFile,
                    RuntimeException)

NUM_ANCHORS = 2
REC_INPUT_SIZE = 112
CROP_MARGIN = 0.15

# Landmark positions (eyes, nose, mouth corners) of the 112x112 ArcFace crop
ARCFACE_TEMPLATE = np.array([
    [38.2946, 51.6963],
    [73.5318, 51.5014],
    [56.0252, 71.7366],
    [41.5493, 92.3655],
    [70.7299, 92.2041],
], dtype=np.float32)


@dataclass
class RawDetection:
    """Detector output in original image pixels"""
    bbox: Tuple[float, float, float, float]  # x1, y1, x2, y2
    score: float
    landmarks: Optional[np.ndarray] = None  # (5, 2)


@dataclass
class DetectedFace:
    """A face ready for storage: normalized box, score and embedding"""
    bbox: Tuple[float, float, float, float]  # x, y, width, height in [0, 1]
    confidence: float
    embedding: np.ndarray


def iou(box_a: Sequence[float], box_b: Sequence[float]) -> float:
    """Intersection over union of two (x1, y1, x2, y2) boxes"""
    x1 = max(box_a[0], box_b[0])
    y1 = max(box_a[1], box_b[1])
    x2 = min(box_a[2], box_b[2])
    y2 = min(box_a[3], box_b[3])

    intersection = max(0.0, x2 - x1) * max(0.0, y2 - y1)
    area_a = (box_a[2] - box_a[0]) * (box_a[3] - box_a[1])
    area_b = (box_b[2] - box_b[0]) * (box_b[3] - box_b[1])
    union = area_a + area_b - intersection
    return intersection / union if union > 0 else 0.0


def nms(detections: List[RawDetection], threshold: float) -> List[RawDetection]:
    """Greedy non-maximum suppression, highest score first"""
    ordered = sorted(detections, key=lambda d: d.score, reverse=True)
    keep = []
    suppressed = set()

    for i, det in enumerate(ordered):
        if i in suppressed:
            continue
        keep.append(det)
        for j in range(i + 1, len(ordered)):
            if j not in suppressed and iou(det.bbox, ordered[j].bbox) > threshold:
                suppressed.add(j)

    return keep


def decode_scrfd_outputs(outputs: Sequence[np.ndarray],
                         input_size: int,
                         scale: float,
                         image_size: Tuple[int, int],
                         strides: Sequence[int] = (8, 16, 32),
                         score_thresholds: Sequence[float] = (0.15, 0.15, 0.15)
                         ) -> List[RawDetection]:
    """
    Decode SCRFD anchor outputs into boxes in original image coordinates.

    Outputs are ordered scores per stride, then box distances per stride,
    then landmark offsets per stride (landmarks may be absent). Rows are
    flattened as (grid y, grid x, anchor).

    Args:
        outputs: Raw model outputs
        input_size: Square detector input side
        scale: Factor the image was resized by before padding
        image_size: (width, height) of the image the boxes refer to
    """
    n = len(strides)
    if len(outputs) < 2 * n:
        raise InferenceError(f"Expected at least {2 * n} detector outputs, got {len(outputs)}")
    if len(score_thresholds) != n:
        raise ValueError("One score threshold per stride is required")

    width, height = image_size
    detections = []

    for i, stride in enumerate(strides):
        scores = np.asarray(outputs[i]).reshape(-1)
        boxes = np.asarray(outputs[i + n]).reshape(-1, 4)
        kps = np.asarray(outputs[i + 2 * n]).reshape(-1, 10) if len(outputs) >= 3 * n else None

        fm_w = input_size // stride
        idx = np.where(scores > score_thresholds[i])[0]
        if len(idx) == 0:
            continue

        cell = idx // NUM_ANCHORS
        anchor_x = ((cell % fm_w) + 0.5) * stride
        anchor_y = ((cell // fm_w) + 0.5) * stride

        dist = boxes[idx] * stride
        x1 = np.clip((anchor_x - dist[:, 0]) / scale, 0, width)
        y1 = np.clip((anchor_y - dist[:, 1]) / scale, 0, height)
        x2 = np.clip((anchor_x + dist[:, 2]) / scale, 0, width)
        y2 = np.clip((anchor_y + dist[:, 3]) / scale, 0, height)

        for k, row in enumerate(idx):
            if x2[k] <= x1[k] or y2[k] <= y1[k]:
                continue
            landmarks = None
            if kps is not None:
                offsets = kps[row].reshape(5, 2) * stride
                landmarks = np.stack([
                    (anchor_x[k] + offsets[:, 0]) / scale,
                    (anchor_y[k] + offsets[:, 1]) / scale,
                ], axis=1).astype(np.float32)
            detections.append(RawDetection(
                bbox=(float(x1[k]), float(y1[k]), float(x2[k]), float(y2[k])),
                score=float(scores[row]),
                landmarks=landmarks,
            ))

    return detections


def preprocess_for_detection(image: np.ndarray, input_size: int) -> Tuple[np.ndarray, float]:
    """Resize into a zero-padded square, normalized NCHW float32 blob"""
    resized, scale = resize_maintain_aspect(image, (input_size, input_size))
    canvas = np.zeros((input_size, input_size, 3), dtype=np.float32)
    canvas[:resized.shape[0], :resized.shape[1]] = resized
    blob = (canvas - 127.5) / 128.0
    return blob.transpose(2, 0, 1)[np.newaxis].astype(np.float32), scale


def align_face(image: np.ndarray, bbox: Sequence[float],
               landmarks: Optional[np.ndarray] = None,
               size: int = REC_INPUT_SIZE) -> np.ndarray:
    """
    Cut a size x size face crop.

    With landmarks the face is warped onto the ArcFace template by a
    similarity transform; otherwise the box is cropped with a margin.
    """
    if landmarks is not None and len(landmarks) == 5:
        matrix, _ = cv2.estimateAffinePartial2D(
            np.asarray(landmarks, dtype=np.float32),
            ARCFACE_TEMPLATE * (size / REC_INPUT_SIZE),
            method=cv2.LMEDS
        )
        if matrix is not None:
            return cv2.warpAffine(image, matrix, (size, size), borderValue=0.0)

    img_h, img_w = image.shape[:2]
    x1, y1, x2, y2 = bbox
    w, h = x2 - x1, y2 - y1
    crop_x = max(0, int(round(x1 - w * CROP_MARGIN)))
    crop_y = max(0, int(round(y1 - h * CROP_MARGIN)))
    crop_x2 = min(img_w, crop_x + max(1, int(round(w * (1 + 2 * CROP_MARGIN)))))
    crop_y2 = min(img_h, crop_y + max(1, int(round(h * (1 + 2 * CROP_MARGIN)))))

    crop = image[crop_y:crop_y2, crop_x:crop_x2]
    if crop.size == 0:
        raise InferenceError(f"Empty face crop for box {tuple(bbox)}")
    return cv2.resize(crop, (size, size), interpolation=cv2.INTER_LINEAR)


def preprocess_for_recognition(face: np.ndarray) -> np.ndarray:
    """RGB face crop to a [-1, 1] NCHW float32 blob"""
    blob = (face.astype(np.float32) - 127.5) / 127.5
    return blob.transpose(2, 0, 1)[np.newaxis]


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = np.linalg.norm(vector)
    if norm == 0:
        raise InferenceError("Embedding has zero norm")
    return vector / norm


class FaceDetector:
    """
    SCRFD face detection plus ArcFace embeddings via ONNX Runtime.

    Sessions are created on first use.
    """

    def __init__(self, models_dir: str = "models",
                 detection_model: str = "det_10g.onnx",
                 recognition_model: str = "w600k_r50.onnx",
                 device: str = "cpu",
                 input_size: int = 640,
                 strides: Sequence[int] = (8, 16, 32),
                 score_thresholds: Sequence[float] = (0.15, 0.15, 0.15),
                 nms_threshold: float = 0.4,
                 max_image_dimension: int = 1600):
        self.models_dir = Path(models_dir)
        self.detection_model = detection_model
        self.recognition_model = recognition_model
        self.device = device
        self.input_size = input_size
        self.strides = tuple(strides)
        self.score_thresholds = tuple(score_thresholds)
        self.nms_threshold = nms_threshold
        self.max_image_dimension = max_image_dimension
        self._detection_session = None
        self._recognition_session = None

    @classmethod
    def from_config(cls, face_config) -> 'FaceDetector':
        return cls(models_dir=face_config.models_dir,
                   detection_model=face_config.detection_model,
                   recognition_model=face_config.recognition_model,
                   device=face_config.device,
                   input_size=face_config.input_size,
                   strides=face_config.strides,
                   score_thresholds=face_config.score_thresholds,
                   nms_threshold=face_config.nms_threshold,
                   max_image_dimension=face_config.max_image_dimension)

    def _ort_providers(self) -> List[str]:
        if self.device == "cuda":
            return ["CUDAExecutionProvider", "CPUExecutionProvider"]
        return ["CPUExecutionProvider"]

    def _create_session(self, model_file: str) -> ort.InferenceSession:
        model_path = self.models_dir / model_file
        if not model_path.is_file():
            raise FileNotFoundError(f"Model not found: {model_path}")
        logger.info("Loading %s on %s...", model_file, self.device)
        return ort.InferenceSession(str(model_path), providers=self._ort_providers())

    @property
    def detection_session(self) -> ort.InferenceSession:
        if self._detection_session is None:
            self._detection_session = self._create_session(self.detection_model)
        return self._detection_session

    @property
    def recognition_session(self) -> ort.InferenceSession:
        if self._recognition_session is None:
            self._recognition_session = self._create_session(self.recognition_model)
        return self._recognition_session

    def load(self):
        """Create both sessions now rather than on the first image"""
        _ = self.detection_session
        _ = self.recognition_session

    def detect_array(self, image: np.ndarray) -> List[RawDetection]:
        """Run detection on an RGB array"""
        blob, scale = preprocess_for_detection(image, self.input_size)
        session = self.detection_session
        outputs = session.run(None, {session.get_inputs()[0].name: blob})
        raw = decode_scrfd_outputs(outputs, self.input_size, scale,
                                   (image.shape[1], image.shape[0]),
                                   self.strides, self.score_thresholds)
        return nms(raw, self.nms_threshold)

    def embed(self, image: np.ndarray, detection: RawDetection) -> np.ndarray:
        """512-d L2-normalized embedding of one detected face"""
        face = align_face(image, detection.bbox, detection.landmarks)
        session = self.recognition_session
        output = session.run(None, {session.get_inputs()[0].name: preprocess_for_recognition(face)})
        return l2_normalize(output[0])

    def detect(self, image_path: str) -> List[DetectedFace]:
        """
        Detect and embed every face in an image file.

        Raises:
            InferenceError: if the image cannot be decoded or a model fails
        """
        try:
            image = load_rgb_array(image_path, self.max_image_dimension)
            height, width = image.shape[:2]
            faces = []
            for det in self.detect_array(image):
                x1, y1, x2, y2 = det.bbox
                faces.append(DetectedFace(
                    bbox=(x1 / width, y1 / height, (x2 - x1) / width, (y2 - y1) / height),
                    confidence=det.score,
                    embedding=self.embed(image, det),
                ))
            return faces
        except InferenceError:
            raise
        except PER_IMAGE_ERRORS as e:
            raise InferenceError(f"Face inference failed for {image_path}: {e}") from e
