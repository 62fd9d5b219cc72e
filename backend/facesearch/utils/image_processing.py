from typing import Optional, Tuple

import cv2
import numpy as np

from facesearch.core.logging import get_logger


logger = get_logger(__name__)

# Detection input is capped at this side length before the SCRFD resize
MAX_DETECTION_SIDE = 1024

# Normalized thumbnail box and JPEG quality
THUMBNAIL_MAX_SIZE = (640, 480)
JPEG_QUALITY = 85


def decode_image_bytes(image_bytes: bytes) -> Optional[np.ndarray]:
    """
    Decodes a raw JPEG/PNG/WebP buffer into an OpenCV BGR image.

    Args:
        image_bytes (bytes): The encoded image as received from the client or a site.

    Returns:
        Optional[np.ndarray]: The decoded image in BGR format, or None if decoding fails.
    """
    if not image_bytes:
        return None

    np_arr = np.frombuffer(image_bytes, np.uint8)

    # cv2 returns None for undecodable data instead of raising
    image = cv2.imdecode(np_arr, cv2.IMREAD_COLOR)

    if image is None:
        logger.warning("Failed to decode image buffer")

    return image


def fit_within(image: np.ndarray, max_width: int, max_height: int) -> np.ndarray:
    """
    Downscales an image so it fits inside (max_width, max_height), preserving
    the aspect ratio. Smaller images are returned untouched (never enlarged).
    """
    height, width = image.shape[:2]
    scale = min(max_width / width, max_height / height, 1.0)

    if scale >= 1.0:
        return image

    new_size = (max(1, int(round(width * scale))), max(1, int(round(height * scale))))
    return cv2.resize(image, new_size, interpolation=cv2.INTER_AREA)


def downscale_for_detection(image: np.ndarray, max_side: int = MAX_DETECTION_SIDE) -> np.ndarray:
    """Ensures max(width, height) <= max_side."""
    return fit_within(image, max_side, max_side)


def encode_jpeg(image: np.ndarray, quality: int = JPEG_QUALITY) -> bytes:
    """
    Encodes a BGR image as baseline JPEG. Re-encoding from pixels drops
    every metadata segment of the source file (EXIF, ICC, comments).
    """
    ok, buffer = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buffer.tobytes()


def normalize_thumbnail(image_bytes: bytes) -> bytes:
    """
    Decodes a downloaded thumbnail, fits it into 640x480 and re-encodes it
    as JPEG q85.

    Raises:
        ValueError: If the payload is not a decodable image.
    """
    image = decode_image_bytes(image_bytes)
    if image is None:
        raise ValueError("Thumbnail is not a decodable image")

    return encode_jpeg(fit_within(image, *THUMBNAIL_MAX_SIZE))


def normalize_user_image(image: np.ndarray) -> bytes:
    """
    Session copy of an already decoded upload: longest side capped at
    1024 px, re-encoded as JPEG q85 without metadata.

    Raises:
        ValueError: If JPEG encoding fails.
    """
    return encode_jpeg(downscale_for_detection(image))


def convert_and_resize(
    image: np.ndarray,
    target_size: Tuple[int, int],
    to_rgb: bool = True
) -> np.ndarray:
    """
    Resizes the image and optionally converts the color space from BGR to RGB.

    Args:
        image (np.ndarray): The input OpenCV image (BGR).
        target_size (Tuple[int, int]): The desired (width, height) output size.
        to_rgb (bool): If True, converts the image to RGB color space.

    Returns:
        np.ndarray: The processed image matrix.
    """
    w, h = target_size[0], target_size[1]
    resized_image = cv2.resize(image, (w, h), interpolation=cv2.INTER_AREA)

    if to_rgb:
        return cv2.cvtColor(resized_image, cv2.COLOR_BGR2RGB)

    return resized_image


def prepare_tensor_for_onnx(
    image: np.ndarray,
    mean: float = 0.5,
    std: float = 0.5
) -> np.ndarray:
    """
    Normalizes the image and transposes dimensions for ONNX Runtime inference.

    Args:
        image (np.ndarray): The RGB image array of shape (Height, Width, Channels).
        mean (float): The mean value for normalization.
        std (float): The standard deviation for normalization.

    Returns:
        np.ndarray: A 4D tensor of shape (1, Channels, Height, Width) ready for inference.
    """
    # [0, 255] -> [0.0, 1.0] -> centered
    normalized_img = image.astype(np.float32) / 255.0
    normalized_img = (normalized_img - mean) / std

    # HWC -> CHW, then add the batch dimension (NCHW)
    chw_image = np.transpose(normalized_img, (2, 0, 1))
    return np.expand_dims(chw_image, axis=0)


# Standard reference facial landmarks for ArcFace 112x112 input.
# Left eye, right eye, nose, left mouth corner, right mouth corner.
ARCFACE_REFERENCE_LANDMARKS = np.array([

    [38.2946, 51.6963],
    [73.5318, 51.5014],
    [56.0252, 71.7366],
    [41.5493, 92.3655],
    [70.7299, 92.2041]

], dtype=np.float32)


def align_face(
    image: np.ndarray,
    landmarks: np.ndarray,
    output_size: Tuple[int, int] = (112, 112)
) -> np.ndarray:
    """
    Aligns and crops a face using an affine transformation based on 5 landmarks.

    Args:
        image (np.ndarray): The full BGR image.
        landmarks (np.ndarray): A 5x2 array with the (x, y) coordinates of the detected landmarks.
        output_size (Tuple[int, int]): The ArcFace input size.

    Returns:
        np.ndarray: The aligned face of shape (output_size[1], output_size[0], 3).

    Raises:
        ValueError: When no transform can be estimated from the landmarks.
    """
    transformation_matrix, _ = cv2.estimateAffinePartial2D(
        np.asarray(landmarks, dtype=np.float32),
        ARCFACE_REFERENCE_LANDMARKS,
        method=cv2.LMEDS
    )

    if transformation_matrix is None:
        raise ValueError("Could not estimate alignment transform from landmarks")

    # Pixels pulled in from outside the image are filled with black
    return cv2.warpAffine(
        image,
        transformation_matrix,
        output_size,
        borderValue=(0, 0, 0),
        flags=cv2.INTER_CUBIC
    )
