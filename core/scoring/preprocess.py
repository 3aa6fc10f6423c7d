# Path: core/scoring/preprocess.py
# Purpose: Decode image bytes and turn them into CLIP pixel tensors or compact JPEG payloads.
# Layer: core/scoring.
# Details: Pillow handles decoding (HEIC through pillow-heif); decoding failures surface as InvalidImage.

from __future__ import annotations

import base64
import io

import numpy as np
import pillow_heif
from PIL import Image, ImageOps, UnidentifiedImageError

from core.embedders.base import IMAGE_SIZE
from core.errors import InvalidImage

pillow_heif.register_heif_opener()

CLIP_MEAN = np.asarray([0.48145466, 0.4578275, 0.40821073], dtype=np.float32)
CLIP_STD = np.asarray([0.26862954, 0.26130258, 0.27577711], dtype=np.float32)


def decode_image(data: bytes) -> Image.Image:
    """Decode raw bytes into an upright RGB image."""

    try:
        with Image.open(io.BytesIO(data)) as opened:
            opened.load()
            image = ImageOps.exif_transpose(opened) or opened
            return image.convert("RGB")
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise InvalidImage(f"Cannot decode image: {exc}") from exc


def preprocess_image(data: bytes) -> np.ndarray:
    """Return a (1, 3, 224, 224) float32 tensor normalized with the OpenAI CLIP statistics."""

    image = decode_image(data).resize((IMAGE_SIZE, IMAGE_SIZE), Image.Resampling.BILINEAR)
    pixels = np.asarray(image, dtype=np.float32) / 255.0
    pixels = (pixels - CLIP_MEAN) / CLIP_STD
    return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)


def encode_jpeg_base64(data: bytes, max_edge: int = 768, quality: int = 60, resize_enabled: bool = True) -> str:
    """Re-encode an image as base64 JPEG, downscaling the long edge to ``max_edge`` when enabled."""

    image = decode_image(data)
    width, height = image.size
    long_edge = max(width, height)
    if resize_enabled and max_edge > 0 and long_edge > max_edge:
        scale = max_edge / long_edge
        size = (max(1, round(width * scale)), max(1, round(height * scale)))
        image = image.resize(size, Image.Resampling.LANCZOS)
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=max(1, min(int(quality), 100)))
    return base64.b64encode(buffer.getvalue()).decode("ascii")
