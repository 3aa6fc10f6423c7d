# Path: core/embedders/clip_embedder.py
# Purpose: Provide the CLIP embedder backed by an ONNX Runtime session and a HuggingFace tokenizer.
# Layer: core/embedders.
# Details: One instance wraps exactly one InferenceSession bound to one execution provider.

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import onnxruntime as ort
from tokenizers import Tokenizer

from .base import IMAGE_SIZE, Embedder

logger = logging.getLogger(__name__)

CONTEXT_LENGTH = 77
PAD_TOKEN = "<|endoftext|>"

IMAGE_OUTPUT_NAMES = ("image_embeds", "image_embeddings", "image_features", "vision_embeds")
TEXT_OUTPUT_NAMES = ("text_embeds", "text_embeddings", "text_features")


def load_tokenizer(path: Path) -> Tuple[Tokenizer, int]:
    """Load a tokenizer.json and return it with the id used for padding."""

    tokenizer = Tokenizer.from_file(str(path))
    pad_id = tokenizer.token_to_id(PAD_TOKEN)
    if pad_id is None:
        raise ValueError(f"Tokenizer {path} has no {PAD_TOKEN} token.")
    return tokenizer, int(pad_id)


def encode_fixed(tokenizer: Tokenizer, text: str, pad_id: int) -> Tuple[List[int], List[int]]:
    """Tokenize to exactly CONTEXT_LENGTH ids, truncating or padding with ``pad_id``."""

    encoding = tokenizer.encode(text)
    ids = list(encoding.ids)[:CONTEXT_LENGTH]
    mask = list(encoding.attention_mask)[: len(ids)]
    while len(mask) < len(ids):
        mask.append(1)
    padding = CONTEXT_LENGTH - len(ids)
    return ids + [pad_id] * padding, mask + [0] * padding


def resolve_input_names(names: Sequence[str]) -> Tuple[str, str, str]:
    """Return the (input_ids, attention_mask, pixel_values) input names of a CLIP graph."""

    input_ids: Optional[str] = None
    mask: Optional[str] = None
    pixel: Optional[str] = None
    for name in names:
        lower = name.lower()
        if input_ids is None and ("input_ids" in lower or lower == "input"):
            input_ids = name
        elif mask is None and "attention_mask" in lower:
            mask = name
        elif pixel is None and "pixel" in lower:
            pixel = name
    if input_ids is None or mask is None or pixel is None:
        raise ValueError(f"Model inputs do not look like a CLIP graph: {', '.join(names)}")
    return input_ids, mask, pixel


def pick_output_name(names: Sequence[str], priorities: Sequence[str]) -> str:
    """Return the first output matching a priority name exactly or as a substring."""

    for wanted in priorities:
        for name in names:
            if wanted in name.lower():
                return name
    raise ValueError(f"Required output not found. Available outputs: {', '.join(names)}")


class ClipOnnxEmbedder(Embedder):
    """CLIP dual encoder running both towers through a single combined ONNX graph."""

    def __init__(self, session: ort.InferenceSession, tokenizer: Tokenizer, pad_id: int, provider: str) -> None:
        self.name = "clip"
        self.provider = provider
        self._session = session
        self._tokenizer = tokenizer
        self._pad_id = pad_id

        self._ids_name, self._mask_name, self._pixel_name = resolve_input_names(
            [node.name for node in session.get_inputs()]
        )
        output_names = [node.name for node in session.get_outputs()]
        self._image_output = pick_output_name(output_names, IMAGE_OUTPUT_NAMES)
        self._text_output = pick_output_name(output_names, TEXT_OUTPUT_NAMES)

        dummy_ids, dummy_mask = encode_fixed(tokenizer, "", pad_id)
        self._dummy_ids = np.asarray([dummy_ids], dtype=np.int64)
        self._dummy_mask = np.asarray([dummy_mask], dtype=np.int64)

    @classmethod
    def load(
        cls,
        model_path: Path,
        tokenizer_path: Path,
        provider: str,
        intra_threads: int = 1,
    ) -> "ClipOnnxEmbedder":
        """Build a session pinned to a single execution provider."""

        options = ort.SessionOptions()
        options.intra_op_num_threads = max(1, int(intra_threads))
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        session = ort.InferenceSession(str(model_path), sess_options=options, providers=[provider])
        active = session.get_providers()
        if provider not in active:
            # onnxruntime silently substitutes CPU for a provider it cannot load.
            raise RuntimeError(f"{provider} was not activated (active providers: {', '.join(active)})")
        tokenizer, pad_id = load_tokenizer(tokenizer_path)
        logger.debug("Built %s session for %s", provider, model_path.name)
        return cls(session, tokenizer, pad_id, provider)

    @property
    def output_names(self) -> Tuple[str, str]:
        return self._image_output, self._text_output

    def embed_images(self, pixel_values: np.ndarray) -> np.ndarray:
        """Run the vision tower; the text inputs receive the tokenized empty string."""

        pixels = np.ascontiguousarray(pixel_values, dtype=np.float32)
        batch = pixels.shape[0]
        feed = {
            self._ids_name: np.repeat(self._dummy_ids, batch, axis=0),
            self._mask_name: np.repeat(self._dummy_mask, batch, axis=0),
            self._pixel_name: pixels,
        }
        (embeddings,) = self._session.run([self._image_output], feed)
        return np.asarray(embeddings, dtype=np.float32).reshape(batch, -1)

    def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        """Run the text tower; pixel values are zeros sized to the text batch."""

        if not texts:
            raise ValueError("At least one text is required.")
        encoded = [encode_fixed(self._tokenizer, text, self._pad_id) for text in texts]
        feed = {
            self._ids_name: np.asarray([ids for ids, _ in encoded], dtype=np.int64),
            self._mask_name: np.asarray([mask for _, mask in encoded], dtype=np.int64),
            self._pixel_name: np.zeros((len(texts), 3, IMAGE_SIZE, IMAGE_SIZE), dtype=np.float32),
        }
        (embeddings,) = self._session.run([self._text_output], feed)
        return np.asarray(embeddings, dtype=np.float32).reshape(len(texts), -1)
