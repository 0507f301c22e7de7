"""Image capabilities used by the moderation pipeline.

This module holds the two collaborators the pipeline depends on but does not
own: an image codec that turns upload bytes into a Pillow image, and an image
classifier that produces ``(label, confidence)`` pairs. Both are injected into
``ContentModerator`` so that tests can substitute deterministic stubs.

Classifier invocations never raise. ``ClassifierRunner.run`` returns a
``ClassifierResult`` that either carries labels or an error string, and the
caller decides what to do with each case.
"""

from __future__ import annotations
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from io import BytesIO
from threading import BoundedSemaphore
from typing import Any, Iterable, List, Optional, Protocol, Tuple

from PIL import Image, ImageFile, ImageOps

# Safety settings for Pillow
ImageFile.LOAD_TRUNCATED_IMAGES = True
Image.MAX_IMAGE_PIXELS = 64_000_000

# Optional transformers pipeline; the classifier is only built when enabled
try:
    from transformers import pipeline as _hf_pipeline  # optional # type: ignore
except Exception:
    _hf_pipeline = None

logger = logging.getLogger(__name__)


class ImageDecodeError(Exception):
    """Raised when upload bytes cannot be decoded into a raster image."""


@dataclass(frozen=True)
class Label:
    """A single classifier observation."""

    label: str
    confidence: float


@dataclass
class ClassifierResult:
    """Outcome of one classifier invocation.

    Exactly one of ``labels`` (non-empty) or ``error`` is meaningful: a result
    with an error, or with no labels at all, is not ``ok``.
    """

    labels: List[Label] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.labels)

    @classmethod
    def failure(cls, error: str) -> "ClassifierResult":
        return cls(labels=[], error=error)


class ImageClassifier(Protocol):
    def classify(self, image: Image.Image) -> Iterable[Tuple[str, float]]: ...


class ImageCodec(Protocol):
    def decode(self, data: bytes) -> Image.Image: ...


class PillowCodec:
    """Decodes PNG/JPEG/WebP/GIF uploads with Pillow."""

    def __init__(self, max_pixels: Optional[int] = None):
        self.max_pixels = max_pixels or Image.MAX_IMAGE_PIXELS

    def decode(self, data: bytes) -> Image.Image:
        """Decodes upload bytes into an upright, fully loaded image.

        The pixel count is checked from the header before any pixel data is
        decompressed.

        Args:
            data: The encoded image bytes.

        Returns:
            The decoded image (first frame for animations).

        Raises:
            ImageDecodeError: If the bytes are empty, the image has more than
                ``max_pixels`` pixels, or it is not a readable image.
        """
        if not data:
            raise ImageDecodeError("Empty image buffer")
        try:
            img = Image.open(BytesIO(data))
        except Image.DecompressionBombError as e:
            raise ImageDecodeError(f"Image exceeds decompression limits: {e}") from e
        except Exception as e:
            raise ImageDecodeError(f"Image processing error: {e}") from e
        pixels = img.width * img.height
        if pixels > self.max_pixels:
            img.close()
            raise ImageDecodeError(
                f"Image exceeds decompression limits: {pixels} pixels > {self.max_pixels}"
            )
        try:
            if getattr(img, "is_animated", False):
                img.seek(0)
            img.load()
            img = ImageOps.exif_transpose(img)
        except Exception as e:
            raise ImageDecodeError(f"Image processing error: {e}") from e
        if img.width == 0 or img.height == 0:
            raise ImageDecodeError("Image has no pixels")
        return img


def to_rgb(img: Image.Image) -> Image.Image:
    """Converts an image to RGB, compositing any transparency onto black."""
    if img.mode == "RGB":
        return img
    if "A" in img.getbands() or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (0, 0, 0))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")


class TransformersImageClassifier:
    """Wraps a Hugging Face ``image-classification`` pipeline."""

    def __init__(self, model_name: str, top_k: int = 10):
        if _hf_pipeline is None:
            raise RuntimeError("transformers is not installed")
        self.model_name = model_name
        self.top_k = top_k
        self.logger = logging.getLogger(self.__class__.__name__)
        self.logger.info(f"Loading image classifier: {model_name}...")
        self._pipe = _hf_pipeline("image-classification", model=model_name)
        self.logger.info(f"Image classifier loaded: {model_name}")

    def classify(self, image: Image.Image) -> List[Tuple[str, float]]:
        results = self._pipe(to_rgb(image), top_k=self.top_k)
        return [(r.get("label", ""), float(r.get("score", 0.0))) for r in results]


def load_classifier(model_name: str) -> Optional[TransformersImageClassifier]:
    """Builds the transformers classifier, or returns None if it cannot load.

    A missing classifier is a supported configuration: the pipeline falls
    back to the pixel heuristic for every request.
    """
    if _hf_pipeline is None:
        logger.warning(
            "transformers not installed; image classifier disabled; using pixel heuristics only."
        )
        return None
    try:
        return TransformersImageClassifier(model_name)
    except Exception as e:
        logger.error(
            f"Failed to load image classifier {model_name}: {e}. "
            "Proceeding with pixel heuristics only."
        )
        return None


def _coerce_labels(raw: Any) -> List[Label]:
    labels = []
    for item in raw or []:
        if isinstance(item, Label):
            name, score = item.label, item.confidence
        elif isinstance(item, dict):
            name, score = item.get("label", ""), item.get("score", 0.0)
        else:
            name, score = item
        labels.append(Label(str(name), min(1.0, max(0.0, float(score)))))
    return labels


class ClassifierRunner:
    """Runs classifier calls on a fixed pool of worker threads.

    A slot is held from submission until the classifier call actually
    returns, so a call that outlives its timeout keeps its worker busy. When
    every slot is taken the call is refused immediately instead of queueing.
    """

    def __init__(self, max_workers: int = 2):
        self.max_workers = max_workers
        self._slots = BoundedSemaphore(max_workers)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="classifier"
        )

    def _invoke(self, classifier: ImageClassifier, image: Image.Image) -> list:
        try:
            return list(classifier.classify(image) or [])
        finally:
            self._slots.release()

    def run(
        self,
        classifier: Optional[ImageClassifier],
        image: Image.Image,
        timeout: Optional[float] = None,
    ) -> ClassifierResult:
        """Invokes the classifier once with a bounded wait.

        Args:
            classifier: The classifier capability, or None when not configured.
            image: The decoded image.
            timeout: Seconds to wait for the classifier; None waits indefinitely.

        Returns:
            A ClassifierResult. Errors, timeouts, saturated workers and empty
            label sets are reported through ``error``; nothing is raised.
        """
        if classifier is None:
            return ClassifierResult.failure("unavailable")
        if not self._slots.acquire(blocking=False):
            return ClassifierResult.failure("busy: all classifier workers in use")
        try:
            future = self._executor.submit(self._invoke, classifier, image)
        except RuntimeError as e:
            self._slots.release()
            return ClassifierResult.failure(f"{type(e).__name__}: {e}")
        try:
            labels = _coerce_labels(future.result(timeout=timeout))
        except FutureTimeout:
            return ClassifierResult.failure(f"timed out after {timeout}s")
        except Exception as e:
            return ClassifierResult.failure(f"{type(e).__name__}: {e}")
        if not labels:
            return ClassifierResult.failure("no results")
        return ClassifierResult(labels=labels)

    def shutdown(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
