"""This module provides the core functionality for the Design Guard service.

It includes the `ContentModerator` class, which screens a design upload (its
title, description and image) before the design may be published. The module
also defines the request, per-stage check and verdict data structures, the
default configuration, and a metrics tracker.

The pipeline runs in a fixed order and stops at the first decisive result:

1. Text screening (keyword denylist, then profanity density)
2. Image classification, falling back to a skin-tone pixel heuristic
3. Structural pattern checks (dimensions, aspect ratio)
"""

from __future__ import annotations
import json
import os
import logging
from dataclasses import dataclass, asdict, field
from collections import Counter, deque
from threading import Lock
from time import monotonic
from typing import List, Dict, Any, Deque, Optional, Union

import numpy as np
from PIL import Image

from prometheus_client import Counter as PromCounter

from .vision import (
    ClassifierResult,
    ClassifierRunner,
    ImageClassifier,
    ImageCodec,
    ImageDecodeError,
    PillowCodec,
    to_rgb,
)

# Prometheus metrics (opt-in via env in app.py)
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "0") == "1"
if PROMETHEUS_ENABLED:
    design_moderations_total = PromCounter(
        "design_moderations_total", "Total uploads moderated"
    )
    design_verdicts_total = PromCounter(
        "design_verdicts_total", "Total verdicts issued", ["action", "stage"]
    )
    design_classifier_failures_total = PromCounter(
        "design_classifier_failures_total",
        "Classifier invocations that fell back to pixel heuristics",
        ["reason"],
    )

APPROVED = "APPROVED"
REJECTED = "REJECTED"
NEEDS_REVIEW = "NEEDS_REVIEW"

TEXT_REJECT_PREFIX = "Inappropriate text content detected"
IMAGE_REJECT_REASON = (
    "Inappropriate image content detected. "
    "Please ensure your design is appropriate for all audiences."
)
VIOLENCE_REVIEW_REASON = (
    "Image may contain violent content and will be reviewed by our team."
)
UNDECODABLE_REVIEW_REASON = (
    "Image could not be analyzed and will be reviewed by our team."
)
PATTERN_REJECT_REASON = (
    "Image contains patterns that violate our community guidelines."
)
REVIEW_NOTICE = "Your design will be reviewed by our team before being published."

# --- Default Configuration ---
DEFAULT_CONFIG: Dict[str, Any] = {
    "keyword_denylist": [
        "explicit",
        "adult",
        "nsfw",
        "porn",
        "sexual",
        "nude",
        "naked",
        "violence",
        "gore",
        "blood",
        "weapon",
        "drugs",
        "illegal",
    ],
    "profanity_terms": ["fuck", "shit", "bitch", "ass", "damn", "hell"],
    "profanity_threshold": 2,
    "explicit_labels": ["adult", "explicit", "nsfw"],
    "violence_labels": ["violence", "weapon", "blood"],
    "nudity_labels": ["nude", "naked", "body"],
    "keyword_confidence": 0.8,
    "profanity_confidence": 0.7,
    "skin_tone_threshold": 0.7,
    "skin_tone_confidence": 0.6,
    "heuristic_clean_confidence": 0.5,
    "skin_sample_stride": 1,
    "min_dimension": 100,
    "min_aspect_ratio": 0.33,
    "max_aspect_ratio": 3.0,
    "classifier_model_name": "Falconsai/nsfw_image_detection",
    "classifier_timeout": 10.0,
    "classifier_workers": 2,
    "rate_limit_max": 30,
    "rate_limit_window": 60,
}

REQUIRED_KEYS = [k for k in DEFAULT_CONFIG if not k.startswith("rate_limit")]
LIST_KEYS = [
    "keyword_denylist",
    "profanity_terms",
    "explicit_labels",
    "violence_labels",
    "nudity_labels",
]
NUMERIC_KEYS = [
    "profanity_threshold",
    "keyword_confidence",
    "profanity_confidence",
    "skin_tone_threshold",
    "skin_tone_confidence",
    "heuristic_clean_confidence",
    "skin_sample_stride",
    "min_dimension",
    "min_aspect_ratio",
    "max_aspect_ratio",
    "classifier_workers",
]


@dataclass
class ModerationRequest:
    """A single upload attempt awaiting moderation.

    Attributes:
        title: The design title. Must not be blank.
        description: Optional free text shown under the design.
        image: Encoded image bytes, or an already decoded Pillow image.
    """

    title: str
    image: Union[bytes, Image.Image]
    description: Optional[str] = None

    def __post_init__(self):
        if not self.title or not self.title.strip():
            raise ValueError("A design title is required.")
        if self.image is None:
            raise ValueError("An image is required.")

    @property
    def text(self) -> str:
        """Title and description joined the way they are screened."""
        return f"{self.title} {self.description or ''}".lower()


@dataclass
class ContentCheck:
    """The signals produced by one pipeline stage."""

    has_explicit_content: bool = False
    has_violence: bool = False
    has_nudity: bool = False
    confidence: float = 1.0
    reason: Optional[str] = None
    source: str = "text"
    analyzed: bool = True

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    @property
    def flagged(self) -> bool:
        return self.has_explicit_content or self.has_violence or self.has_nudity


@dataclass
class ModerationVerdict:
    """Represents the outcome of moderating an upload.

    Attributes:
        action: One of "APPROVED", "REJECTED" or "NEEDS_REVIEW".
        reason: Why the upload was rejected or queued; None when approved.
        signals: The checks and stage that led to the verdict.
    """

    action: str
    reason: Optional[str] = None
    signals: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def approved(cls, **signals) -> "ModerationVerdict":
        return cls(APPROVED, None, signals)

    @classmethod
    def rejected(cls, reason: str, **signals) -> "ModerationVerdict":
        return cls(REJECTED, reason, signals)

    @classmethod
    def needs_review(cls, reason: str, **signals) -> "ModerationVerdict":
        return cls(NEEDS_REVIEW, reason, signals)

    @property
    def is_approved(self) -> bool:
        return self.action == APPROVED

    @property
    def is_rejected(self) -> bool:
        return self.action == REJECTED

    @property
    def is_pending_review(self) -> bool:
        return self.action == NEEDS_REVIEW

    def publication_flags(self) -> Optional[Dict[str, bool]]:
        """Returns the flags the design record is persisted with.

        A rejected upload must not be persisted, so None is returned for it.
        Designs pending review stay out of public feed queries until a
        moderator approves them.
        """
        if self.is_rejected:
            return None
        return {"is_approved": self.is_approved, "needs_review": self.is_pending_review}

    def user_message(self) -> Optional[str]:
        """Returns the text shown to the uploader, if any."""
        if self.is_pending_review:
            return f"{self.reason}\n\n{REVIEW_NOTICE}"
        return self.reason

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["publication_flags"] = self.publication_flags()
        data["message"] = self.user_message()
        return data

    def to_json(self) -> str:
        """Serializes the verdict to a JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))


@dataclass
class Metrics:
    """A class to track verdicts issued by a moderator."""

    total_requests: int = 0
    approvals: int = 0
    rejections: int = 0
    reviews: int = 0
    classifier_failures: int = 0
    reasons: Counter = field(default_factory=Counter)
    stages: Counter = field(default_factory=Counter)
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record(self, verdict: ModerationVerdict):
        """Records a verdict, updating the metrics."""
        stage = verdict.signals.get("stage", "unknown")
        with self.lock:
            self.total_requests += 1
            if verdict.is_approved:
                self.approvals += 1
            elif verdict.is_rejected:
                self.rejections += 1
            else:
                self.reviews += 1
            if verdict.reason:
                self.reasons[verdict.reason] += 1
            self.stages[stage] += 1
        if PROMETHEUS_ENABLED:
            design_moderations_total.inc()
            design_verdicts_total.labels(action=verdict.action, stage=stage).inc()

    def record_classifier_failure(self, error: str):
        with self.lock:
            self.classifier_failures += 1
        if PROMETHEUS_ENABLED:
            reason = "timeout" if error.startswith("timed out") else error.split(":")[0]
            design_classifier_failures_total.labels(reason=reason).inc()

    def summary(self) -> Dict:
        """Returns a summary of the metrics as a dictionary."""
        with self.lock:
            return {
                "total": self.total_requests,
                "approved": self.approvals,
                "rejected": self.rejections,
                "needs_review": self.reviews,
                "rejection_rate": self.rejections / max(1, self.total_requests),
                "classifier_failures": self.classifier_failures,
                "top_reasons": dict(self.reasons.most_common(5)),
                "stages": dict(self.stages),
            }


class RateLimiter:
    """A thread-safe sliding-window limiter keyed by client id."""

    def __init__(self, max_requests: int, window: float, max_clients: int = 10000):
        """Initializes the RateLimiter.

        Args:
            max_requests: The maximum number of uploads allowed in the window.
            window: The time window in seconds.
            max_clients: Tracked clients above which idle ones are evicted.
        """
        self.max_requests = max_requests
        self.window = window
        self.max_clients = max_clients
        self.requests: Dict[str, Deque[float]] = {}
        self.lock = Lock()

    def check(self, client_id: str) -> bool:
        """Records a request and reports whether it is within the limit."""
        now = monotonic()
        with self.lock:
            stamps = self.requests.setdefault(client_id, deque())
            while stamps and now - stamps[0] >= self.window:
                stamps.popleft()
            if len(stamps) >= self.max_requests:
                return False
            stamps.append(now)
            if len(self.requests) > self.max_clients:
                self._evict_idle(now)
            return True

    def _evict_idle(self, now: float):
        idle = [
            cid
            for cid, stamps in self.requests.items()
            if not stamps or now - stamps[-1] > self.window * 2
        ]
        for cid in idle:
            del self.requests[cid]


class ContentModerator:
    """Screens design uploads and issues a moderation verdict."""

    def __init__(
        self,
        config: Optional[Dict] = None,
        classifier: Optional[ImageClassifier] = None,
        codec: Optional[ImageCodec] = None,
    ):
        """Initializes the ContentModerator instance.

        Args:
            config: Moderation lists and thresholds; defaults to DEFAULT_CONFIG.
            classifier: Optional image label classifier. Without one, every
                image goes through the skin-tone heuristic.
            codec: Decoder for encoded uploads; defaults to PillowCodec.
        """
        config = DEFAULT_CONFIG if config is None else config
        self._validate_config(config)
        self.config = config
        self.classifier = classifier
        self.codec = codec or PillowCodec()
        self.runner = ClassifierRunner(int(config["classifier_workers"]))
        self.metrics = Metrics()
        self.logger = logging.getLogger(self.__class__.__name__)
        self.keywords: List[str] = [k.lower() for k in config["keyword_denylist"]]
        self.profanity: List[str] = [p.lower() for p in config["profanity_terms"]]
        self.categories: Dict[str, List[str]] = {
            "has_explicit_content": [t.lower() for t in config["explicit_labels"]],
            "has_violence": [t.lower() for t in config["violence_labels"]],
            "has_nudity": [t.lower() for t in config["nudity_labels"]],
        }

    def _validate_config(self, config: Dict):
        """Validates the configuration dictionary."""
        missing = [k for k in REQUIRED_KEYS if k not in config]
        if missing:
            raise ValueError(f"Config missing keys: {missing}")
        for key in LIST_KEYS:
            value = config[key]
            if not isinstance(value, list) or not all(
                isinstance(term, str) and term for term in value
            ):
                raise ValueError(f"Config value {key} must be a list of non-empty strings")
        for key in NUMERIC_KEYS:
            value = config[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"Config value {key} must be a number")
        if int(config["classifier_workers"]) < 1:
            raise ValueError("Config value classifier_workers must be >= 1")
        for key in (
            "keyword_confidence",
            "profanity_confidence",
            "skin_tone_threshold",
            "skin_tone_confidence",
            "heuristic_clean_confidence",
        ):
            if not 0.0 <= float(config[key]) <= 1.0:
                raise ValueError(f"Config value {key} must be within [0, 1]")
        if int(config["skin_sample_stride"]) < 1:
            raise ValueError("Config value skin_sample_stride must be >= 1")
        if int(config["profanity_threshold"]) < 0:
            raise ValueError("Config value profanity_threshold must be >= 0")
        if not 0 < config["min_aspect_ratio"] <= config["max_aspect_ratio"]:
            raise ValueError(
                "Config values must satisfy 0 < min_aspect_ratio <= max_aspect_ratio"
            )
        timeout = config["classifier_timeout"]
        if timeout is not None and (
            isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
        ):
            raise ValueError("Config value classifier_timeout must be positive or None")

    def check_text(self, title: str, description: Optional[str] = None) -> ContentCheck:
        """Screens a title and description for denylisted words and profanity.

        Matching is by substring, so a word that merely contains a denylisted
        term (for example "hello" and "hell") counts as a hit.

        Args:
            title: The design title.
            description: The optional design description.

        Returns:
            A ContentCheck; ``has_explicit_content`` is set on a keyword hit or
            when more than ``profanity_threshold`` words contain profanity.
        """
        text = f"{title} {description or ''}".lower()
        for keyword in self.keywords:
            if keyword in text:
                return ContentCheck(
                    has_explicit_content=True,
                    confidence=self.config["keyword_confidence"],
                    reason=f"Contains keyword: {keyword}",
                )
        profane = self._count_profanity(text)
        if profane > self.config["profanity_threshold"]:
            return ContentCheck(
                has_explicit_content=True,
                confidence=self.config["profanity_confidence"],
                reason="Contains excessive profanity",
            )
        return ContentCheck(confidence=1.0)

    def _count_profanity(self, text: str) -> int:
        return sum(
            1 for word in text.split() if any(p in word for p in self.profanity)
        )

    def interpret_labels(self, result: ClassifierResult) -> ContentCheck:
        """Maps classifier labels onto the moderation categories.

        Each label is lowercased and tested by substring against the explicit,
        violence and nudity label sets. The check's confidence is the highest
        confidence among labels that matched any category, or 0.0.
        """
        flags = {name: False for name in self.categories}
        confidence = 0.0
        matched = []
        for obs in result.labels:
            label = obs.label.lower()
            for name, terms in self.categories.items():
                if any(term in label for term in terms):
                    flags[name] = True
                    confidence = max(confidence, obs.confidence)
                    matched.append(obs.label)
        return ContentCheck(
            confidence=confidence,
            reason=f"Matched labels: {', '.join(sorted(set(matched)))}" if matched else None,
            source="classifier",
            **flags,
        )

    def skin_tone_ratio(self, img: Image.Image) -> float:
        """Returns the fraction of pixels whose colour falls in the skin range.

        A pixel counts when r > 95, g > 40, b > 20, max - min > 15, red is the
        dominant channel and 40 < g < 200. With ``skin_sample_stride`` above 1
        only every n-th row and column is inspected.
        """
        stride = int(self.config["skin_sample_stride"])
        pixels = np.asarray(to_rgb(img), dtype=np.int16)[::stride, ::stride]
        if pixels.size == 0:
            return 0.0
        r, g, b = pixels[..., 0], pixels[..., 1], pixels[..., 2]
        spread = pixels.max(axis=-1) - pixels.min(axis=-1)
        skin = (
            (r > 95)
            & (g > 40)
            & (b > 20)
            & (spread > 15)
            & (r > g)
            & (r > b)
            & (g < 200)
        )
        return float(np.count_nonzero(skin)) / float(skin.size)

    def check_skin_tone(self, img: Image.Image) -> ContentCheck:
        """Estimates nudity from the skin-tone pixel ratio."""
        ratio = self.skin_tone_ratio(img)
        if ratio > self.config["skin_tone_threshold"]:
            return ContentCheck(
                has_nudity=True,
                confidence=self.config["skin_tone_confidence"],
                reason="High skin tone percentage detected",
                source="skin_tone",
            )
        return ContentCheck(
            confidence=self.config["heuristic_clean_confidence"], source="skin_tone"
        )

    def has_suspicious_pattern(self, img: Image.Image) -> bool:
        """Checks for images that are too small or have an extreme aspect ratio."""
        width, height = img.size
        min_dim = self.config["min_dimension"]
        if width < min_dim or height < min_dim:
            return True
        aspect_ratio = width / height
        return not (
            self.config["min_aspect_ratio"] <= aspect_ratio <= self.config["max_aspect_ratio"]
        )

    def _decode(self, image: Union[bytes, Image.Image]) -> Optional[Image.Image]:
        if isinstance(image, Image.Image):
            return image
        try:
            return self.codec.decode(bytes(image))
        except ImageDecodeError as e:
            self.logger.warning(f"Image decoding failed: {e}")
            return None

    def check_image(self, img: Image.Image) -> ContentCheck:
        """Classifies an image, falling back to the skin-tone heuristic.

        The classifier is consulted first. When it is not configured, raises,
        times out or produces no labels, the failure is logged and the skin
        tone heuristic decides instead.
        """
        result = self.runner.run(self.classifier, img, self.config["classifier_timeout"])
        if result.ok:
            return self.interpret_labels(result)
        if self.classifier is None:
            self.logger.debug("No image classifier configured; using skin-tone heuristic")
        else:
            self.logger.warning(
                f"Image classification failed ({result.error}); using skin-tone heuristic"
            )
            self.metrics.record_classifier_failure(result.error)
        return self.check_skin_tone(img)

    def _aggregate(self, request: ModerationRequest) -> ModerationVerdict:
        text_check = self.check_text(request.title, request.description)
        if text_check.has_explicit_content:
            return ModerationVerdict.rejected(
                f"{TEXT_REJECT_PREFIX}: {text_check.reason or 'Contains explicit language'}",
                stage="text",
                text=asdict(text_check),
            )

        img = self._decode(request.image)
        if img is None:
            image_check = ContentCheck(
                confidence=0.0,
                reason="Unable to analyze image",
                source="undecodable",
                analyzed=False,
            )
            return ModerationVerdict.needs_review(
                UNDECODABLE_REVIEW_REASON, stage="decode", image=asdict(image_check)
            )

        image_check = self.check_image(img)
        signals = {"text": asdict(text_check), "image": asdict(image_check)}
        if image_check.has_explicit_content or image_check.has_nudity:
            return ModerationVerdict.rejected(IMAGE_REJECT_REASON, stage="image", **signals)
        if image_check.has_violence:
            return ModerationVerdict.needs_review(
                VIOLENCE_REVIEW_REASON, stage="image", **signals
            )

        signals["size"] = list(img.size)
        if self.has_suspicious_pattern(img):
            return ModerationVerdict.rejected(PATTERN_REJECT_REASON, stage="pattern", **signals)
        return ModerationVerdict.approved(stage="complete", **signals)

    def moderate(self, request: ModerationRequest) -> ModerationVerdict:
        """Moderates a design upload.

        Args:
            request: The upload attempt to screen.

        Returns:
            A ModerationVerdict. Only an approved or pending-review verdict may
            be persisted; see ``ModerationVerdict.publication_flags``.
        """
        verdict = self._aggregate(request)
        self.metrics.record(verdict)
        self.logger.info(
            f"Moderation verdict {verdict.action} at stage {verdict.signals.get('stage')}"
        )
        return verdict

    def close(self):
        """Releases the classifier worker pool."""
        self.runner.shutdown()
