"""This module contains the FastAPI application for the Design Guard service.

It exposes the moderation pipeline to the upload flow of every client: a
multipart endpoint that moderates a full upload, a text-only screening
endpoint, health, version and statistics endpoints. Startup builds the
ContentModerator from environment configuration.
"""
from __future__ import annotations
import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

from fastapi import FastAPI, HTTPException, File, Form, UploadFile, Depends, Request
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel
from prometheus_client import make_asgi_app

from .guard import ContentModerator, DEFAULT_CONFIG, ModerationRequest, RateLimiter
from .vision import load_classifier

__version__ = "1.0.0"

PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "0") == "1"
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", "10000000"))
ALLOWED_IMAGE_CT = {"image/png", "image/jpeg", "image/webp", "image/gif"}

logger = logging.getLogger("design_guard.app")


def load_config(path: Optional[str] = None) -> dict:
    """Returns DEFAULT_CONFIG merged with overrides from a JSON file.

    Args:
        path: Path to a JSON object of overrides; MODERATION_CONFIG_PATH is
            used when omitted.

    Raises:
        ValueError: If the file does not contain a JSON object.
    """
    conf = dict(DEFAULT_CONFIG)
    path = path or os.getenv("MODERATION_CONFIG_PATH")
    if not path:
        return conf
    if not os.path.exists(path):
        logger.warning(f"Moderation config {path} not found; using defaults")
        return conf
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Moderation config {path} must be a JSON object")
    unknown = sorted(set(data) - set(DEFAULT_CONFIG))
    if unknown:
        logger.warning(f"Ignoring unknown moderation config keys: {unknown}")
    conf.update({k: v for k, v in data.items() if k in DEFAULT_CONFIG})
    return conf


def build_moderator() -> ContentModerator:
    """Builds the moderator from environment configuration."""
    conf = load_config()
    model_name = os.getenv("CLASSIFIER_MODEL") or conf["classifier_model_name"]
    conf["classifier_model_name"] = model_name
    classifier = None
    if os.getenv("ENABLE_IMAGE_CLASSIFIER", "0") == "1":
        classifier = load_classifier(model_name)
    else:
        logger.info("Image classifier disabled; falling back to pixel heuristics.")
    return ContentModerator(conf, classifier=classifier)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initializes the ContentModerator instance at application startup."""
    app.state.moderator = build_moderator()
    app.state.limiter = RateLimiter(
        app.state.moderator.config["rate_limit_max"],
        app.state.moderator.config["rate_limit_window"],
    )
    yield
    app.state.moderator.close()


app = FastAPI(title="Design Guard API", lifespan=lifespan)
app.state.max_upload_size = MAX_UPLOAD_BYTES

if PROMETHEUS_ENABLED:
    app.mount("/metrics", make_asgi_app())


def check_rate_limit(request: Request):
    """Checks if the client has exceeded the rate limit.

    Args:
        request: The incoming request.

    Raises:
        HTTPException: If the rate limit is exceeded.
    """
    trust_proxy = os.getenv("TRUST_XFF", "0") == "1"
    client_id = request.client.host if request.client else "unknown"
    if trust_proxy:
        fwd = request.headers.get("x-forwarded-for")
        if fwd:
            client_id = fwd.split(",")[0].strip()
    if not app.state.limiter.check(client_id):
        raise HTTPException(status_code=429, detail="Rate limit exceeded")


@app.get("/health")
def health():
    """Returns the health status of the service."""
    return {"status": "ok"}


@app.get("/version")
def version():
    """Returns the service version and the image classifier in use."""
    moderator = app.state.moderator
    return {
        "version": __version__,
        "classifier_model": moderator.config["classifier_model_name"],
        "classifier_enabled": moderator.classifier is not None,
    }


@app.get("/stats")
def stats():
    """Returns verdict counts since startup."""
    return app.state.moderator.metrics.summary()


class TextScreenRequest(BaseModel):
    """The request model for the /screen_text endpoint."""

    title: str
    description: Optional[str] = None


@app.post("/screen_text", dependencies=[Depends(check_rate_limit)])
def screen_text(req: TextScreenRequest):
    """Screens a title and description without an image."""
    check = app.state.moderator.check_text(req.title, req.description)
    return asdict(check)


@app.post("/moderate", dependencies=[Depends(check_rate_limit)])
async def moderate_endpoint(
    request: Request,
    file: UploadFile = File(...),
    title: str = Form(...),
    description: Optional[str] = Form(None),
):
    """Moderates a design upload and returns the verdict."""
    if file.content_type not in ALLOWED_IMAGE_CT:
        raise HTTPException(status_code=415, detail="Unsupported media type")
    cl = request.headers.get("content-length")
    if cl is not None and int(cl) > app.state.max_upload_size:
        raise HTTPException(status_code=413, detail="File too large")
    cap = app.state.max_upload_size + 1
    content = await file.read(cap)
    if len(content) > app.state.max_upload_size:
        raise HTTPException(status_code=413, detail="File too large")
    try:
        mod_request = ModerationRequest(title=title, description=description, image=content)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    verdict = await run_in_threadpool(app.state.moderator.moderate, mod_request)
    return verdict.to_dict()
