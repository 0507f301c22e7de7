"""Tests for the FastAPI application endpoints."""

import io
import json

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from design_guard.app import app, load_config
from design_guard.guard import ContentModerator, DEFAULT_CONFIG, RateLimiter


class WeaponClassifier:
    def classify(self, image):
        return [("weapon", 0.9)]


def png(width=500, height=500, color=(128, 128, 128)):
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def test_client(monkeypatch):
    """Create a test client with a fresh moderator and a generous limiter."""
    monkeypatch.delenv("ENABLE_IMAGE_CLASSIFIER", raising=False)
    monkeypatch.delenv("MODERATION_CONFIG_PATH", raising=False)
    with TestClient(app) as client:
        app.state.limiter = RateLimiter(1000, 60)
        app.state.max_upload_size = 10_000_000
        yield client


def upload(client, title="Cool Sketch", description=None, data=None, content_type="image/png"):
    form = {"title": title}
    if description is not None:
        form["description"] = description
    return client.post(
        "/moderate",
        data=form,
        files={"file": ("design.png", png() if data is None else data, content_type)},
    )


def test_health_endpoint(test_client):
    response = test_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_version_endpoint(test_client):
    response = test_client.get("/version")
    assert response.status_code == 200
    data = response.json()
    assert data["version"] == "1.0.0"
    assert data["classifier_model"] == DEFAULT_CONFIG["classifier_model_name"]
    assert data["classifier_enabled"] is False


class TestModerateEndpoint:
    """Tests for the /moderate endpoint."""

    def test_approved(self, test_client):
        response = upload(test_client)
        assert response.status_code == 200
        data = response.json()
        assert data["action"] == "APPROVED"
        assert data["publication_flags"] == {"is_approved": True, "needs_review": False}
        assert data["message"] is None

    def test_rejected_text(self, test_client):
        response = upload(test_client, title="Cool Sketch", description="nsfw version")
        data = response.json()
        assert data["action"] == "REJECTED"
        assert "nsfw" in data["reason"]
        assert data["publication_flags"] is None

    def test_rejected_pattern(self, test_client):
        data = upload(test_client, data=png(50, 50)).json()
        assert data["action"] == "REJECTED"
        assert "community guidelines" in data["reason"]

    def test_needs_review_with_classifier(self, test_client):
        app.state.moderator = ContentModerator(DEFAULT_CONFIG.copy(), classifier=WeaponClassifier())
        data = upload(test_client).json()
        assert data["action"] == "NEEDS_REVIEW"
        assert data["publication_flags"] == {"is_approved": False, "needs_review": True}
        assert data["message"].endswith("before being published.")

    def test_undecodable_upload_needs_review(self, test_client):
        data = upload(test_client, data=b"not really a png").json()
        assert data["action"] == "NEEDS_REVIEW"

    def test_unsupported_media_type(self, test_client):
        response = upload(test_client, data=b"hello", content_type="text/plain")
        assert response.status_code == 415
        assert "Unsupported media type" in response.json()["detail"]

    def test_file_too_large(self, test_client):
        app.state.max_upload_size = 1000
        response = upload(test_client, data=b"a" * 5000)
        assert response.status_code == 413

    def test_blank_title(self, test_client):
        response = upload(test_client, title="   ")
        assert response.status_code == 422

    def test_missing_title(self, test_client):
        response = test_client.post(
            "/moderate", files={"file": ("design.png", png(), "image/png")}
        )
        assert response.status_code == 422


def test_screen_text(test_client):
    response = test_client.post("/screen_text", json={"title": "damn", "description": "damn"})
    assert response.status_code == 200
    assert response.json()["has_explicit_content"] is False

    response = test_client.post("/screen_text", json={"title": "Explicit poster"})
    data = response.json()
    assert data["has_explicit_content"] is True
    assert data["reason"] == "Contains keyword: explicit"


def test_stats(test_client):
    upload(test_client)
    upload(test_client, title="porn")
    data = test_client.get("/stats").json()
    assert data["total"] == 2
    assert data["approved"] == 1
    assert data["rejected"] == 1


def test_rate_limiting(test_client):
    app.state.limiter = RateLimiter(2, 60)
    codes = [
        test_client.post("/screen_text", json={"title": "Cool Sketch"}).status_code
        for _ in range(3)
    ]
    assert codes == [200, 200, 429]


class TestLoadConfig:
    """Tests for JSON configuration overrides."""

    def test_overrides(self, tmp_path):
        path = tmp_path / "moderation.json"
        path.write_text(json.dumps({"skin_tone_threshold": 0.9, "bogus": 1}))
        conf = load_config(str(path))
        assert conf["skin_tone_threshold"] == 0.9
        assert "bogus" not in conf
        assert conf["min_dimension"] == DEFAULT_CONFIG["min_dimension"]

    def test_missing_file_uses_defaults(self, tmp_path):
        assert load_config(str(tmp_path / "absent.json")) == DEFAULT_CONFIG

    def test_non_object_rejected(self, tmp_path):
        path = tmp_path / "moderation.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError):
            load_config(str(path))

    def test_startup_reads_env(self, tmp_path, monkeypatch):
        path = tmp_path / "moderation.json"
        path.write_text(json.dumps({"min_dimension": 10}))
        monkeypatch.setenv("MODERATION_CONFIG_PATH", str(path))
        with TestClient(app) as client:
            app.state.limiter = RateLimiter(1000, 60)
            app.state.max_upload_size = 10_000_000
            data = upload(client, data=png(50, 50)).json()
        assert data["action"] == "APPROVED"

    def test_string_list_override_rejected(self, tmp_path):
        path = tmp_path / "moderation.json"
        path.write_text(json.dumps({"keyword_denylist": "nsfw"}))
        with pytest.raises(ValueError, match="keyword_denylist"):
            ContentModerator(load_config(str(path)))
