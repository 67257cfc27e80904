from __future__ import annotations

import re
import zipfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import build_pptx
from pptbind.apps.http.auth import StaticTokenVerifier
from pptbind.apps.http.server import create_app
from pptbind.apps.http.storage import LocalStorage
from pptbind.apps.http.template_source import FileTemplateCatalog, TemplateSource
from pptbind.core.errors import StorageUploadError
from pptbind.core.utils.config import Settings

AUTH = {"Authorization": "Bearer good-token"}


class FailingStorage:
    def upload(self, key, data, *, content_type="", token=None):
        raise StorageUploadError("Failed to upload generated file: bucket is gone")


@pytest.fixture
def template_dir(tmp_path: Path) -> Path:
    (tmp_path / "deck.pptx").write_bytes(
        build_pptx([["{{project_name}}"], ["{{#workstations}}", "{{index}}. {{name}}", "{{/workstations}}"]])
    )
    (tmp_path / "broken.pptx").write_bytes(build_pptx([["{{#open}} never closed"]]))
    (tmp_path / "junk.pptx").write_bytes(b"this is not a zip")
    (tmp_path / "templates.yaml").write_text(
        "tmpl-1: {file_url: deck.pptx, name: Quarterly review}\n"
        "tmpl-broken: {file_url: broken.pptx, name: Broken}\n",
        encoding="utf-8",
    )
    return tmp_path


def _client(template_dir: Path, fixed_now, storage=None, *, local_templates=True) -> TestClient:
    settings = Settings()
    settings.render.static_fields = {"company_name": "ACME Vision"}
    app = create_app(
        settings,
        verifier=StaticTokenVerifier({"good-token": "user-1"}),
        source=TemplateSource(
            FileTemplateCatalog(template_dir / "templates.yaml"),
            local_root=template_dir if local_templates else None,
        ),
        storage=storage or LocalStorage(template_dir / "out", public_base_url="https://files.example.com"),
        clock=lambda: fixed_now,
    )
    return TestClient(app)


@pytest.fixture
def client(template_dir, fixed_now) -> TestClient:
    return _client(template_dir, fixed_now)


def test_options_preflight_has_cors(client):
    for path in ("/parse-ppt-template", "/generate-ppt-from-template"):
        r = client.options(path)
        assert r.status_code == 200
        assert r.content == b""
        assert r.headers["access-control-allow-origin"] == "*"
        assert r.headers["access-control-allow-headers"] == "authorization, x-client-info, apikey, content-type"


def test_health(client):
    r = client.get("/health")
    assert r.json() == {"status": "ok"}
    assert r.headers["access-control-allow-origin"] == "*"


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Basic abc"}, {"Authorization": "Bearer nope"}])
def test_unauthorized(client, headers):
    r = client.post("/parse-ppt-template", json={"templateId": "tmpl-1"}, headers=headers)
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}
    assert r.headers["access-control-allow-origin"] == "*"


def test_parse_by_id(client):
    r = client.post("/parse-ppt-template", json={"templateId": "tmpl-1"}, headers=AUTH)
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    template = body["template"]
    assert template["fileName"] == "Quarterly review"
    assert template["slideCount"] == 2
    assert template["customFields"] == ["project_name", "#workstations", "index", "name"]
    assert template["parsedAt"] == "2026-01-16T10:30:00.000Z"


def test_parse_by_url_uses_file_name_and_size(client, template_dir):
    url = str(template_dir / "deck.pptx")
    r = client.post("/parse-ppt-template", json={"templateUrl": url, "fileSize": 1234}, headers=AUTH)
    assert r.status_code == 200
    template = r.json()["template"]
    assert template["fileName"] == "deck.pptx"
    assert template["fileSize"] == 1234


def test_parse_requires_a_template_reference(client):
    r = client.post("/parse-ppt-template", json={}, headers=AUTH)
    assert r.status_code == 400
    assert r.json()["error"] == "Either templateId or templateUrl is required"


def test_parse_unknown_template_is_404(client):
    r = client.post("/parse-ppt-template", json={"templateId": "nope"}, headers=AUTH)
    assert r.status_code == 404
    assert r.json() == {"error": "Template not found"}


def test_parse_corrupt_template_is_400(client, template_dir):
    r = client.post("/parse-ppt-template", json={"templateUrl": str(template_dir / "junk.pptx")}, headers=AUTH)
    assert r.status_code == 400
    assert "zip" in r.json()["error"]


def test_parse_rejects_bad_payload(client):
    r = client.post("/parse-ppt-template", json={"templateId": "tmpl-1", "fileSize": "big"}, headers=AUTH)
    assert r.status_code == 400
    assert r.json()["details"][0].startswith("$['fileSize']")

    r = client.post("/parse-ppt-template", content=b"{not json", headers=AUTH)
    assert r.status_code == 400


def test_render_uploads_and_reports(client, template_dir):
    payload = {
        "templateId": "tmpl-1",
        "data": {"project_name": "Line 4", "workstations": [{"name": "Load"}, {"name": "Unload"}]},
        "outputFileName": "Quarterly report v2.pptx",
    }
    r = client.post("/generate-ppt-from-template", json=payload, headers=AUTH)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["fileName"] == "Quarterly report v2.pptx"
    assert body["slideCount"] == 2
    assert body["templateName"] == "Quarterly review"
    assert set(body["renderedParts"]) == {"ppt/slides/slide1.xml", "ppt/slides/slide2.xml"}
    assert re.fullmatch(
        r"https://files\.example\.com/generated/user-1/\d+_Quarterly_report_v2\.pptx", body["fileUrl"]
    )

    key = body["fileUrl"].removeprefix("https://files.example.com/")
    stored = template_dir / "out" / key
    assert stored.read_bytes()[:2] == b"PK"
    assert stored.stat().st_size == body["fileSize"]


def test_render_template_syntax_error(client):
    r = client.post("/generate-ppt-from-template", json={"templateId": "tmpl-broken", "data": {}}, headers=AUTH)
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "Template processing error"
    assert [d["id"] for d in body["details"]] == ["unclosed_loop"]
    assert set(body["details"][0]) == {"message", "id"}


def test_render_strict_unknown_tag(client):
    payload = {"templateId": "tmpl-1", "data": {"workstations": []}, "strict": True}
    r = client.post("/generate-ppt-from-template", json=payload, headers=AUTH)
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "Unresolved template tags"
    assert body["details"] == [{"message": 'Tag "{{project_name}}" has no value in the data', "id": "undefined_tag"}]


def test_render_requires_data(client):
    r = client.post("/generate-ppt-from-template", json={"templateId": "tmpl-1"}, headers=AUTH)
    assert r.status_code == 400
    assert "'data' is a required property" in r.json()["error"]


def test_render_storage_failure_is_500(template_dir, fixed_now):
    client = _client(template_dir, fixed_now, storage=FailingStorage())
    r = client.post("/generate-ppt-from-template", json={"templateId": "tmpl-1", "data": {}}, headers=AUTH)
    assert r.status_code == 500
    assert "bucket is gone" in r.json()["error"]


def test_parse_by_id_prefers_catalog_name_and_real_size(client, template_dir):
    payload = {"templateId": "tmpl-1", "fileName": "client.pptx", "fileSize": 1}
    r = client.post("/parse-ppt-template", json=payload, headers=AUTH)
    template = r.json()["template"]
    assert template["fileName"] == "Quarterly review"
    assert template["fileSize"] == (template_dir / "deck.pptx").stat().st_size


def test_request_url_outside_template_dir_is_refused(template_dir, tmp_path_factory, fixed_now):
    private = tmp_path_factory.mktemp("private")
    (private / "secrets.pptx").write_bytes((template_dir / "deck.pptx").read_bytes())
    client = _client(template_dir, fixed_now)
    for url in (str(private / "secrets.pptx"), (private / "secrets.pptx").as_uri(), str(template_dir / ".." / "x.pptx")):
        r = client.post("/generate-ppt-from-template", json={"templateUrl": url, "data": {}}, headers=AUTH)
        assert r.status_code == 400
        assert r.json()["error"] == "templateUrl is outside the template directory"
    assert not (template_dir / "out").exists()


def test_local_request_urls_need_a_template_dir(template_dir, fixed_now):
    client = _client(template_dir, fixed_now, local_templates=False)
    r = client.post("/parse-ppt-template", json={"templateUrl": str(template_dir / "deck.pptx")}, headers=AUTH)
    assert r.status_code == 400
    assert r.json()["error"] == "templateUrl must be an http or https URL"

    r = client.post("/parse-ppt-template", json={"templateId": "tmpl-1"}, headers=AUTH)
    assert r.status_code == 200


def test_render_refuses_non_presentation_archive(client, template_dir):
    with zipfile.ZipFile(template_dir / "backup.zip", "w") as zf:
        zf.writestr("db_password.txt", "hunter2")
    payload = {"templateUrl": str(template_dir / "backup.zip"), "data": {}}
    r = client.post("/generate-ppt-from-template", json=payload, headers=AUTH)
    assert r.status_code == 400
    assert "ppt/presentation.xml" in r.json()["error"]
    assert not (template_dir / "out").exists()
