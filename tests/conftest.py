import pytest
from fastapi.testclient import TestClient

import app as app_module
from livepreview.config import Settings

from .helpers import FakeCompiler


@pytest.fixture()
def project(tmp_path):
    """A watch root holding one document and one image it references."""
    (tmp_path / "doc.typ").write_text('= Hello\n#image("figure.png")\n')
    (tmp_path / "figure.png").write_bytes(b"\x89PNG\r\n\x1a\nfake")
    return tmp_path


@pytest.fixture()
def fake_compiler(project):
    return FakeCompiler(project / "doc.pdf")


@pytest.fixture()
def settings(project):
    return Settings(source=project / "doc.typ", watch=False, debounce_ms=50)


@pytest.fixture()
def preview_app(settings, fake_compiler):
    return app_module.create_app(settings, compiler=fake_compiler)


@pytest.fixture()
def client(preview_app):
    with TestClient(preview_app) as test_client:
        yield test_client


@pytest.fixture()
def server(preview_app, client):
    return preview_app.state.preview
