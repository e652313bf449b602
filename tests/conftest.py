"""Shared test fixtures and factories."""

import io
import threading
from types import SimpleNamespace

import pytest
from PIL import Image

from config import SynthesisConfig
from synthesis import SourceImage, SynthesisClient


def png_bytes(width, height, color=(200, 30, 30)):
    buf = io.BytesIO()
    Image.new('RGB', (width, height), color).save(buf, format='PNG')
    return buf.getvalue()


def jpeg_bytes(width, height, color=(30, 30, 200)):
    buf = io.BytesIO()
    Image.new('RGB', (width, height), color).save(buf, format='JPEG')
    return buf.getvalue()


def mpo_bytes(width, height):
    """Two-frame JPEG, as phones write HDR gain maps; Pillow reads it as MPO."""
    buf = io.BytesIO()
    first = Image.new('RGB', (width, height), (200, 30, 30))
    second = Image.new('RGB', (width // 2, height // 2), (30, 200, 30))
    first.save(buf, format='MPO', save_all=True, append_images=[second])
    return buf.getvalue()


def image_part(data, mime_type='image/png'):
    return SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type=mime_type))


def text_part(text):
    return SimpleNamespace(text=text, inline_data=None)


def gemini_response(*parts):
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=list(parts)))])


class FakeGemini:
    """Stands in for ``genai.Client``; replays queued responses or errors."""

    def __init__(self):
        self.replies = []
        self.calls = []
        self.api_keys = []
        self.gate = None
        self.entered = threading.Event()
        self.models = SimpleNamespace(generate_content=self._generate_content)

    def __call__(self, api_key):
        self.api_keys.append(api_key)
        return self

    def reply(self, reply):
        self.replies.append(reply)
        return self

    def _generate_content(self, model, contents, config):
        self.calls.append(SimpleNamespace(model=model, contents=contents, config=config))
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def portrait():
    return png_bytes(2000, 3000)


@pytest.fixture
def source(portrait):
    return SourceImage(portrait, 'image/png')


@pytest.fixture
def fake_gemini():
    return FakeGemini()


@pytest.fixture
def synthesis_config():
    return SynthesisConfig(model='test-model', api_key_loader=lambda: 'test-key')


@pytest.fixture
def client(synthesis_config, fake_gemini):
    return SynthesisClient(synthesis_config, client_factory=fake_gemini)


@pytest.fixture
def app_client(monkeypatch, client):
    import server

    monkeypatch.setattr(server, '_client', client)
    server.sessions.clear()
    server.app.config['TESTING'] = True
    with server.app.test_client() as c:
        yield c
    server.sessions.clear()
