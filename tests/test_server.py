import io
import threading
from types import SimpleNamespace

import pytest
from PIL import Image

import server
from config import SynthesisConfig
from synthesis import SourceImage, SynthesisClient

from conftest import gemini_response, image_part, jpeg_bytes, mpo_bytes, png_bytes, text_part


def new_session(c):
    return c.post('/session').get_json()['session_id']


def upload(c, sid, data, filename='portrait.png', content_type=None):
    image = (io.BytesIO(data), filename, content_type) if content_type else (io.BytesIO(data), filename)
    return c.post('/upload', data={'session_id': sid, 'image': image},
                  content_type='multipart/form-data')


@pytest.fixture
def sid(app_client):
    return new_session(app_client)


@pytest.fixture
def uploaded(app_client, sid, portrait):
    assert upload(app_client, sid, portrait).status_code == 200
    return sid


@pytest.fixture
def synthesized(app_client, uploaded, fake_gemini):
    fake_gemini.reply(gemini_response(image_part(png_bytes(1500, 2000))))
    assert app_client.post('/synthesize', json={'session_id': uploaded}).status_code == 200
    return uploaded


def test_index_renders_zoom_range(app_client):
    html = app_client.get('/').get_data(as_text=True)
    assert 'min="1.0" max="3.0" step="0.1"' in html


def test_unknown_session(app_client):
    assert app_client.get('/state/nope').status_code == 400
    assert app_client.post('/synthesize', json={'session_id': 'nope'}).status_code == 400
    assert app_client.get('/export/nope').status_code == 400


def test_upload(app_client, sid, portrait):
    d = upload(app_client, sid, portrait).get_json()
    assert d['success']
    assert (d['width'], d['height']) == (2000, 3000)
    assert d['preview'].startswith('data:image/png;base64,')
    assert d['state']['phase'] == 'image_loaded'
    assert d['state']['can_synthesize']


@pytest.mark.parametrize('data,filename,error', [
    (b'text', 'notes.txt', 'Invalid format'),
    (b'definitely not pixels', 'photo.png', 'Cannot read image'),
])
def test_upload_rejects_bad_files(app_client, sid, data, filename, error):
    r = upload(app_client, sid, data, filename)
    assert r.status_code == 400
    assert r.get_json()['error'].startswith(error)
    assert app_client.get(f'/state/{sid}').get_json()['state']['phase'] == 'idle'


@pytest.mark.parametrize('data', [jpeg_bytes(300, 400), mpo_bytes(300, 400)])
def test_jpeg_upload_sent_to_gemini_as_jpeg(app_client, sid, fake_gemini, data):
    d = upload(app_client, sid, data, 'phone.jpg', 'image/jpeg').get_json()
    assert d['preview'].startswith('data:image/jpeg;base64,')

    fake_gemini.reply(gemini_response(image_part(png_bytes(35, 45))))
    app_client.post('/synthesize', json={'session_id': sid})
    assert fake_gemini.calls[0].contents[0].inline_data.mime_type == 'image/jpeg'


def test_oversized_upload_answers_json(app_client, sid, portrait, monkeypatch):
    monkeypatch.setitem(server.app.config, 'MAX_CONTENT_LENGTH', 1024)
    r = upload(app_client, sid, portrait)
    assert r.status_code == 413
    assert r.get_json() == {'error': 'File too large'}


def test_unexpected_reply_shape_leaves_error_state(app_client, uploaded, fake_gemini):
    fake_gemini.reply(SimpleNamespace(candidates=[object()]))
    r = app_client.post('/synthesize', json={'session_id': uploaded})
    assert r.status_code == 502
    state = r.get_json()['state']
    assert state['phase'] == 'error'
    assert state['error'] == 'Synthesis disrupted. Check neural link.'
    assert state['can_synthesize']


def test_upload_disabled_once_result_exists(app_client, synthesized, portrait):
    r = upload(app_client, synthesized, portrait)
    assert r.status_code == 409
    assert r.get_json()['state']['can_upload'] is False


def test_passport_scenario(app_client, uploaded, fake_gemini):
    fake_gemini.reply(gemini_response(text_part('done'), image_part(png_bytes(1200, 1600))))
    d = app_client.post('/synthesize', json={'session_id': uploaded}).get_json()
    assert d['success']
    assert d['image'].startswith('data:image/png;base64,')
    assert d['state']['phase'] == 'result_ready'
    assert d['state']['can_export'] is False

    crop = {'x': 100, 'y': 50, 'width': 700, 'height': 900}
    d = app_client.post('/crop', json={'session_id': uploaded, 'crop': crop}).get_json()
    assert d['state']['can_export']

    r = app_client.get(f'/export/{uploaded}')
    assert r.status_code == 200
    assert r.mimetype == 'image/png'
    disposition = r.headers['Content-Disposition']
    assert 'attachment' in disposition and 'passport_standard_35x45_' in disposition
    assert Image.open(io.BytesIO(r.data)).size == (1050, 1350)


def test_transport_error_scenario(app_client, uploaded, fake_gemini):
    fake_gemini.reply(RuntimeError('rate limited'))
    r = app_client.post('/synthesize', json={'session_id': uploaded})
    assert r.status_code == 502
    state = r.get_json()['state']
    assert state['phase'] == 'error'
    assert state['error'] == 'rate limited'


def test_no_image_scenario(app_client, uploaded, fake_gemini):
    fake_gemini.reply(gemini_response(text_part('sorry')))
    state = app_client.post('/synthesize', json={'session_id': uploaded}).get_json()['state']
    assert state['phase'] == 'error'
    assert state['error'] == 'AI failed to lock pose. Try a more direct portrait.'
    assert state['has_result'] is False


def test_missing_key_becomes_error_state(app_client, uploaded, monkeypatch, fake_gemini):
    monkeypatch.setattr(server, '_client', SynthesisClient(
        SynthesisConfig(api_key_loader=lambda: None), client_factory=fake_gemini))
    state = app_client.post('/synthesize', json={'session_id': uploaded}).get_json()['state']
    assert state['phase'] == 'error'
    assert 'API_KEY' in state['error']


def test_retry_after_error(app_client, uploaded, fake_gemini):
    fake_gemini.reply(RuntimeError('rate limited')).reply(gemini_response(image_part(png_bytes(35, 45))))
    app_client.post('/synthesize', json={'session_id': uploaded})
    state = app_client.post('/synthesize', json={'session_id': uploaded}).get_json()['state']
    assert state['phase'] == 'result_ready'
    assert state['error'] is None


def test_synthesize_without_image(app_client, sid, fake_gemini):
    r = app_client.post('/synthesize', json={'session_id': sid})
    assert r.status_code == 409
    assert fake_gemini.calls == []


def test_single_flight_over_http(app_client, uploaded, fake_gemini):
    fake_gemini.gate = threading.Event()
    fake_gemini.reply(gemini_response(image_part(png_bytes(35, 45))))
    first = {}

    def run():
        with server.app.test_client() as c:
            first['response'] = c.post('/synthesize', json={'session_id': uploaded})

    t = threading.Thread(target=run)
    t.start()
    assert fake_gemini.entered.wait(5)

    second = app_client.post('/synthesize', json={'session_id': uploaded})
    fake_gemini.gate.set()
    t.join(5)

    assert second.status_code == 409
    assert first['response'].status_code == 200
    assert len(fake_gemini.calls) == 1


def test_restart_during_synthesis_discards_reply(app_client, uploaded, fake_gemini):
    fake_gemini.gate = threading.Event()
    fake_gemini.reply(gemini_response(image_part(png_bytes(35, 45))))
    first = {}

    def run():
        with server.app.test_client() as c:
            first['response'] = c.post('/synthesize', json={'session_id': uploaded})

    t = threading.Thread(target=run)
    t.start()
    assert fake_gemini.entered.wait(5)
    app_client.post('/restart', json={'session_id': uploaded})
    fake_gemini.gate.set()
    t.join(5)

    assert first['response'].status_code == 409
    state = app_client.get(f'/state/{uploaded}').get_json()['state']
    assert state['phase'] == 'idle'
    assert state['has_result'] is False


def test_restart_clears_result(app_client, synthesized):
    state = app_client.post('/restart', json={'session_id': synthesized}).get_json()['state']
    assert state['phase'] == 'idle'
    assert not state['has_source'] and not state['has_result'] and state['error'] is None
    assert state['can_upload']


def test_export_without_crop_is_noop(app_client, synthesized):
    r = app_client.get(f'/export/{synthesized}')
    assert r.status_code == 204
    assert r.data == b''


def test_export_before_result_is_noop(app_client, uploaded):
    assert app_client.get(f'/export/{uploaded}').status_code == 204


def test_crop_before_result_refused(app_client, uploaded):
    crop = {'x': 0, 'y': 0, 'width': 35, 'height': 45}
    assert app_client.post('/crop', json={'session_id': uploaded, 'crop': crop}).status_code == 409


def test_invalid_crop(app_client, synthesized):
    crop = {'x': 0, 'y': 0, 'width': 0, 'height': 45}
    assert app_client.post('/crop', json={'session_id': synthesized, 'crop': crop}).status_code == 400


def test_zoom(app_client, synthesized):
    d = app_client.post('/zoom', json={'session_id': synthesized, 'zoom': 5}).get_json()
    assert d['state']['zoom'] == 3.0
    assert d['state']['phase'] == 'result_ready'
    assert app_client.post('/zoom', json={'session_id': synthesized, 'zoom': 'big'}).status_code == 400


def test_export_failure_keeps_result(app_client, synthesized, monkeypatch):
    crop = {'x': 0, 'y': 0, 'width': 35, 'height': 45}
    app_client.post('/crop', json={'session_id': synthesized, 'crop': crop})
    pipeline = server.sessions[synthesized]
    pipeline.result = SourceImage(b'corrupt', 'image/png')

    r = app_client.get(f'/export/{synthesized}')
    assert r.status_code == 500
    d = r.get_json()
    assert d['error'] == 'Export interrupted.'
    assert d['state']['phase'] == 'result_ready'
    assert d['state']['has_result']
