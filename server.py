#!/usr/bin/env python3
"""
Passport Studio Server using Gemini image synthesis
4-Step Workflow: Upload → Synthesize → Crop (35x45mm) → Export
"""

import io, uuid, logging
from pathlib import Path
from flask import Flask, request, jsonify, send_file, render_template_string
from flask_cors import CORS

from config import Settings, ZOOM_MIN, ZOOM_MAX, ZOOM_STEP, ALLOWED_EXTENSIONS
from errors import GENERIC_SYNTHESIS_MESSAGE, PassportStudioError, UploadDecodeFailure, UploadRejected, SynthesisError, ExportFailed
from pipeline import Pipeline
from resampler import CropRectangle, export_filename
from synthesis import SourceImage, SynthesisClient

settings = Settings.from_env()

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = settings.secret_key
app.config['MAX_CONTENT_LENGTH'] = settings.max_upload_bytes + 1024 * 1024
CORS(app)

sessions = {}
_client = None

def get_client():
    global _client
    if _client is None:
        _client = SynthesisClient(settings.synthesis)
        logger.info(f"✅ Synthesis client ready ({settings.synthesis.model})")
    return _client

def get_pipeline(sid):
    return sessions.get(sid) if sid else None

def invalid_session():
    return jsonify({'error': 'Invalid session'}), 400

@app.errorhandler(413)
def handle_too_large(e):
    return jsonify({'error': 'File too large'}), 413

@app.errorhandler(PassportStudioError)
def handle_studio_error(e):
    logger.error(f"❌ {type(e).__name__}: {e.message}")
    return jsonify({'error': e.message}), 500

@app.route('/')
def index():
    return render_template_string(HTML_TEMPLATE, zmin=ZOOM_MIN, zmax=ZOOM_MAX, zstep=ZOOM_STEP)

@app.route('/session', methods=['POST'])
def new_session():
    sid = str(uuid.uuid4())
    sessions[sid] = Pipeline()
    logger.info(f"🆕 Session: {sid}")
    return jsonify({'success': True, 'session_id': sid, 'state': sessions[sid].snapshot()})

@app.route('/state/<session_id>')
def state(session_id):
    p = get_pipeline(session_id)
    if p is None:
        return invalid_session()
    return jsonify({'success': True, 'state': p.snapshot()})

@app.route('/upload', methods=['POST'])
def upload_image():
    p = get_pipeline(request.form.get('session_id'))
    if p is None:
        return invalid_session()
    if 'image' not in request.files:
        return jsonify({'error': 'No image'}), 400
    file = request.files['image']
    if file.filename == '':
        return jsonify({'error': 'No file'}), 400
    ext = Path(file.filename).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        return jsonify({'error': 'Invalid format'}), 400
    data = file.read()
    if len(data) > settings.max_upload_bytes:
        return jsonify({'error': 'File too large'}), 400
    try:
        source, (w, h) = SourceImage.from_upload(data, file.mimetype)
        p.load_image(source)
    except UploadDecodeFailure as e:
        return jsonify({'error': e.message, 'state': p.snapshot()}), 400
    except UploadRejected as e:
        return jsonify({'error': e.message, 'state': p.snapshot()}), 409
    logger.info(f"✅ Uploaded: {w}x{h} {source.mime_type}")
    return jsonify({'success': True, 'width': w, 'height': h, 'preview': source.to_data_uri(), 'state': p.snapshot()})

@app.route('/synthesize', methods=['POST'])
def synthesize():
    data = request.get_json(silent=True) or {}
    p = get_pipeline(data.get('session_id'))
    if p is None:
        return invalid_session()
    attempt = p.begin_synthesis()
    if attempt is None:
        return jsonify({'error': 'Synthesis unavailable', 'state': p.snapshot()}), 409
    try:
        result = get_client().synthesize(attempt.source)
    except SynthesisError as e:
        if not p.fail_synthesis(attempt.token, e.message):
            return jsonify({'error': 'stale', 'state': p.snapshot()}), 409
        return jsonify({'error': e.message, 'state': p.snapshot()}), 502
    except Exception:
        logger.exception("❌ Unexpected synthesis failure")
        if not p.fail_synthesis(attempt.token, GENERIC_SYNTHESIS_MESSAGE):
            return jsonify({'error': 'stale', 'state': p.snapshot()}), 409
        return jsonify({'error': GENERIC_SYNTHESIS_MESSAGE, 'state': p.snapshot()}), 502
    if not p.finish_synthesis(attempt.token, result):
        return jsonify({'error': 'stale', 'state': p.snapshot()}), 409
    return jsonify({'success': True, 'image': result.to_data_uri(), 'state': p.snapshot()})

@app.route('/crop', methods=['POST'])
def set_crop():
    data = request.get_json(silent=True) or {}
    p = get_pipeline(data.get('session_id'))
    if p is None:
        return invalid_session()
    try:
        crop = CropRectangle.from_mapping(data.get('crop'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    if not p.report_crop(crop):
        return jsonify({'error': 'No result to crop', 'state': p.snapshot()}), 409
    return jsonify({'success': True, 'state': p.snapshot()})

@app.route('/zoom', methods=['POST'])
def set_zoom():
    data = request.get_json(silent=True) or {}
    p = get_pipeline(data.get('session_id'))
    if p is None:
        return invalid_session()
    try:
        applied = p.set_zoom(data.get('zoom'))
    except (TypeError, ValueError):
        return jsonify({'error': 'Invalid zoom'}), 400
    if not applied:
        return jsonify({'error': 'No result to zoom', 'state': p.snapshot()}), 409
    return jsonify({'success': True, 'state': p.snapshot()})

@app.route('/restart', methods=['POST'])
def restart():
    data = request.get_json(silent=True) or {}
    p = get_pipeline(data.get('session_id'))
    if p is None:
        return invalid_session()
    p.restart()
    logger.info("↺ Restarted")
    return jsonify({'success': True, 'state': p.snapshot()})

@app.route('/export/<session_id>')
def export(session_id):
    p = get_pipeline(session_id)
    if p is None:
        return invalid_session()
    try:
        png = p.export()
    except ExportFailed as e:
        logger.error(f"❌ Export failed: {e.message}")
        return jsonify({'error': p.snapshot()['error'], 'state': p.snapshot()}), 500
    if png is None:
        return '', 204
    name = export_filename()
    logger.info(f"⬇️ Exported {name}")
    return send_file(io.BytesIO(png), mimetype='image/png', as_attachment=True, download_name=name)

HTML_TEMPLATE = '''<!DOCTYPE html>
<html lang="en" data-theme="dark">
<head>
<meta charset="UTF-8"><meta name="viewport" content="width=device-width,initial-scale=1.0">
<title>Passport Studio</title>
<link href="https://fonts.googleapis.com/css2?family=Inter:wght@400;500;600&display=swap" rel="stylesheet">
<style>
:root{--t:0.2s ease}
[data-theme="dark"]{--bg:#050505;--bg2:#111113;--bg3:#27272a;--tx:#fafafa;--tx2:#a1a1aa;--tx3:#71717a;--bd:#27272a;--ac:#2563eb;--ac2:#3b82f6;--acbg:rgba(37,99,235,0.1);--ok:#22c55e;--err:#ef4444;--sh:0 4px 12px rgba(0,0,0,0.4)}
*{margin:0;padding:0;box-sizing:border-box}
body{font-family:Inter,-apple-system,sans-serif;background:var(--bg);color:var(--tx);min-height:100vh;display:flex;flex-direction:column}
.app{max-width:960px;margin:0 auto;padding:48px 24px;flex:1;width:100%}
.hdr{display:flex;justify-content:space-between;align-items:center;margin-bottom:32px}
.hdr h1{font-size:1.25rem;font-weight:600}.hdr p{color:var(--tx3);font-size:0.75rem}
.grid{display:grid;grid-template-columns:1fr 1fr;gap:24px}
.card{background:var(--bg2);border:1px solid var(--bd);border-radius:16px;padding:24px;box-shadow:var(--sh)}
.card h2{font-size:0.8rem;color:var(--tx2);font-weight:500;margin-bottom:16px;text-transform:uppercase;letter-spacing:.1em}
.upz{aspect-ratio:35/45;border:2px dashed var(--bd);border-radius:12px;display:flex;align-items:center;justify-content:center;text-align:center;cursor:pointer;background:var(--bg);overflow:hidden;transition:all var(--t)}
.upz:hover{border-color:var(--ac);background:var(--acbg)}
.upz.off{opacity:0.4;cursor:not-allowed}
.upz img{width:100%;height:100%;object-fit:cover}
.upz p{color:var(--tx3);font-size:0.8rem}
#fi{display:none}
.cropc{border-radius:12px;overflow:hidden;border:1px solid var(--bd);background:#000;display:flex;justify-content:center}
.cropc canvas{display:block;cursor:grab;max-width:100%}
.cropc canvas:active{cursor:grabbing}
.wait{aspect-ratio:35/45;display:flex;align-items:center;justify-content:center;color:var(--tx3);font-size:0.75rem}
.zctrl{display:flex;align-items:center;justify-content:center;gap:12px;margin-top:16px}
.zslide{width:140px}
.zlbl{color:var(--tx3);font-size:0.8rem;min-width:40px}
.btn{display:inline-flex;align-items:center;justify-content:center;gap:8px;padding:12px 24px;border:none;border-radius:10px;font-size:0.9rem;font-weight:500;cursor:pointer;transition:all var(--t);font-family:inherit;width:100%;margin-top:16px}
.btn-p{background:var(--ac);color:#fff}.btn-p:hover:not(:disabled){background:var(--ac2)}
.btn-s{background:var(--bg);color:var(--tx);border:1px solid var(--bd)}
.btn-ok{background:#fff;color:#000}
.btn:disabled{opacity:0.3;cursor:not-allowed}
.err{background:rgba(239,68,68,0.1);border:1px solid rgba(239,68,68,0.3);color:var(--err);padding:12px 16px;border-radius:10px;margin-top:16px;display:none;font-size:0.875rem}
.err.vis{display:block}
.hide{display:none}
.foot{display:flex;justify-content:space-between;color:var(--tx3);font-size:0.7rem;margin-top:8px}
@media(max-width:720px){.grid{grid-template-columns:1fr}}
</style>
</head>
<body>
<div class="app">
<header class="hdr"><div><h1>📷 Passport Studio</h1><p>Pose locked · 35×45mm · 300 DPI</p></div>
<button class="btn btn-s hide" id="back" style="width:auto;margin:0" onclick="restart()">← Back</button></header>
<div class="grid">
<div class="card"><h2>Portrait</h2>
<div class="upz" id="upz"><p>📷<br>Select portrait<br>JPG, PNG, WebP</p></div>
<input type="file" id="fi" accept="image/*">
<button class="btn btn-p" id="synbtn" onclick="synth()" disabled>Synthesize Image</button>
<button class="btn btn-s hide" id="rstbtn" onclick="restart()">Restart</button>
</div>
<div class="card"><h2>Output (35×45mm)</h2>
<div class="cropc hide" id="cropc"><canvas id="canvas" width="350" height="450"></canvas></div>
<div class="wait" id="wait">Awaiting synthesis</div>
<div class="zctrl hide" id="zctrl"><span class="zlbl">Scale</span><input type="range" class="zslide" id="zslide" min="{{ zmin }}" max="{{ zmax }}" step="{{ zstep }}" value="{{ zmin }}"><span class="zlbl" id="zlbl">1.0×</span></div>
<div class="err" id="err"><span>⚠️ </span><span id="errtxt"></span></div>
<button class="btn btn-ok hide" id="dlbtn" onclick="dl()" disabled>⬇️ Download</button>
<div class="foot hide" id="foot"><span>35mm × 45mm locked</span><span>1050×1350 px</span></div>
</div>
</div>
</div>
<script>
let S={sid:null,st:null,img:null,iw:0,ih:0,z:{{ zmin }},ox:0,oy:0,busy:false};
let cv,ctx,drag=false,dx,dy,ct;
const $=id=>document.getElementById(id);
const upz=$('upz'),fi=$('fi');
upz.onclick=()=>{if(S.st&&S.st.can_upload)fi.click()};
fi.onchange=e=>{if(e.target.files.length)upload(e.target.files[0])};

async function post(u,b){const r=await fetch(u,{method:'POST',headers:{'Content-Type':'application/json'},body:JSON.stringify(b)});return r.json()}

async function init(){const d=await post('/session',{});S.sid=d.session_id;render(d.state);initCanvas()}

function render(st){if(!st)return;S.st=st;
upz.classList.toggle('off',!st.can_upload);
$('synbtn').disabled=!st.can_synthesize||st.phase==='synthesizing';
$('synbtn').textContent=st.phase==='synthesizing'?'🧬 Processing identity...':'Synthesize Image';
['rstbtn','back','cropc','zctrl','dlbtn','foot'].forEach(i=>$(i).classList.toggle('hide',!st.has_result));
$('synbtn').classList.toggle('hide',st.has_result);
$('wait').classList.toggle('hide',st.has_result);
$('dlbtn').disabled=!st.can_export;
if(st.error){$('errtxt').textContent=st.error;$('err').classList.add('vis')}else $('err').classList.remove('vis');
if(!st.has_source){upz.innerHTML='<p>📷<br>Select portrait<br>JPG, PNG, WebP</p>'}}

async function upload(f){
const fd=new FormData();fd.append('image',f);fd.append('session_id',S.sid);
const r=await fetch('/upload',{method:'POST',body:fd});
const d=await r.json();fi.value='';
if(d.success){upz.innerHTML='<img src="'+d.preview+'" alt="">';render(d.state)}
else{render(d.state);$('errtxt').textContent=d.error;$('err').classList.add('vis')}}

async function synth(){
if(S.busy)return;S.busy=true;render(Object.assign({},S.st,{phase:'synthesizing',error:null}));
const d=await post('/synthesize',{session_id:S.sid});S.busy=false;
if(d.success)loadResult(d.image);
render(d.state)}

async function restart(){const d=await post('/restart',{session_id:S.sid});S.img=null;render(d.state)}

function initCanvas(){cv=$('canvas');ctx=cv.getContext('2d');
cv.onmousedown=e=>startDrag(e);cv.onmousemove=e=>doDrag(e);cv.onmouseup=endDrag;cv.onmouseleave=endDrag;
cv.ontouchstart=e=>{e.preventDefault();startDrag(e.touches[0])};cv.ontouchmove=e=>{e.preventDefault();doDrag(e.touches[0])};cv.ontouchend=endDrag;
cv.onwheel=e=>{e.preventDefault();setZoom(S.z+(e.deltaY>0?-{{ zstep }}:{{ zstep }}))};
$('zslide').oninput=e=>setZoom(Number(e.target.value))}

function loadResult(src){S.img=new Image();S.img.onload=()=>{S.iw=S.img.width;S.ih=S.img.height;S.z={{ zmin }};
$('zslide').value=S.z;center();draw();report()};S.img.src=src}

function base(){return Math.max(cv.width/S.iw,cv.height/S.ih)}
function sc(){return base()*S.z}
function center(){const s=sc();S.ox=(cv.width-S.iw*s)/2;S.oy=(cv.height-S.ih*s)/2}
function bound(){const s=sc();S.ox=Math.min(0,Math.max(cv.width-S.iw*s,S.ox));S.oy=Math.min(0,Math.max(cv.height-S.ih*s,S.oy))}
function startDrag(e){if(!S.img)return;drag=true;dx=e.clientX-S.ox;dy=e.clientY-S.oy}
function doDrag(e){if(!drag)return;S.ox=e.clientX-dx;S.oy=e.clientY-dy;bound();draw()}
function endDrag(){if(drag){drag=false;report()}}
function setZoom(z){if(!S.img)return;const os=sc();S.z=Math.max({{ zmin }},Math.min({{ zmax }},Math.round(z*10)/10));const ns=sc();
const cx=cv.width/2,cy=cv.height/2;S.ox=cx-(cx-S.ox)*(ns/os);S.oy=cy-(cy-S.oy)*(ns/os);bound();
$('zslide').value=S.z;$('zlbl').textContent=S.z.toFixed(1)+'×';draw();
post('/zoom',{session_id:S.sid,zoom:S.z});report()}
function draw(){ctx.fillStyle='#000';ctx.fillRect(0,0,cv.width,cv.height);
if(S.img&&S.img.complete)ctx.drawImage(S.img,S.ox,S.oy,S.iw*sc(),S.ih*sc())}
function cropRect(){const s=sc();return{x:-S.ox/s,y:-S.oy/s,width:cv.width/s,height:cv.height/s}}
function report(){clearTimeout(ct);ct=setTimeout(async()=>{const d=await post('/crop',{session_id:S.sid,crop:cropRect()});render(d.state)},150)}

async function dl(){
const r=await fetch('/export/'+S.sid);
if(r.status===204)return;
if(!r.ok){const d=await r.json();render(d.state);return}
const m=/filename=\"?([^\";]+)/.exec(r.headers.get('Content-Disposition')||'');
const a=document.createElement('a');a.href=URL.createObjectURL(await r.blob());
a.download=m?m[1]:'passport_standard_35x45.png';a.click();URL.revokeObjectURL(a.href)}

init();
</script>
</body>
</html>
'''

def main():
    print(f"\n🚀 Passport Studio Server\n📍 http://localhost:{settings.port}\n")
    app.run(host=settings.host, port=settings.port, debug=False, threaded=True)

if __name__ == '__main__':
    main()
