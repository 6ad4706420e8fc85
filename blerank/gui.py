"""Flask + SocketIO browser view of the ranked device list."""

import json
import logging
import os
import socket
import sys
import threading
import time
import webbrowser
from typing import List, Optional

from blerank.anchor import ViewState

_HAS_FLASK = False
try:
    from flask import Flask, render_template_string, jsonify
    from flask_socketio import SocketIO
    _HAS_FLASK = True
except ImportError:
    pass

_LOGGER = logging.getLogger(__name__)

_GUI_HTML = r"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>BLERANK</title>
<style>
*,*::before,*::after{box-sizing:border-box;margin:0;padding:0}
:root{--bg:#0a0a0a;--card:#1a1a1a;--border:#333;--text:#e0e0e0;
  --green:#00ff41;--cyan:#00e5ff;--dim:#666}
html,body{height:100%;background:var(--bg);color:var(--text);
  font-family:'Fira Code',Consolas,'Courier New',monospace;font-size:13px;
  display:flex;flex-direction:column}
#header{display:flex;gap:18px;padding:8px 16px;background:#111;
  border-bottom:1px solid var(--border)}
#header .title{color:var(--green);font-weight:700;font-size:16px}
#header .stat b{color:var(--green)}
#list{flex:1;overflow-y:auto}
#empty{padding:24px;color:var(--dim)}
.row{display:flex;gap:12px;align-items:center;padding:8px 16px;
  border-bottom:1px solid var(--border);background:var(--card)}
.row .name{flex:1;color:var(--cyan)}
.row .addr{color:var(--dim);font-size:11px}
.row .rssi{width:70px;text-align:right}
.bar{width:120px;height:8px;background:#222}
.bar span{display:block;height:100%;background:var(--green)}
</style>
</head>
<body>
<div id="header">
  <span class="title">BLERANK</span>
  <span class="stat">Devices: <b id="st-devices">0</b></span>
  <span class="stat">Detections: <b id="st-total">0</b></span>
  <span class="stat">Elapsed: <b id="st-elapsed">0</b>s</span>
  <span class="stat" id="st-state">scanning</span>
</div>
<div id="list"><p id="empty">No devices found yet.</p></div>

<script src="https://cdn.socket.io/4.7.5/socket.io.min.js"></script>
<script>var WSPORT = {{ port }};</script>
""" + r"""{% raw %}""" + r"""
<script>
(function(){
"use strict";
var list = document.getElementById("list");
var rendered = [];

function esc(s){
  return String(s).replace(/[&<>"]/g, function(c){
    return {"&":"&amp;","<":"&lt;",">":"&gt;","\"":"&quot;"}[c];
  });
}

function reportView(){
  socket.emit("view_state", {
    top_visible: list.scrollTop === 0,
    top_address: rendered.length ? rendered[0].address : null
  });
}

function render(devices){
  rendered = devices;
  document.getElementById("st-devices").textContent = devices.length;
  if(!devices.length){
    list.innerHTML = '<p id="empty">No devices found yet.</p>';
    return;
  }
  var html = "";
  for(var i=0;i<devices.length;i++){
    var d = devices[i];
    html += '<div class="row"><span class="name">'+esc(d.name)+
      '<br><span class="addr">'+esc(d.address)+'</span></span>'+
      '<span class="rssi">'+Number(d.smoothed_rssi).toFixed(0)+' dBm</span>'+
      '<span class="bar"><span style="width:'+(d.signal*100).toFixed(0)+'%"></span></span></div>';
  }
  list.innerHTML = html;
}

var socket = io(window.location.protocol+"//"+window.location.hostname+":"+WSPORT, {transports:["websocket","polling"]});

socket.on("connect", function(){
  fetch(window.location.protocol+"//"+window.location.hostname+":"+WSPORT+"/api/state").then(function(r){return r.json();}).then(function(state){
    if(state.devices) render(state.devices);
    if(state.status) updateStatus(state.status);
    reportView();
  }).catch(function(){});
});

socket.on("snapshot", function(data){
  render(data.devices || []);
  if(data.scroll_to_top) list.scrollTop = 0;
  reportView();
});

function updateStatus(s){
  document.getElementById("st-total").textContent = s.total_detections||0;
  document.getElementById("st-elapsed").textContent = Math.round(s.elapsed||0);
  document.getElementById("st-state").textContent = s.scanning===false ? "complete" : "scanning";
}

socket.on("scan_status", updateStatus);
socket.on("scan_complete", function(s){ s.scanning = false; updateStatus(s); });
list.addEventListener("scroll", reportView);
})();
</script>
""" + r"""{% endraw %}""" + r"""
</body>
</html>
"""


class GuiServer:
    """Flask + SocketIO server for the browser device list."""

    def __init__(self, port: int = 5000):
        if not _HAS_FLASK:
            raise ImportError(
                "GUI requires Flask and flask-socketio. "
                "Install with: pip install flask flask-socketio")
        self._port = port
        self._app = Flask(__name__)
        self._app.config['SECRET_KEY'] = os.urandom(24).hex()
        self._sio = SocketIO(self._app, async_mode='threading', cors_allowed_origins='*')
        self._thread = None
        self._lock = threading.Lock()
        self._devices: List[dict] = []
        self._scan_status: dict = {}
        self._completed: Optional[dict] = None
        self._view = ViewState.hidden()
        self._setup_routes()

    def _setup_routes(self):
        @self._app.route('/')
        def index():
            return render_template_string(_GUI_HTML, port=self._port)

        @self._app.route('/api/state')
        def state():
            with self._lock:
                devices_copy = json.loads(json.dumps(self._devices))
                status_copy = dict(self._scan_status) if self._scan_status else {}
                completed_copy = dict(self._completed) if self._completed else None
            return jsonify({
                'devices': devices_copy,
                'status': status_copy,
                'completed': completed_copy,
            })

        @self._sio.on('view_state')
        def view_state(data):
            self.set_view_state(data)

    def set_view_state(self, data: Optional[dict]):
        """Store the page's latest "row 0 visible / top address" report."""
        data = data or {}
        top_address = data.get('top_address') or None
        view = ViewState(bool(data.get('top_visible')), top_address)
        with self._lock:
            self._view = view
        _LOGGER.debug("Browser view state: %s", view)

    def view_state(self) -> ViewState:
        with self._lock:
            return self._view

    def start(self):
        """Start the Flask server in a background thread."""
        ready = threading.Event()
        result = {'port': -1}

        def _serve():
            for p in range(self._port, self._port + 11):
                # check the port is free before committing
                sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                try:
                    sock.bind(('0.0.0.0', p))
                    sock.close()
                except OSError:
                    sock.close()
                    continue
                result['port'] = p
                ready.set()
                try:
                    self._sio.run(self._app, host='0.0.0.0', port=p,
                                  allow_unsafe_werkzeug=True,
                                  log_output=False)
                except OSError:
                    pass
                return
            result['port'] = -1
            ready.set()

        self._thread = threading.Thread(target=_serve, daemon=True)
        self._thread.start()

        ready.wait(timeout=5)
        time.sleep(0.3)
        self._port = result['port']
        if self._port == -1:
            print("Error: Could not find open port for GUI server")
            sys.exit(1)

        url = f"http://localhost:{self._port}"
        print(f"  GUI server started at {url}")
        try:
            webbrowser.open(url)
        except webbrowser.Error:
            print(f"  Could not open browser — navigate to {url}")

    def stop(self):
        """Signal the SocketIO server to shut down."""
        try:
            self._sio.stop()
        except RuntimeError:
            _LOGGER.debug("SocketIO server was not running")

    def emit_snapshot(self, devices: List[dict], scroll_to_top: bool = False):
        """Push the full ranked list (and the scroll directive) to clients."""
        with self._lock:
            self._devices = devices
        self._sio.emit('snapshot', {
            'devices': devices,
            'scroll_to_top': scroll_to_top,
        })

    def emit_status(self, status: dict):
        with self._lock:
            self._scan_status = status
        self._sio.emit('scan_status', status)

    def emit_complete(self, summary: dict):
        """Push scan complete event and store for reconnecting clients."""
        with self._lock:
            self._completed = summary
        self._sio.emit('scan_complete', summary)
