#!/usr/bin/env python3
"""Swarm observer server: websocket/SSE push plus a small JSON API."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from typing import Dict, List, Optional

from aiohttp import WSMsgType, web

from broadcaster import Subscriber
from config import WATCH_MODES, ObserverConfig
from swarm_hub import SwarmHub, install_signal_handlers
from team_store import is_safe_name

log = logging.getLogger(__name__)

KEEPALIVE_S = 15.0

INDEX_HTML = """<!doctype html>
<html>
<head>
<meta charset="utf-8" />
<title>Swarm Observer</title>
<style>
body{font:14px system-ui,Segoe UI,Roboto,Helvetica,Arial;margin:0;background:#0f1420;color:#e2e8f0}
#bar{display:flex;gap:8px;padding:10px 14px;background:#101727;align-items:center;position:sticky;top:0}
#brand{background:#1f7aec;padding:4px 10px;border-radius:999px;font-weight:600}
#status{margin-left:auto;font-size:12px;color:#94a3b8}
#agents{display:flex;flex-wrap:wrap;gap:8px;padding:12px 14px}
.agent{border-left:4px solid #1f7aec;background:#172033;border-radius:8px;padding:8px 10px;min-width:180px}
.agent small{display:block;color:#94a3b8;font-size:12px}
#log{padding:0 14px 16px;display:flex;flex-direction:column;gap:4px;font-size:12px;color:#cbd5e1}
</style>
</head>
<body>
<div id="bar"><span id="brand">Swarm Observer</span><small id="status">connecting</small></div>
<div id="agents"></div>
<div id="log"></div>
<script>
(function(){
  var agents = {};
  var statusEl = document.getElementById('status');

  function render(){
    var box = document.getElementById('agents');
    box.innerHTML = '';
    Object.keys(agents).forEach(function(id){
      var a = agents[id];
      var el = document.createElement('div');
      el.className = 'agent';
      el.style.borderColor = a.color || '#1f7aec';
      el.textContent = a.label + ' [' + a.role + '] ' + a.status;
      var small = document.createElement('small');
      small.textContent = a.activity || '';
      el.appendChild(small);
      box.appendChild(el);
    });
  }

  function addLine(text){
    var log = document.getElementById('log');
    var line = document.createElement('div');
    line.textContent = text;
    log.insertBefore(line, log.firstChild);
    while(log.childNodes.length > 200){ log.removeChild(log.lastChild); }
  }

  function handle(msg){
    if(msg.type === 'snapshot'){
      agents = msg.agents || {};
    } else if(msg.type === 'agent_join'){
      agents[msg.agent.id] = msg.agent;
    } else if(msg.type === 'event'){
      agents[msg.agentUpdate.id] = msg.agentUpdate;
      addLine(msg.event.agentId + ' ' + msg.event.event + ' ' + (msg.event.tool || ''));
    } else if(msg.type === 'message'){
      addLine(msg.message.from + ' -> ' + msg.message.to + ': ' + msg.message.text);
    }
    render();
  }

  var es = new EventSource('events');
  es.onopen = function(){ statusEl.textContent = 'live'; };
  es.onmessage = function(ev){
    try { handle(JSON.parse(ev.data)); } catch (err) { console.error('SSE parse', err); }
  };
  es.onerror = function(){ statusEl.textContent = 'disconnected'; };
})();
</script>
</body>
</html>"""


def _hub(request: web.Request) -> SwarmHub:
    return request.app["hub"]


async def _pump_frames(subscriber: Subscriber, ws: web.WebSocketResponse) -> None:
    try:
        async for data in subscriber.frames():
            if ws.closed:
                break
            await ws.send_str(data)
    except asyncio.CancelledError:
        return
    except ConnectionResetError:
        subscriber.close()


async def websocket(request: web.Request) -> web.WebSocketResponse:
    hub = _hub(request)
    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)

    subscriber = hub.broadcaster.subscribe()
    pump = asyncio.create_task(_pump_frames(subscriber, ws), name="ws-pump")
    try:
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                if msg.type == WSMsgType.ERROR:
                    log.debug("websocket error: %s", ws.exception())
                continue
            try:
                inbound = json.loads(msg.data)
            except ValueError:
                log.debug("ignoring non-json websocket frame")
                continue
            if not isinstance(inbound, dict):
                continue
            reply = hub.handle_client_message(inbound)
            if reply is not None:
                hub.broadcaster.send(subscriber, reply)
    finally:
        hub.broadcaster.unsubscribe(subscriber)
        pump.cancel()

    return ws


async def sse(request: web.Request) -> web.StreamResponse:
    hub = _hub(request)
    subscriber = hub.broadcaster.subscribe()

    response = web.StreamResponse(
        status=200,
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
    await response.prepare(request)

    try:
        while subscriber.open:
            try:
                data = await asyncio.wait_for(subscriber.queue.get(), timeout=request.app["keepalive"])
            except asyncio.TimeoutError:
                try:
                    await response.write(b": ping\n\n")
                except ConnectionResetError:
                    break
                continue

            if data is None:
                break
            try:
                await response.write(f"data: {data}\n\n".encode())
            except ConnectionResetError:
                break
    except (asyncio.CancelledError, RuntimeError):
        pass
    finally:
        hub.broadcaster.unsubscribe(subscriber)

    return response


async def state(request: web.Request) -> web.Response:
    return web.json_response(_hub(request).broadcaster.state_view())


async def agent_context(request: web.Request) -> web.Response:
    hub = _hub(request)
    context = hub.broadcaster.agent_context(request.match_info["agent_id"])
    status = 200 if context["agent"] is not None else 404
    return web.json_response(context, status=status)


async def inbox(request: web.Request) -> web.Response:
    hub = _hub(request)
    try:
        payload = await request.json()
    except ValueError:
        return web.json_response({"ok": False, "error": "body must be json"}, status=400)
    if not isinstance(payload, dict):
        return web.json_response({"ok": False, "error": "body must be an object"}, status=400)
    team = str(payload.get("teamName") or "").strip()
    target = str(payload.get("targetAgent") or "").strip()
    text = str(payload.get("text") or "").strip()
    if not team or not target or not text:
        return web.json_response(
            {"ok": False, "error": "missing 'teamName', 'targetAgent' or 'text'"}, status=400
        )
    if not is_safe_name(team) or not is_safe_name(target):
        return web.json_response(
            {"ok": False, "type": "inbox_message_error", "error": "invalid teamName or targetAgent"}, status=400
        )
    reply = hub.send_inbox_message(team, target, payload.get("fromName"), text)
    if reply["type"] != "inbox_message_sent":
        return web.json_response({"ok": False, **reply}, status=500)
    return web.json_response({"ok": True, **reply})


async def index(request: web.Request) -> web.StreamResponse:
    static_dir: Optional[str] = request.app["static_dir"]
    if static_dir:
        page = os.path.join(static_dir, "index.html")
        if os.path.isfile(page):
            return web.FileResponse(page)
    return web.Response(text=INDEX_HTML, content_type="text/html")


def build_app(hub: SwarmHub, keepalive: float = KEEPALIVE_S) -> web.Application:
    app = web.Application()
    app["hub"] = hub
    app["keepalive"] = keepalive
    app["static_dir"] = hub.config.static_dir
    app.add_routes(
        [
            web.get("/", index),
            web.get("/ws", websocket),
            web.get("/events", sse),
            web.get("/api/state", state),
            web.get("/api/agents/{agent_id}/context", agent_context),
            web.post("/api/inbox", inbox),
        ]
    )
    if hub.config.static_dir and os.path.isdir(hub.config.static_dir):
        app.router.add_static("/static/", hub.config.static_dir)
    return app


# ---------- CLI ----------


def build_argparser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live observer for multi-agent coding sessions")
    parser.add_argument("--port", type=int, default=None, help="HTTP port (default 3333 or $PORT)")
    parser.add_argument("--host", default=None, help="Bind address (default 127.0.0.1)")
    parser.add_argument("--home", default=None, help="Directory containing .claude/ (default $HOME)")
    parser.add_argument("--watch", choices=WATCH_MODES, default=None, help="File watching strategy")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between polls in poll mode")
    parser.add_argument("--demo", action="store_true", help="Simulate a team instead of watching files")
    parser.add_argument(
        "--no-transcripts",
        dest="transcripts",
        action="store_false",
        help="Do not tail session transcripts under .claude/projects",
    )
    parser.add_argument("--static-dir", default=None, help="Serve a client from this directory")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default INFO)")
    return parser


def config_from_args(args: argparse.Namespace, env: Optional[Dict[str, str]] = None) -> ObserverConfig:
    base = ObserverConfig.from_env(env)
    return base.with_overrides(
        home=args.home,
        port=args.port,
        host=args.host,
        watch_mode=args.watch,
        poll_interval=args.poll_interval,
        demo=args.demo or None,
        watch_transcripts=None if args.transcripts else False,
        static_dir=args.static_dir,
    )


async def async_main(argv: Optional[List[str]] = None) -> None:
    parser = build_argparser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = config_from_args(args)
    hub = SwarmHub(config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    install_signal_handlers(loop, stop_event)

    await hub.start()

    runner = web.AppRunner(build_app(hub))
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    try:
        await site.start()
    except OSError:
        await hub.stop()
        await runner.cleanup()
        raise

    mode = "demo" if config.demo else f"watching {config.claude_dir}"
    print(f"Swarm observer at http://{config.host}:{config.port}/ ({mode})", flush=True)

    await stop_event.wait()
    await hub.stop()
    await runner.cleanup()


def main() -> None:
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
