"""
CONTRACT: inline
ROLE: Live attendance dashboard page.

INPUTS:
  - Topic: ui.telemetry  Type: TelemetrySnapshot (polled over /telemetry)
OUTPUTS:
  - n/a

CONFIG KEYS:
  - video.camera.id: frame tile to show

PERF / TIMING:
  - telemetry poll every 250 ms, frame refresh every 150 ms

FAILURE MODES:
  - fetch error -> status line shows "disconnected"

LOG EVENTS:
  - n/a

TESTS:
  - n/a

CONTRACT DETAILS:
# Live view

- Start / Stop / Reset / Download CSV controls, subject selector.
- Camera tile with hand keypoints and the session status line.
- Confirm / Reject buttons while a candidate waits.
- Total / Present / Absent summary and the roster table.
"""

from __future__ import annotations

import html


def live_page(camera_id: str = "cam0") -> str:
    """Return the dashboard page."""
    cam = html.escape(camera_id, quote=True)
    return _PAGE.replace("__CAMERA_ID__", cam)


_PAGE = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>HandCall Attendance</title>
    <style>
      :root {
        --bg: #f3f6f8;
        --ink: #14212b;
        --ok: #1f8a4c;
        --bad: #c0392b;
        --accent: #0e7c86;
        --panel: #ffffff;
      }
      * { box-sizing: border-box; }
      body { margin: 0; font-family: system-ui, sans-serif; background: var(--bg); color: var(--ink); }
      header { padding: 16px 24px; font-size: 22px; font-weight: 600; color: var(--accent); }
      main { display: grid; grid-template-columns: minmax(320px, 640px) 1fr; gap: 16px; padding: 0 24px 24px; }
      .panel { background: var(--panel); border-radius: 10px; padding: 12px; box-shadow: 0 2px 8px rgba(0,0,0,0.06); }
      .controls { display: flex; flex-wrap: wrap; gap: 8px; margin-bottom: 12px; }
      button { border: 0; border-radius: 6px; padding: 8px 14px; color: #fff; background: var(--accent); cursor: pointer; }
      button.stop { background: var(--bad); }
      button.ok { background: var(--ok); }
      button:disabled { opacity: 0.5; cursor: default; }
      .tile { position: relative; background: #000; border-radius: 8px; overflow: hidden; min-height: 240px; }
      .tile img { width: 100%; display: block; }
      .status { position: absolute; bottom: 8px; left: 50%; transform: translateX(-50%);
                background: rgba(0,0,0,0.7); color: #5ff; padding: 4px 14px; border-radius: 999px; font-size: 14px; }
      .summary { display: grid; grid-template-columns: repeat(3, 1fr); gap: 8px; text-align: center; margin-bottom: 12px; }
      .summary div { border-radius: 8px; padding: 8px; background: #eef3f7; }
      .summary b { display: block; font-size: 24px; }
      table { width: 100%; border-collapse: collapse; }
      th, td { border: 1px solid #d9e0e6; padding: 6px; text-align: left; }
      td.Present { color: var(--ok); font-weight: 600; }
      td.Absent { color: var(--bad); font-weight: 600; }
      tr.active { background: #fff7d6; }
      #gate { display: none; margin-top: 8px; }
      #error { color: var(--bad); min-height: 1.2em; }
    </style>
  </head>
  <body>
    <header>Hand Gesture Attendance</header>
    <main>
      <section class="panel">
        <div class="controls">
          <button id="start" class="ok" onclick="act('start')">Start Attendance</button>
          <button id="stop" class="stop" onclick="act('stop')">Stop Attendance</button>
          <button onclick="act('reset')">Reset</button>
          <select id="subject" onchange="act('select', {identifier: this.value})">
            <option value="">-- Next in roster --</option>
          </select>
          <a href="/export.csv"><button>Download CSV</button></a>
        </div>
        <div class="tile">
          <img id="frame" alt="" />
          <div class="status" id="status">Idle</div>
        </div>
        <div id="gate">
          <span id="candidate"></span>
          <button class="ok" onclick="act('confirm')">Confirm</button>
          <button class="stop" onclick="act('reject')">Absent</button>
        </div>
        <p id="error"></p>
      </section>
      <section class="panel">
        <div class="summary">
          <div>Total<b id="total">0</b></div>
          <div>Present<b id="present">0</b></div>
          <div>Absent<b id="absent">0</b></div>
        </div>
        <table>
          <thead><tr><th>Name</th><th>Identifier</th><th>Status</th></tr></thead>
          <tbody id="roster"></tbody>
        </table>
      </section>
    </main>
    <script>
      const CAMERA_ID = "__CAMERA_ID__";
      let knownIds = "";

      async function act(action, body) {
        const res = await fetch("/" + action, {
          method: "POST",
          headers: {"Content-Type": "application/json"},
          body: JSON.stringify(body || {}),
        });
        if (!res.ok) { document.getElementById("error").textContent = action + " failed"; }
        poll();
      }

      function esc(text) {
        const d = document.createElement("div");
        d.textContent = text == null ? "" : String(text);
        return d.innerHTML;
      }

      function render(t) {
        const s = t.session || {};
        const running = ["SCANNING", "AWAITING_CONFIRM", "ALL_CONFIRMED"].includes(s.state);
        document.getElementById("status").textContent = s.message || s.state || "Idle";
        document.getElementById("start").disabled = running;
        document.getElementById("stop").disabled = !running;
        document.getElementById("error").textContent = s.error || s.warning || "";
        const gate = document.getElementById("gate");
        gate.style.display = s.state === "AWAITING_CONFIRM" ? "block" : "none";
        document.getElementById("candidate").textContent = s.candidate ? "Candidate: " + s.candidate : "";
        const sum = t.summary || {};
        document.getElementById("total").textContent = sum.total || 0;
        document.getElementById("present").textContent = sum.present || 0;
        document.getElementById("absent").textContent = sum.absent || 0;
        const roster = t.roster || [];
        document.getElementById("roster").innerHTML = roster.map((r) =>
          `<tr class="${r.identifier === s.target_subject ? "active" : ""}"><td>${esc(r.display_name)}</td>` +
          `<td>${esc(r.identifier)}</td><td class="${esc(r.status)}">${esc(r.status)}</td></tr>`
        ).join("");
        const ids = roster.map((r) => r.identifier).join("|");
        if (ids !== knownIds) {
          knownIds = ids;
          const sel = document.getElementById("subject");
          sel.innerHTML = '<option value="">-- Next in roster --</option>' + roster.map((r) =>
            `<option value="${esc(r.identifier)}">${esc(r.display_name)} (${esc(r.identifier)})</option>`
          ).join("");
        }
        document.getElementById("subject").value = s.selected || "";
      }

      async function poll() {
        try {
          const res = await fetch("/telemetry");
          render(await res.json());
        } catch (err) {
          document.getElementById("status").textContent = "disconnected";
        }
      }

      setInterval(poll, 250);
      setInterval(() => {
        document.getElementById("frame").src = "/frame/" + CAMERA_ID + ".jpg?t=" + Date.now();
      }, 150);
      poll();
    </script>
  </body>
</html>
"""
