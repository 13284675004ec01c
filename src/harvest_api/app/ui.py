from __future__ import annotations

from html import escape


def render_dashboard(*, app_name: str) -> str:
    return _PAGE.replace("{{TITLE}}", escape(app_name))


_PAGE = """
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{{TITLE}} dashboard</title>
  <style>
    :root {
      --bg: #f4f1ea;
      --panel: #fffdf8;
      --ink: #1d2a33;
      --muted: #63717a;
      --accent: #2f6f8f;
      --ok: #2e7d4f;
      --warn: #a86a00;
      --bad: #b00020;
      --line: #d9d3c7;
    }
    * { box-sizing: border-box; }
    body { margin: 0; font-family: system-ui, sans-serif; color: var(--ink); background: var(--bg); }
    main { max-width: 1100px; margin: 24px auto; padding: 0 16px; display: grid; gap: 16px; }
    section { background: var(--panel); border: 1px solid var(--line); border-radius: 12px; padding: 16px; }
    h1 { margin: 0 0 4px; font-size: 1.5rem; }
    h2 { margin: 0 0 12px; font-size: 1.1rem; }
    .muted { color: var(--muted); }
    .stats { display: grid; grid-template-columns: repeat(4, 1fr); gap: 12px; }
    .stat b { display: block; font-size: 1.6rem; }
    .actions { display: flex; flex-wrap: wrap; gap: 8px; }
    button { border: 0; border-radius: 8px; padding: 8px 14px; background: var(--accent); color: #fff; cursor: pointer; }
    button.secondary { background: var(--muted); }
    table { width: 100%; border-collapse: collapse; font-size: 0.9rem; }
    th, td { text-align: left; padding: 6px 8px; border-bottom: 1px solid var(--line); }
    .completed, .success { color: var(--ok); }
    .running, .pending, .warning { color: var(--warn); }
    .failed, .error { color: var(--bad); }
    #notice { min-height: 1.2em; }
  </style>
</head>
<body>
<main>
  <section>
    <h1>{{TITLE}}</h1>
    <div class="muted">Job collection, comment analysis and auto replies</div>
  </section>
  <section class="stats">
    <div class="stat"><span class="muted">Jobs today</span><b id="jobsToday">-</b></div>
    <div class="stat"><span class="muted">Comments analyzed</span><b id="commentsAnalyzed">-</b></div>
    <div class="stat"><span class="muted">Replies sent</span><b id="repliesSent">-</b></div>
    <div class="stat"><span class="muted">Active tasks</span><b id="activeTasks">-</b></div>
  </section>
  <section>
    <h2>Actions</h2>
    <div class="actions">
      <button data-action="collect" data-source="facebook">Collect Facebook jobs</button>
      <button data-action="collect" data-source="linkedin">Collect LinkedIn jobs</button>
      <button data-action="analyze">Analyze comments</button>
      <button data-action="reply">Send replies</button>
      <button class="secondary" data-action="scheduler-start">Start scheduler</button>
      <button class="secondary" data-action="scheduler-stop">Stop scheduler</button>
    </div>
    <p id="notice" class="muted"></p>
  </section>
  <section>
    <h2>Tasks</h2>
    <table>
      <thead><tr><th>ID</th><th>Name</th><th>Status</th><th>Progress</th><th>Error</th></tr></thead>
      <tbody id="tasks"></tbody>
    </table>
  </section>
  <section>
    <h2>Activity</h2>
    <table>
      <thead><tr><th>When</th><th>Type</th><th>Description</th><th>Status</th></tr></thead>
      <tbody id="activities"></tbody>
    </table>
  </section>
</main>
<script>
  const notice = document.getElementById("notice");

  function cell(text, cls) {
    const td = document.createElement("td");
    td.textContent = text == null ? "" : String(text);
    if (cls) td.className = cls;
    return td;
  }

  function fill(id, rows) {
    const body = document.getElementById(id);
    body.replaceChildren(...rows.map((cells) => {
      const tr = document.createElement("tr");
      tr.append(...cells);
      return tr;
    }));
  }

  async function refresh() {
    const [stats, tasks, activities] = await Promise.all([
      fetch("/api/stats").then((r) => r.json()),
      fetch("/api/tasks?limit=20").then((r) => r.json()),
      fetch("/api/activities?limit=20").then((r) => r.json()),
    ]);
    for (const key of ["jobsToday", "commentsAnalyzed", "repliesSent", "activeTasks"]) {
      document.getElementById(key).textContent = stats[key];
    }
    fill("tasks", tasks.map((t) => [
      cell(t.id), cell(t.name), cell(t.status, t.status), cell(t.progress + "%"), cell(t.errorMessage),
    ]));
    fill("activities", activities.map((a) => [
      cell(new Date(a.createdAt).toLocaleString()), cell(a.type), cell(a.description), cell(a.status, a.status),
    ]));
  }

  const routes = {
    "collect": (b) => ["/api/actions/start-job-collection", { source: b.dataset.source }],
    "analyze": () => ["/api/actions/analyze-comments", {}],
    "reply": () => ["/api/actions/send-replies", null],
    "scheduler-start": () => ["/api/scheduler/start", null],
    "scheduler-stop": () => ["/api/scheduler/stop", null],
  };

  document.querySelectorAll("button[data-action]").forEach((button) => {
    button.addEventListener("click", async () => {
      const [url, body] = routes[button.dataset.action](button);
      const response = await fetch(url, {
        method: "POST",
        headers: { "Content-Type": "application/json" },
        body: body === null ? undefined : JSON.stringify(body),
      });
      const payload = await response.json();
      notice.textContent = payload.message || payload.detail || response.statusText;
      refresh();
    });
  });

  refresh();
  setInterval(refresh, 5000);
</script>
</body>
</html>
"""
