"""Templates and static file generation."""

from pathlib import Path

# Template content
BASE_HTML = """<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>{{ title or 'Meme Gallery' }}</title>
  <link rel="stylesheet" href="/static/app.css">
</head>
<body>
  <header class="topbar">
    <nav>
      <a href="/" class="brand">🖼️ Meme Gallery</a>
      <a href="/api/images">Library JSON</a>
      <a href="/api/stats">Stats</a>
    </nav>
  </header>
  <main class="container">
    {% block content %}{% endblock %}
  </main>
</body>
</html>
"""

GALLERY_HTML = """{% extends 'base.html' %}
{% block content %}
<h1>Gallery</h1>
<p class="muted">
  {{ stats.total_images }} images ·
  {{ stats.total_original_size | filesize }} → {{ stats.total_optimized_size | filesize }}
  ({{ stats.avg_compression }}% saved)
</p>
{% if images %}
<div class="grid">
  {% for img in images %}
  <a class="card" href="{{ img.url }}" id="{{ img.name }}">
    <img loading="lazy" src="{{ img.thumbnail_url }}" alt="{{ img.name }}"
         width="{{ img.dimensions.thumbnail.width }}" height="{{ img.dimensions.thumbnail.height }}">
    <div class="meta">
      <div class="fn" title="{{ img.filename }}">{{ img.name }}</div>
      <div class="muted small">
        {{ img.dimensions.optimized.width }}×{{ img.dimensions.optimized.height }} ·
        {{ img.optimized_size | filesize }} · {{ img.processed | datetime }}
      </div>
    </div>
  </a>
  {% endfor %}
</div>
{% else %}
<p class="empty">No images yet. Upload one to <code>/upload</code>.</p>
{% endif %}
{% endblock %}
"""

APP_CSS = """:root{--bg:#0f1115;--fg:#e5e7eb;--muted:#a1a1aa;--card:#111318;--brand:#7aa2ff}
*{box-sizing:border-box}body{margin:0;background:var(--bg);color:var(--fg);font:15px/1.45 system-ui,-apple-system,Segoe UI,Roboto,Inter,Ubuntu,Helvetica,Arial}
a{color:var(--brand);text-decoration:none}.muted{color:var(--muted)}.small{font-size:12px}
.topbar{position:sticky;top:0;background:#0c0e13;border-bottom:1px solid #1c1f26;z-index:10}
.topbar nav{margin:auto;display:flex;gap:14px;align-items:center;padding:10px}
.topbar .brand{font-weight:700}
.container{margin:20px auto;padding:0 14px}
.grid{display:grid;grid-template-columns:repeat(auto-fill,minmax(260px,1fr));gap:14px}
.card{background:var(--card);border:1px solid #1f2430;border-radius:12px;overflow:hidden;display:flex;flex-direction:column;color:var(--fg)}
.card img{width:100%;height:220px;object-fit:cover;display:block;background:#090a0d}
.card .meta{padding:10px;display:flex;flex-direction:column;gap:4px}
.fn{white-space:nowrap;overflow:hidden;text-overflow:ellipsis}
.empty{padding:40px;text-align:center;color:var(--muted)}
"""


def ensure_assets(app_dir: Path = None) -> Path:
    """Create templates/static on first run; returns the static directory."""
    app_dir = app_dir or Path(__file__).resolve().parent
    templates_dir = app_dir / "templates"
    static_dir = app_dir / "static"

    templates_dir.mkdir(parents=True, exist_ok=True)
    static_dir.mkdir(parents=True, exist_ok=True)
    files = {
        templates_dir / "base.html": BASE_HTML,
        templates_dir / "gallery.html": GALLERY_HTML,
        static_dir / "app.css": APP_CSS,
    }
    for p, content in files.items():
        if not p.exists():
            p.write_text(content, encoding="utf-8")
    return static_dir
