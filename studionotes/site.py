#!/usr/bin/env python3
"""
A small personal publishing site: diary, gallery, about page, admin
console and a mood heatmap, with inline editing behind a passphrase.
"""

import copy
import json
import os
import re
import secrets
import sqlite3
import uuid
from collections import defaultdict, deque
from datetime import date, datetime, timedelta, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import boto3
import click
import markdown
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.utils import secure_filename

from studionotes.heatmap import (
    INTENSITIES,
    MOOD_PALETTE,
    MOODS,
    HeatmapSession,
    HttpMoodTransport,
    MoodBridge,
    MoodStore,
    MoodValidationError,
    PersistenceError,
    colour_for,
    date_key,
    diary_links,
    grid_cells,
    load_entries,
    mood_label,
    new_reveal_seed,
    parse_date_key,
    pick_year,
    run_inline,
    validate_entry,
    year_options,
)

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "site.sqlite3"

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
edit_signer = TimestampSigner(SECRET_KEY, salt="edit-mode")

PASSCODE_DEFAULT = "atelier-edit"
EDIT_MODE_MAX_AGE = 60 * 60 * 8  # 8 hours
THEMES = ("classic", "beast")
THEME_MAX_AGE = 60 * 60 * 24 * 30
POST_TYPES = ("diary", "photo", "article")
AVATAR_POSITIONS = ("center", "top", "bottom", "left", "right")
LATEST_DIARY = 2
LATEST_PHOTOS = 6

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_PUBLIC_BASE",
)
UPLOAD_MAX_BYTES = 10 * 1024 * 1024
IMAGE_MIMES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
    "image/avif",
}

DEFAULT_CONTENT = {
    "heroEyebrow": "Editorial dispatch",
    "heroTitle": "Everyday field notes & gallery fragments",
    "navEyebrow": "Journal of",
    "navTitle": "Studio Notes",
    "avatarUrl": "https://images.unsplash.com/photo-1504593811423-6dd665756598"
    "?auto=format&fit=crop&w=400&q=80",
    "avatarPosition": "center",
    "homeIntroduction": (
        "A living archive of quiet mornings, impromptu journeys, and the slow "
        "rituals that stitch days together. Pull up a chair and linger for a "
        "while; each entry is an invitation to breathe."
    ),
    "aboutBio": (
        "I'm Jules, a writer-photographer who collects stories from ordinary "
        "days. My studio drifts between notebooks, cameras, and long walks."
    ),
    "milestones": [
        {
            "id": "milestone-2015",
            "year": "2015",
            "description": "Moved to the coast and began documenting the tides every dawn.",
        },
        {
            "id": "milestone-2019",
            "year": "2019",
            "description": "Published the 'Quiet Hours' photo zine and hosted a small gallery show.",
        },
        {
            "id": "milestone-2023",
            "year": "2023",
            "description": "Launched this hybrid diary to weave essays, field notes, and visual studies.",
        },
    ],
    "contactLinks": [
        {
            "id": "contact-email",
            "label": "Email",
            "value": "studio@quietfield.com",
            "href": "mailto:studio@quietfield.com",
            "icon": "✉️",
        },
        {
            "id": "contact-instagram",
            "label": "Instagram",
            "value": "@studio.notes",
            "href": "https://www.instagram.com/studio.notes",
            "icon": "📸",
        },
        {
            "id": "contact-newsletter",
            "label": "Newsletter",
            "value": "Field Notes dispatch",
            "href": "https://example.com/newsletter",
            "icon": "📰",
        },
    ],
    "galleryEyebrow": "Gallery Grid",
    "galleryTitle": "Observations in three or four columns",
    "galleryDescription": (
        "Tap a tile to see it fullscreen. In edit mode every tile unlocks "
        "inline controls so you can swap an image without leaving the flow."
    ),
    "adminNotes": [
        "Inline editing map: Home intro, Diary timeline, Gallery images, About bio/links",
        "Reminders: add new diary entry this weekend",
    ],
}
JSON_CONTENT_KEYS = {"milestones", "contactLinks", "adminNotes"}

# form action → (setting key, label, may be empty)
TEXT_ACTIONS = {
    "hero_eyebrow": ("heroEyebrow", "Hero eyebrow", False),
    "hero_title": ("heroTitle", "Hero title", False),
    "home_intro": ("homeIntroduction", "Introduction", False),
    "nav_eyebrow": ("navEyebrow", "Nav eyebrow", False),
    "nav_title": ("navTitle", "Nav title", False),
    "about_bio": ("aboutBio", "Bio", False),
    "avatar_url": ("avatarUrl", "Avatar", False),
    "gallery_eyebrow": ("galleryEyebrow", "Gallery eyebrow", True),
    "gallery_title": ("galleryTitle", "Gallery title", True),
    "gallery_description": ("galleryDescription", "Gallery description", True),
}

try:
    __version__ = version("studionotes")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=os.environ.get("SESSION_COOKIE_SECURE", "1") != "0",
    PERMANENT_SESSION_LIFETIME=timedelta(seconds=EDIT_MODE_MAX_AGE),
    MAX_CONTENT_LENGTH=UPLOAD_MAX_BYTES + 1024 * 1024,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.mark",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]
md = markdown.Markdown(extensions=MD_EXTENSIONS)

_MD_FENCE_RE = re.compile(r"```[\s\S]*?```")
_MD_CODE_RE = re.compile(r"`([^`]+)`")
_MD_IMAGE_RE = re.compile(r"!\[[^\]]*]\([^)]*\)")
_MD_LINK_RE = re.compile(r"\[([^\]]+)]\([^)]*\)")
_MD_PUNCT_RE = re.compile(r"[*_~>#-]")
_WS_RE = re.compile(r"\s+")


def render_markdown_html(text: str | None) -> str:
    md.reset()
    return md.convert(text or "")


def markdown_to_plain_text(text: str | None) -> str:
    """Strip Markdown down to a single line of prose (for teasers)."""
    if not text:
        return ""
    out = _MD_FENCE_RE.sub(" ", text)
    out = _MD_CODE_RE.sub(r"\1", out)
    out = _MD_IMAGE_RE.sub(" ", out)
    out = _MD_LINK_RE.sub(r"\1", out)
    out = _MD_PUNCT_RE.sub(" ", out)
    return _WS_RE.sub(" ", out).strip()


def format_image_src(source: str | None, query: str = "") -> str:
    """Append a resize query to remote images that carry none yet."""
    if not source:
        return source or ""
    if source.startswith(("data:", "blob:")):
        return source
    if not query or "?" in source:
        return source
    return f"{source}{query}"


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return Markup(render_markdown_html(text))


@app.template_filter("plain")
def plain_filter(text: str | None, limit: int | None = None) -> str:
    out = markdown_to_plain_text(text)
    if limit and len(out) > limit:
        return out[:limit] + "..."
    return out


@app.template_filter("date")
def format_date(iso: str | None) -> str:
    """ISO timestamp → 'Mar 5, 2024'; unparsable input is returned as-is."""
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return iso
    return f"{dt:%b} {dt.day}, {dt.year}"


@app.template_filter("img")
def img_filter(source: str | None, query: str = "") -> str:
    return format_image_src(source, query)


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Posts (diary | photo | article) + their images
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS post (
            id          TEXT PRIMARY KEY,
            title       TEXT NOT NULL,
            type        TEXT NOT NULL,
            content     TEXT NOT NULL DEFAULT '',
            created_at  TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_post_type ON post(type, created_at);

        CREATE TABLE IF NOT EXISTS post_image (
            post_id   TEXT NOT NULL,
            url       TEXT NOT NULL,
            position  INTEGER NOT NULL,
            FOREIGN KEY (post_id) REFERENCES post(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_post_image ON post_image(post_id, position);

        ------------------------------------------------------------
        -- 2.  Visitor comments
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS comment (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            post_id     TEXT NOT NULL,
            name        TEXT NOT NULL,
            text        TEXT NOT NULL,
            created_at  TEXT NOT NULL,
            FOREIGN KEY (post_id) REFERENCES post(id) ON DELETE CASCADE
        );

        ------------------------------------------------------------
        -- 3.  Site-wide key/value content
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS site_settings (
            key   TEXT PRIMARY KEY,
            value TEXT
        );

        ------------------------------------------------------------
        -- 4.  Mood entries (one per day)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS mood_entry (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            date        TEXT UNIQUE NOT NULL,        -- yyyy-mm-dd
            mood        TEXT NOT NULL,
            intensity   INTEGER NOT NULL,
            note        TEXT NOT NULL DEFAULT '',
            created_at  TEXT NOT NULL,
            updated_at  TEXT
        );
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


###############################################################################
# Config helpers (.env + process env)
###############################################################################
def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def env_value(key: str, default: str = "") -> str:
    return (os.environ.get(key) or _read_env_file().get(key) or default).strip()


def admin_passcode() -> str:
    return env_value("ADMIN_PASSCODE", PASSCODE_DEFAULT)


def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def r2_object_url(cfg: dict[str, str], key: str) -> str:
    return f"{cfg['R2_PUBLIC_BASE'].rstrip('/')}/{key}"


###############################################################################
# Site content
###############################################################################
def get_setting(key, default=None):
    row = get_db().execute(
        "SELECT value FROM site_settings WHERE key=?", (key,)
    ).fetchone()
    return row["value"] if row else default


def set_setting(key, value):
    db = get_db()
    db.execute(
        "INSERT INTO site_settings (key,value) VALUES (?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )
    db.commit()


def _json_setting(key: str):
    raw = get_setting(key)
    if raw is None:
        return copy.deepcopy(DEFAULT_CONTENT[key])
    try:
        parsed = json.loads(raw)
    except ValueError:
        app.logger.warning("Setting %s holds invalid JSON, using defaults", key)
        return copy.deepcopy(DEFAULT_CONTENT[key])
    if not isinstance(parsed, list):
        return copy.deepcopy(DEFAULT_CONTENT[key])
    if key == "adminNotes":
        return [n for n in parsed if isinstance(n, str)]
    return [dict(x) for x in parsed if isinstance(x, dict)]


def site_content() -> dict:
    """Every editable text block, stored values over defaults."""
    content = {}
    for key, default in DEFAULT_CONTENT.items():
        if key in JSON_CONTENT_KEYS:
            content[key] = _json_setting(key)
        else:
            content[key] = get_setting(key, default)
    return content


def update_content(key: str, value: str) -> None:
    if key not in DEFAULT_CONTENT or key in JSON_CONTENT_KEYS:
        raise KeyError(key)
    set_setting(key, value)


def _store_list(key: str, items: list) -> None:
    set_setting(key, json.dumps(items, ensure_ascii=False))


def update_milestone(milestone_id: str, **fields) -> None:
    items = _json_setting("milestones")
    for m in items:
        if m.get("id") == milestone_id:
            m.update({k: v for k, v in fields.items() if k in ("year", "description")})
    _store_list("milestones", items)


def add_milestone(
    year: str = "New year",
    description: str = "New milestone",
    after_id: str | None = None,
) -> dict:
    """Insert at the top, or right after *after_id* when given."""
    items = _json_setting("milestones")
    new = {"id": str(uuid.uuid4()), "year": year, "description": description}
    if not after_id:
        items.insert(0, new)
    else:
        out = []
        for m in items:
            out.append(m)
            if m.get("id") == after_id:
                out.append(new)
        items = out
    _store_list("milestones", items)
    return new


def delete_milestone(milestone_id: str) -> None:
    items = [m for m in _json_setting("milestones") if m.get("id") != milestone_id]
    _store_list("milestones", items)


def add_contact_link() -> dict:
    items = _json_setting("contactLinks")
    new = {
        "id": str(uuid.uuid4()),
        "label": "New link",
        "value": "Label",
        "href": "",
        "icon": "",
    }
    items.append(new)
    _store_list("contactLinks", items)
    return new


def update_contact_link(link_id: str, **fields) -> None:
    items = _json_setting("contactLinks")
    for link in items:
        if link.get("id") == link_id:
            link.update(
                {
                    k: v
                    for k, v in fields.items()
                    if k in ("label", "value", "href", "icon") and v is not None
                }
            )
    _store_list("contactLinks", items)


def delete_contact_link(link_id: str) -> None:
    items = [c for c in _json_setting("contactLinks") if c.get("id") != link_id]
    _store_list("contactLinks", items)


def update_admin_notes(notes: list[str]) -> None:
    _store_list("adminNotes", [n for n in notes if isinstance(n, str)])


###############################################################################
# Posts, images, comments
###############################################################################
def _images_by_post(post_ids: list[str], *, db) -> dict[str, list[str]]:
    if not post_ids:
        return {}
    q_marks = ",".join("?" * len(post_ids))
    rows = db.execute(
        f"SELECT post_id, url FROM post_image WHERE post_id IN ({q_marks}) "
        "ORDER BY position ASC",
        tuple(post_ids),
    ).fetchall()
    out: DefaultDict[str, list[str]] = defaultdict(list)
    for r in rows:
        out[r["post_id"]].append(r["url"])
    return out


def _map_posts(rows, *, db) -> list[dict]:
    images = _images_by_post([r["id"] for r in rows], db=db)
    return [{**dict(r), "images": images.get(r["id"], [])} for r in rows]


def get_posts(*, db) -> list[dict]:
    rows = db.execute(
        "SELECT id, title, type, content, created_at FROM post "
        "ORDER BY created_at DESC"
    ).fetchall()
    return _map_posts(rows, db=db)


def get_posts_by_type(post_type: str, *, db) -> list[dict]:
    rows = db.execute(
        "SELECT id, title, type, content, created_at FROM post "
        "WHERE type=? ORDER BY created_at DESC",
        (post_type,),
    ).fetchall()
    return _map_posts(rows, db=db)


def get_post(post_id: str, *, db) -> dict | None:
    row = db.execute(
        "SELECT id, title, type, content, created_at FROM post WHERE id=?",
        (post_id,),
    ).fetchone()
    if not row:
        return None
    return _map_posts([row], db=db)[0]


def replace_images(post_id: str, images: list[str], *, db) -> None:
    db.execute("DELETE FROM post_image WHERE post_id=?", (post_id,))
    db.executemany(
        "INSERT INTO post_image (post_id, url, position) VALUES (?,?,?)",
        [(post_id, url, pos) for pos, url in enumerate(images)],
    )
    db.commit()


def insert_post(
    *, title: str, post_type: str, content: str, images: list[str] | None = None, db
) -> dict:
    post_id = str(uuid.uuid4())
    created_at = utc_now().isoformat(timespec="seconds")
    db.execute(
        "INSERT INTO post (id, title, type, content, created_at) VALUES (?,?,?,?,?)",
        (post_id, title, post_type, content, created_at),
    )
    replace_images(post_id, images or [], db=db)
    return get_post(post_id, db=db)


def update_post(post_id: str, *, db, **fields) -> dict | None:
    cols = [k for k in ("title", "content", "type") if fields.get(k) is not None]
    if cols:
        db.execute(
            f"UPDATE post SET {', '.join(f'{c}=?' for c in cols)} WHERE id=?",
            (*(fields[c] for c in cols), post_id),
        )
        db.commit()
    return get_post(post_id, db=db)


def insert_comment(post_id: str, *, name: str, text: str, db) -> dict:
    created_at = utc_now().isoformat(timespec="seconds")
    db.execute(
        "INSERT INTO comment (post_id, name, text, created_at) VALUES (?,?,?,?)",
        (post_id, name, text, created_at),
    )
    db.commit()
    return {"name": name, "text": text, "created_at": created_at}


def get_comments(post_id: str, *, db) -> list[sqlite3.Row]:
    return db.execute(
        "SELECT name, text, created_at FROM comment WHERE post_id=? "
        "ORDER BY created_at DESC, id DESC",
        (post_id,),
    ).fetchall()


###############################################################################
# Mood entries
###############################################################################
def get_mood_entries(*, db):
    """All stored entries, newest day first; intensities clamped to 1..3."""
    rows = db.execute(
        "SELECT date, mood, intensity, note FROM mood_entry ORDER BY date DESC"
    ).fetchall()
    return load_entries(dict(r) for r in rows)


def upsert_mood_entry(entry, *, db) -> None:
    now = utc_now().isoformat(timespec="seconds")
    db.execute(
        """INSERT INTO mood_entry (date, mood, intensity, note, created_at)
                VALUES (?,?,?,?,?)
           ON CONFLICT(date) DO UPDATE SET mood=excluded.mood,
                                           intensity=excluded.intensity,
                                           note=excluded.note,
                                           updated_at=?""",
        (entry.date, entry.mood, entry.intensity, entry.note, now, now),
    )
    db.commit()


class DbMoodTransport:
    """MoodBridge transport writing straight into this site's database."""

    def __init__(self, db):
        self.db = db

    def save(self, entry) -> None:
        try:
            upsert_mood_entry(entry, db=self.db)
        except sqlite3.Error as exc:
            raise PersistenceError(f"mood_entry upsert failed: {exc}") from exc

    def load(self) -> list[dict]:
        try:
            return [e.to_dict() for e in get_mood_entries(db=self.db)]
        except sqlite3.Error as exc:
            raise PersistenceError(f"mood_entry read failed: {exc}") from exc


def heatmap_session(*, db, links=None) -> HeatmapSession:
    """A session whose store is seeded from, and saves back to, *db*."""
    bridge = MoodBridge(DbMoodTransport(db), submit=run_inline)
    store = MoodStore(bridge=bridge)
    store.init(get_mood_entries(db=db))
    return HeatmapSession(store, links=links)


def sample_mood_seeds(links, today: date) -> list[dict]:
    """
    Placeholder entries for an empty tracker: diary days first, then a
    sprinkle of earlier days. Rendered only, never stored.
    """
    seeds = []
    for idx, (day, link) in enumerate(links.items()):
        seeds.append(
            {
                "date": day,
                "mood": MOODS[idx % len(MOODS)],
                "intensity": 2,
                "note": f"Diary: {link.title}",
            }
        )
    for i in range(30):
        day = date_key(today - timedelta(days=i * 4 + i % 3))
        if day in links:
            continue
        seeds.append(
            {
                "date": day,
                "mood": MOODS[(i + 2) % len(MOODS)],
                "intensity": i % 3 + 1,
                "note": "Quick mood note" if i % 5 == 0 else "",
            }
        )
    return seeds


###############################################################################
# Authentication (edit mode)
###############################################################################
def _issue_edit_token() -> str:
    return edit_signer.sign("edit").decode()


def edit_mode() -> bool:
    """True while the session carries an unexpired edit-mode stamp."""
    token = session.get("edit")
    if not token:
        return False
    try:
        edit_signer.unsign(token, max_age=EDIT_MODE_MAX_AGE)
    except SignatureExpired:
        return False
    except BadSignature:
        return False
    return True


def edit_required() -> None:
    if not edit_mode():
        abort(403)


def _csrf_token() -> str:
    """One token per session (rotates when the cookie does)."""
    return session.get("csrf", "")


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return

    # visitors (comments, unlock) carry no session token yet
    if not edit_mode():
        return

    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


def current_theme() -> str:
    theme = request.cookies.get("theme", THEMES[0])
    return theme if theme in THEMES else THEMES[0]


# Expose helpers to templates
app.jinja_env.globals.update(
    edit_mode=edit_mode,
    csrf_token=_csrf_token,
    current_theme=current_theme,
    colour_for=colour_for,
    mood_label=mood_label,
    r2_enabled=r2_is_configured,
    moods=MOODS,
    intensities=INTENSITIES,
    mood_palette=MOOD_PALETTE,
    post_types=POST_TYPES,
    avatar_positions=AVATAR_POSITIONS,
    themes=THEMES,
    version=__version__,
)


@app.context_processor
def inject_content():
    return {"content": site_content()}


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database tables (no-op when they exist)."""
    init_db()
    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"   {app.config['DATABASE']}\n")


@app.cli.group("mood")
def cli_mood():
    """Inspect or record mood entries."""


@cli_mood.command("set")
@click.argument("day")
@click.option("--mood", type=click.Choice(MOODS), help="Mood for the day.")
@click.option("--intensity", type=click.IntRange(1, 3), help="1 (light) to 3 (strong).")
@click.option("--note", help="Free-text note.")
@click.option("--remote", help="Base URL of a running site instead of the local DB.")
@click.option("--passphrase", envvar="ADMIN_PASSCODE", help="Edit-mode passphrase for --remote.")
def cli_mood_set(day, mood, intensity, note, remote, passphrase):
    """Record (or update) the mood for DAY (yyyy-mm-dd)."""
    if remote:
        transport = HttpMoodTransport(remote, passphrase=passphrase)
    else:
        transport = DbMoodTransport(get_db())

    store = MoodStore(bridge=MoodBridge(transport, submit=run_inline))
    try:
        store.init(transport.load())
    except PersistenceError as exc:
        raise click.ClickException(str(exc))

    try:
        entry = store.upsert(day, mood=mood, intensity=intensity, note=note)
    except MoodValidationError as exc:
        raise click.BadParameter(str(exc), param_hint="DAY/--mood/--intensity")

    if not store.last_save.result():
        raise click.ClickException(f"{entry.date}: could not be stored (see log).")
    click.secho(
        f"{entry.date}  {mood_label(entry.mood)} {entry.intensity}  {entry.note}".rstrip(),
        fg="green",
    )


@cli_mood.command("list")
@click.option("--year", type=int, help="Only show entries from this year.")
def cli_mood_list(year):
    """Print stored mood entries, newest first."""
    for entry in get_mood_entries(db=get_db()):
        if year and not entry.date.startswith(f"{year:04d}-"):
            continue
        click.echo(f"{entry.date}  {entry.mood:<8} {entry.intensity}  {entry.note}".rstrip())


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or content.navTitle }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
:root{--ink:#2f2a25;--sand:#f4f0e8;--blush:#e89aae;--card:rgba(255,255,255,.8)}
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;color:var(--ink);background:var(--sand);max-width:64rem;margin:auto;padding:1.5rem;line-height:1.6}
body.theme-beast{--ink:#ece6dc;--sand:#1d1a17;--card:rgba(40,36,32,.85)}
a{color:inherit}
.eyebrow{font-size:.75rem;text-transform:uppercase;letter-spacing:.35em;opacity:.6;margin:0}
.card{background:var(--card);border:1px solid rgba(0,0,0,.08);border-radius:1.5rem;padding:1.5rem;margin-bottom:1.5rem}
.nav{display:flex;flex-wrap:wrap;align-items:center;justify-content:space-between;gap:1rem;margin-bottom:2rem}
.nav-links{display:flex;gap:1.25rem}
.nav a[aria-current=page]{text-decoration:underline;text-underline-offset:.3em}
.badge{font-size:.7rem;letter-spacing:.2em;text-transform:uppercase;border:1px solid var(--blush);border-radius:1rem;padding:.15rem .6rem}
.editable{border:1px dashed var(--blush);border-radius:.75rem;padding:.5rem;margin:.5rem 0}
.editable input,.editable textarea,.editable select{width:100%;box-sizing:border-box}
.grid{display:grid;gap:1rem;grid-template-columns:repeat(auto-fill,minmax(12rem,1fr))}
.tile{aspect-ratio:2/3;border-radius:1.5rem;background-size:cover;background-position:center}
.toast{position:fixed;top:1rem;right:1rem;background:#323232;color:#fff;padding:.75rem 1rem;border-radius:.4rem;font-size:.9rem;z-index:999}
.mood-grid{display:grid;grid-auto-flow:column;gap:3px;overflow:auto;padding:1rem}
.mood-column{display:flex;flex-direction:column;gap:3px}
.mood-cell{position:relative;display:block;width:14px;height:14px;border-radius:50%;background:var(--mood-color);box-shadow:var(--mood-shadow,none);transform:translate(var(--mood-jx,0),var(--mood-jy,0));animation:mood-in .4s ease both;animation-delay:var(--wave-delay,0ms);text-decoration:none}
.mood-cell.has-entry{animation-delay:calc(var(--wave-delay,0ms) + var(--beast-delay,0ms))}
.mood-cell:hover{transform:translate(var(--mood-jx,0),var(--mood-jy,0)) scale(1.35)}
.mood-pad{visibility:hidden}
.mood-link{position:absolute;right:-4px;bottom:-4px;font-size:8px;pointer-events:none}
.mood-tooltip{position:fixed;left:0;top:0;z-index:9999;width:16rem;background:#fff;color:#2f2a25;border-radius:1rem;padding:1rem;box-shadow:0 12px 28px rgba(0,0,0,.12);pointer-events:none;will-change:transform}
.mood-modal{position:fixed;inset:0;z-index:50;display:flex;align-items:center;justify-content:center;background:rgba(240,238,232,.6);backdrop-filter:blur(8px)}
.mood-modal form{background:var(--card);border-radius:2rem;padding:1.5rem;width:min(28rem,92vw)}
.mood-choice{display:inline-flex;align-items:center;gap:.3rem;margin:.2rem .4rem}
@keyframes mood-in{from{opacity:0;transform:scale(.4)}to{opacity:1}}
</style>
<body class="theme-{{ current_theme() }}">
{% macro editable(action, value, label, multiline=False, extra={}, cls="") -%}
    {% if edit_mode() %}
    <form method="post" class="editable {{ cls }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input type="hidden" name="action" value="{{ action }}">
        {% for k, v in extra.items() %}
        <input type="hidden" name="{{ k }}" value="{{ v }}">
        {% endfor %}
        <label class="eyebrow">{{ label }}</label>
        {% if multiline %}
        <textarea name="value" rows="4">{{ value }}</textarea>
        {% else %}
        <input name="value" value="{{ value }}">
        {% endif %}
        <button type="submit">Save</button>
    </form>
    {% else %}
    <div class="{{ cls }}">{{ value }}</div>
    {% endif %}
{%- endmacro %}
<header class="nav">
    <div>
        <p class="eyebrow">{{ content.navEyebrow }}</p>
        <a href="{{ url_for('index') }}" style="text-decoration:none;font-size:1.6rem;font-weight:700;">
            {{ content.navTitle }}</a>
    </div>
    <nav aria-label="Primary" class="nav-links">
        {% for ep, label in [('index','Home'),('diary','Diary'),('gallery','Gallery'),('about','About'),('admin','Admin')] %}
        <a href="{{ url_for(ep) }}" {% if request.endpoint == ep %}aria-current="page"{% endif %}>{{ label }}</a>
        {% endfor %}
    </nav>
    <div style="display:flex;gap:.5rem;align-items:center;">
        {% if edit_mode() %}<span class="badge">Edit mode</span>{% endif %}
        {% for t in themes if t != current_theme() %}
        <form method="post" action="{{ url_for('set_theme', name=t) }}" style="margin:0">
            <input type="hidden" name="csrf" value="{{ csrf_token() }}">
            <input type="hidden" name="next" value="{{ request.full_path }}">
            <button type="submit">{{ t|capitalize }} theme</button>
        </form>
        {% endfor %}
    </div>
</header>
{% with msgs = get_flashed_messages() %}
{% if msgs %}
<div role="status" aria-live="polite" class="toast">{{ msgs|join('<br>'|safe) }}</div>
{% endif %}
{% endwith %}
<main id="main-content">
"""

TEMPL_EPILOG = """
</main>
<footer style="margin-top:3rem;font-size:.8em;opacity:.6;">
    {{ content.navTitle }} · v{{ version }}
</footer>
</body>
</html>
"""


###############################################################################
# Form helpers
###############################################################################
def _form_value(field: str = "value") -> str:
    return (request.form.get(field) or "").strip()


def _back(endpoint: str, **values):
    return redirect(url_for(endpoint, **values), code=303)


def _save_text_action(action: str) -> bool:
    """Handle one of TEXT_ACTIONS; False if *action* is not one."""
    if action not in TEXT_ACTIONS:
        return False
    key, label, may_be_empty = TEXT_ACTIONS[action]
    value = _form_value()
    if not value and not may_be_empty:
        flash(f"{label} cannot be empty.")
        return True
    update_content(key, value)
    flash(f"{label} updated.")
    return True


###############################################################################
# Home + heatmap
###############################################################################
@app.route("/", methods=["GET", "POST"])
def index():
    db = get_db()

    if request.method == "POST":
        edit_required()
        if not _save_text_action(request.form.get("action", "")):
            abort(400)
        return _back("index")

    today = utc_now().date()
    diary_posts = get_posts_by_type("diary", db=db)
    links = diary_links(diary_posts)

    stored = get_mood_entries(db=db)
    store = MoodStore()
    store.init(stored or sample_mood_seeds(links, today))
    hm = HeatmapSession(store, links=links)

    options = year_options([*store.dates(), *links], today.year)
    year = pick_year(request.args.get("year", type=int) or today.year, options)
    columns = grid_cells(year, store, links, seed=new_reveal_seed())

    day = request.args.get("day", "").strip()
    if day and edit_mode():
        try:
            hm.open(day)
        except MoodValidationError:
            abort(404)

    photos = [
        {"id": f"{p['id']}-{i}", "image": img, "title": p["title"]}
        for p in get_posts_by_type("photo", db=db)
        for i, img in enumerate(p["images"])
    ][:LATEST_PHOTOS]

    return render_template_string(
        TEMPL_INDEX,
        columns=columns,
        years=options,
        year=year,
        modal=hm.modal,
        sample=not stored,
        diary_entries=diary_posts[:LATEST_DIARY],
        photos=photos,
    )


@app.route("/moods", methods=["POST"])
def save_mood():
    """Commit the heatmap modal's draft for one day."""
    edit_required()
    db = get_db()
    day = _form_value("date")
    hm = heatmap_session(db=db)

    try:
        hm.open(day)
        if request.form.get("mood"):
            hm.choose_mood(request.form["mood"])
        if request.form.get("intensity"):
            hm.choose_intensity(request.form["intensity"])
        hm.edit_note(request.form.get("note", ""))
        entry = hm.save()
    except MoodValidationError as exc:
        flash(str(exc))
        try:
            year = parse_date_key(day).year
        except MoodValidationError:
            return _back("index")
        return redirect(url_for("index", year=year, day=day) + "#mood", code=303)

    if hm.store.last_save is not None and not hm.store.last_save.result():
        flash(f"{entry.date} could not be stored. Please try again.")
    else:
        flash(f"{mood_label(entry.mood)} saved for {entry.date}.")
    return redirect(url_for("index", year=entry.date[:4]) + "#mood", code=303)


TEMPL_INDEX = wrap("""
<section class="card">
    {{ editable('hero_eyebrow', content.heroEyebrow, 'Hero eyebrow', cls='eyebrow') }}
    {{ editable('hero_title', content.heroTitle, 'Hero title', cls='hero-title') }}
    {{ editable('home_intro', content.homeIntroduction, 'Home introduction', multiline=True) }}
</section>

<section id="mood" class="card">
    <div style="display:flex;flex-wrap:wrap;justify-content:space-between;gap:1rem;">
        <p class="eyebrow">Mood tracker{% if sample %} · sample{% endif %}</p>
        <nav aria-label="Year" style="display:flex;gap:.8rem;">
            {% for y in years %}
            <a href="{{ url_for('index', year=y) }}#mood"
               {% if y == year %}aria-current="true" style="font-weight:700"{% endif %}>{{ y }}</a>
            {% endfor %}
        </nav>
        <div style="display:flex;flex-wrap:wrap;gap:.6rem;font-size:.7rem;">
            {% for m in moods %}
            <span>
                {% for lvl in intensities %}
                <span class="mood-cell" style="display:inline-block;--mood-color:{{ colour_for(m, lvl) }};animation:none"
                      title="{{ mood_label(m) }} {{ lvl }}"></span>
                {% endfor %}
                {{ mood_label(m) }}
            </span>
            {% endfor %}
        </div>
    </div>

    <div class="mood-grid" id="mood-grid">
        {% for col in columns %}
        <div class="mood-column">
            {% for c in col %}
            {% if c.date_key %}
            {% set style = "--mood-color:%s;--mood-jx:%.2fpx;--mood-jy:%.2fpx;--wave-delay:%dms;--beast-delay:%dms;--mood-shadow:%s"
                           |format(c.colour, c.jitter[0], c.jitter[1], c.wave_delay, c.reveal_delay, c.glow or 'none') %}
            {% if edit_mode() %}
            <a class="mood-cell{% if c.entry %} has-entry{% endif %}"
               href="{{ url_for('index', year=year, day=c.date_key) }}#mood"
            {% else %}
            <span class="mood-cell{% if c.entry %} has-entry{% endif %}"
            {% endif %}
               aria-label="{{ c.date_key }}"
               data-date="{{ c.date_key }}"
               data-mood="{{ mood_label(c.entry.mood) if c.entry else '' }}"
               data-note="{{ c.entry.note if c.entry else '' }}"
               data-diary-url="{{ c.diary.url if c.diary else '' }}"
               data-diary-title="{{ c.diary.title if c.diary else '' }}"
               style="{{ style }}">
                {% if c.linked %}<span class="mood-link">↗</span>{% endif %}
            {% if edit_mode() %}</a>{% else %}</span>{% endif %}
            {% else %}
            <span class="mood-cell mood-pad"></span>
            {% endif %}
            {% endfor %}
        </div>
        {% endfor %}
    </div>
</section>

<div class="mood-tooltip" id="mood-tooltip" hidden aria-hidden="true">
    <p class="eyebrow" data-tip="date"></p>
    <p data-tip="mood" style="font-weight:600;margin:.25rem 0"></p>
    <p data-tip="note" style="white-space:pre-wrap;font-size:.8rem;margin:.25rem 0"></p>
    <p data-tip="empty" style="font-size:.8rem;margin:.25rem 0">No record yet. Click a day to add.</p>
    <p data-tip="diary" style="font-size:.8rem;margin:.25rem 0"></p>
</div>

{% if modal %}
<div class="mood-modal">
    <form method="post" action="{{ url_for('save_mood') }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input type="hidden" name="date" value="{{ modal.date }}">
        <p class="eyebrow">{{ modal.date }}</p>
        <fieldset style="border:0;padding:0">
            {% for m in moods %}
            <label class="mood-choice">
                <input type="radio" name="mood" value="{{ m }}" {% if modal.draft.mood == m %}checked{% endif %}>
                <span class="mood-cell" style="display:inline-block;--mood-color:{{ colour_for(m, 2) }};animation:none"></span>
                {{ mood_label(m) }}
            </label>
            {% endfor %}
        </fieldset>
        <fieldset style="border:0;padding:0">
            <span class="eyebrow">Shade</span>
            {% for lvl in intensities %}
            <label class="mood-choice">
                <input type="radio" name="intensity" value="{{ lvl }}" {% if modal.draft.intensity == lvl %}checked{% endif %}>
                {{ lvl }}
            </label>
            {% endfor %}
        </fieldset>
        <label class="eyebrow" for="mood-note">Note</label>
        <textarea id="mood-note" name="note" rows="3" style="width:100%"
                  placeholder="Capture how you felt today...">{{ modal.draft.note }}</textarea>
        <div style="display:flex;gap:1rem;align-items:center;margin-top:1rem;">
            <button type="submit">Save</button>
            <a href="{{ url_for('index', year=modal.date[:4]) }}#mood">Cancel</a>
            {% if modal.diary %}
            <a href="{{ modal.diary.url }}" style="margin-left:auto">Diary ↗</a>
            {% endif %}
        </div>
    </form>
</div>
{% endif %}

<script>
(() => {
    const grid = document.getElementById('mood-grid');
    const tip = document.getElementById('mood-tooltip');
    if (!grid || !tip) return;

    const field = (name) => tip.querySelector(`[data-tip="${name}"]`);
    let pos = {x: 0, y: 0};
    let frame = null;
    let shown = false;

    const place = () => {
        tip.style.transform = `translate3d(${pos.x + 12}px, ${pos.y + 12}px, 0)`;
    };
    const schedule = (x, y) => {
        pos = {x, y};
        if (!shown || frame !== null) return;
        frame = requestAnimationFrame(() => {
            frame = null;
            if (shown) place();
        });
    };
    const hide = () => {
        shown = false;
        tip.hidden = true;
        if (frame !== null) {
            cancelAnimationFrame(frame);
            frame = null;
        }
    };

    grid.addEventListener('mousemove', (ev) => schedule(ev.clientX, ev.clientY));
    grid.addEventListener('mouseleave', (ev) => {
        if (ev.relatedTarget && tip.contains(ev.relatedTarget)) return;
        hide();
    });
    tip.addEventListener('mouseleave', (ev) => {
        if (ev.relatedTarget && grid.contains(ev.relatedTarget)) return;
        hide();
    });

    grid.querySelectorAll('[data-date]').forEach((cell) => {
        cell.addEventListener('mouseenter', (ev) => {
            const d = cell.dataset;
            field('date').textContent = d.date;
            field('mood').textContent = d.mood;
            field('note').textContent = d.note.trim();
            field('diary').textContent = d.diaryTitle ? `${d.diaryTitle} ↗` : '';
            field('empty').hidden = Boolean(d.mood || d.diaryUrl);
            pos = {x: ev.clientX, y: ev.clientY};
            shown = true;
            tip.hidden = false;
            place();
        });
    });
})();
</script>

<section>
    <p class="eyebrow">Latest diary entries</p>
    <h2>Freshly inked pages <a href="{{ url_for('diary') }}" style="font-size:.6em">View timeline</a></h2>
    <div class="grid" style="grid-template-columns:repeat(auto-fill,minmax(20rem,1fr))">
        {% for e in diary_entries %}
        <article class="card">
            <p class="eyebrow">{{ e.created_at|date }}</p>
            <h3>{{ e.title }}</h3>
            <p>{{ e.content|plain(220) }}</p>
            <a href="{{ url_for('post_detail', post_id=e.id) }}">Read entry</a>
        </article>
        {% endfor %}
    </div>
</section>

<section>
    <p class="eyebrow">Recent film roll</p>
    <h2>Photo thumbnails <a href="{{ url_for('gallery') }}" style="font-size:.6em">Open gallery</a></h2>
    <div class="grid" style="grid-template-columns:repeat(auto-fill,minmax(8rem,1fr))">
        {% for p in photos %}
        <div class="tile" aria-label="{{ p.title }}"
             style="background-image:url('{{ p.image|img('?auto=format&fit=crop&w=600&q=80') }}')"></div>
        {% endfor %}
    </div>
</section>
""")


###############################################################################
# Diary
###############################################################################
@app.route("/diary", methods=["GET", "POST"])
def diary():
    db = get_db()

    if request.method == "POST":
        edit_required()
        action = request.form.get("action", "")

        if action == "create":
            title, content = _form_value("title"), _form_value("content")
            cover = _form_value("cover")
            if not title or not content:
                flash("Please provide both a title and body for the diary entry.")
            else:
                insert_post(
                    title=title,
                    post_type="diary",
                    content=content,
                    images=[cover] if cover else [],
                    db=db,
                )
                flash("Diary entry added to the timeline.")

        elif action in ("update_content", "update_cover"):
            post = get_post(_form_value("post_id"), db=db)
            if not post or post["type"] != "diary":
                flash("Diary entry not found.")
            elif action == "update_content":
                text = _form_value()
                if not text:
                    flash("Content cannot be empty.")
                else:
                    update_post(post["id"], content=text, db=db)
                    flash("Diary entry updated.")
            else:
                cover = _form_value()
                rest = post["images"][1:]
                replace_images(post["id"], [cover, *rest] if cover else rest, db=db)
                flash("Cover updated.")
        else:
            abort(400)
        return _back("diary")

    entries = [
        {**p, "year": p["created_at"][:4], "month": f"{datetime.fromisoformat(p['created_at']):%b}"}
        for p in get_posts_by_type("diary", db=db)
    ]
    return render_template_string(TEMPL_DIARY, entries=entries, title="Diary")


TEMPL_DIARY = wrap("""
<p class="eyebrow">Diary Timeline</p>
<h1>Sliding chronology of reflections</h1>

{% if edit_mode() %}
<form method="post" class="card">
    <p class="eyebrow">Add a fresh entry</p>
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <input type="hidden" name="action" value="create">
    <input name="title" placeholder="Title" style="width:100%">
    <textarea name="content" rows="6" placeholder="Write in Markdown" style="width:100%"></textarea>
    <input name="cover" placeholder="Cover image URL (optional)" style="width:100%">
    <button type="submit">Publish</button>
</form>
{% endif %}

{% for e in entries %}
{% if loop.first or e.year != loop.previtem.year %}<h2>{{ e.year }}</h2>{% endif %}
<article class="card">
    <p class="eyebrow">{{ e.month }}</p>
    <h3><a href="{{ url_for('post_detail', post_id=e.id) }}">{{ e.title }}</a></h3>
    {% if e.images %}
    <img src="{{ e.images[0]|img('?auto=format&fit=crop&w=900&q=80') }}" alt="{{ e.title }}"
         style="max-width:100%;border-radius:1rem">
    {% endif %}
    {% if edit_mode() %}
    {{ editable('update_content', e.content, 'Content', multiline=True, extra={'post_id': e.id}) }}
    {{ editable('update_cover', e.images[0] if e.images else '', 'Cover URL', extra={'post_id': e.id}) }}
    {% else %}
    <p>{{ e.content|plain(320) }}</p>
    {% endif %}
</article>
{% else %}
<p>No diary entries yet.</p>
{% endfor %}
""")


###############################################################################
# Gallery
###############################################################################
def _parse_image_urls(raw: str) -> list[str]:
    """JSON list from the uploader, or one URL per line."""
    raw = (raw or "").strip()
    if not raw:
        return []
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return []
        if not isinstance(parsed, list):
            return []
        return [u.strip() for u in parsed if isinstance(u, str) and u.strip()]
    return [ln.strip() for ln in raw.splitlines() if ln.strip()]


@app.route("/gallery", methods=["GET", "POST"])
def gallery():
    db = get_db()

    if request.method == "POST":
        edit_required()
        action = request.form.get("action", "")

        if _save_text_action(action):
            pass
        elif action == "create":
            images = _parse_image_urls(request.form.get("image_urls", ""))
            if not images:
                flash("Add at least one image for the gallery entry.")
            else:
                today = utc_now().date()
                frames = "frames" if len(images) > 1 else "frame"
                insert_post(
                    title=f"Gallery upload {today:%Y-%m-%d}",
                    post_type="photo",
                    content=f"Imported {len(images)} new {frames}.",
                    images=images,
                    db=db,
                )
                flash("Photo gallery updated.")
        elif action == "update_image":
            post = get_post(_form_value("post_id"), db=db)
            index = request.form.get("index", type=int)
            if not post or post["type"] != "photo":
                flash("Gallery post not found.")
            elif index is None or not 0 <= index < len(post["images"]):
                flash("Image slot not available.")
            else:
                url = _form_value()
                images = list(post["images"])
                if url:
                    images[index] = url
                else:
                    del images[index]
                replace_images(post["id"], images, db=db)
                flash("Gallery image updated.")
        else:
            abort(400)
        return _back("gallery")

    tiles = [
        {
            "post_id": p["id"],
            "index": i,
            "title": f"{p['title']} · Frame {i + 1}",
            "image": img,
        }
        for p in get_posts_by_type("photo", db=db)
        for i, img in enumerate(p["images"])
    ]
    return render_template_string(TEMPL_GALLERY, tiles=tiles, title="Gallery")


TEMPL_GALLERY = wrap("""
{{ editable('gallery_eyebrow', content.galleryEyebrow, 'Gallery eyebrow', cls='eyebrow') }}
{{ editable('gallery_title', content.galleryTitle, 'Gallery title', cls='hero-title') }}
{{ editable('gallery_description', content.galleryDescription, 'Gallery description', multiline=True) }}

{% if edit_mode() %}
<form method="post" class="card">
    <p class="eyebrow">Add to the gallery</p>
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <input type="hidden" name="action" value="create">
    <textarea name="image_urls" rows="3" placeholder="One image URL per line" style="width:100%"></textarea>
    {% if r2_enabled() %}
    <input type="file" accept="image/*" class="img-upload-input">
    <span class="img-upload-status"></span>
    {% endif %}
    <button type="submit">Publish</button>
</form>
{% endif %}

<div class="grid">
    {% for t in tiles %}
    <figure style="margin:0">
        <a href="{{ t.image }}"><div class="tile" aria-label="{{ t.title }}"
             style="background-image:url('{{ t.image|img('?auto=format&fit=crop&w=900&q=80') }}')"></div></a>
        <figcaption style="font-size:.8em">{{ t.title }}</figcaption>
        {% if edit_mode() %}
        {{ editable('update_image', t.image, 'Image URL', extra={'post_id': t.post_id, 'index': t.index}) }}
        {% endif %}
    </figure>
    {% endfor %}
</div>

{% if edit_mode() and r2_enabled() %}
<script>
(() => {
    const input = document.querySelector('.img-upload-input');
    const status = document.querySelector('.img-upload-status');
    const ta = document.querySelector('textarea[name="image_urls"]');
    const csrf = document.querySelector('input[name="csrf"]')?.value || '';
    if (!input || !ta) return;
    input.multiple = true;
    input.addEventListener('change', async () => {
        for (const file of [...input.files]) {
            if (status) status.textContent = `Uploading ${file.name}...`;
            const fd = new FormData();
            fd.append('file', file);
            try {
                const res = await fetch('{{ url_for("api_upload") }}', {
                    method: 'POST', headers: {'X-CSRFToken': csrf}, body: fd,
                });
                const data = await res.json();
                if (!res.ok || !data?.url) throw new Error(data?.error || 'Upload failed');
                ta.value = (ta.value.trim() + '\\n' + data.url).trim();
                if (status) status.textContent = 'Uploaded.';
            } catch (err) {
                if (status) status.textContent = err?.message || 'Upload failed.';
                break;
            }
        }
        input.value = '';
    });
})();
</script>
{% endif %}
""")


###############################################################################
# About
###############################################################################
@app.route("/about", methods=["GET", "POST"])
def about():
    if request.method == "POST":
        edit_required()
        action = request.form.get("action", "")

        if _save_text_action(action):
            pass
        elif action == "avatar_position":
            position = _form_value()
            if position not in AVATAR_POSITIONS:
                flash("Please choose an alignment.")
            else:
                update_content("avatarPosition", position)
                flash("Avatar positioning updated.")
        elif action in ("milestone_year", "milestone_description"):
            value = _form_value()
            field = action.split("_", 1)[1]
            if not value:
                flash(f"{field.capitalize()} cannot be empty.")
            else:
                update_milestone(_form_value("id"), **{field: value})
                flash("Milestone updated.")
        elif action == "milestone_add":
            add_milestone(after_id=_form_value("after") or None)
            flash("Milestone added.")
        elif action == "milestone_delete":
            delete_milestone(_form_value("id"))
            flash("Milestone removed.")
        elif action == "contact_add":
            add_contact_link()
            flash("Contact link added.")
        elif action == "contact_update":
            update_contact_link(
                _form_value("id"),
                label=_form_value("label"),
                value=_form_value("link_value"),
                href=_form_value("href"),
                icon=_form_value("icon"),
            )
            flash("Contact link updated.")
        elif action == "contact_delete":
            delete_contact_link(_form_value("id"))
            flash("Contact link removed.")
        else:
            abort(400)
        return _back("about")

    return render_template_string(TEMPL_ABOUT, title="About")


TEMPL_ABOUT = wrap("""
{% macro small_form(action, label, fields={}) -%}
<form method="post" style="display:inline">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <input type="hidden" name="action" value="{{ action }}">
    {% for k, v in fields.items() %}<input type="hidden" name="{{ k }}" value="{{ v }}">{% endfor %}
    <button type="submit">{{ label }}</button>
</form>
{%- endmacro %}

<section class="card" style="display:grid;grid-template-columns:auto 1fr;gap:2rem;">
    <div>
        <img src="{{ content.avatarUrl }}" alt="Avatar" width="160" height="160"
             style="border-radius:50%;object-fit:cover;object-position:{{ content.avatarPosition }}">
        {% if edit_mode() %}
        {{ editable('avatar_url', content.avatarUrl, 'Avatar URL') }}
        <form method="post" class="editable">
            <input type="hidden" name="csrf" value="{{ csrf_token() }}">
            <input type="hidden" name="action" value="avatar_position">
            <select name="value">
                {% for p in avatar_positions %}
                <option value="{{ p }}" {% if p == content.avatarPosition %}selected{% endif %}>{{ p }}</option>
                {% endfor %}
            </select>
            <button type="submit">Align</button>
        </form>
        {% endif %}
    </div>
    <div>
        <p class="eyebrow">About</p>
        <h1>A slow-crafted studio practice</h1>
        {{ editable('about_bio', content.aboutBio, 'Short bio', multiline=True) }}
    </div>
</section>

<section>
    <p class="eyebrow">Life timeline</p>
    <h2>Milestones &amp; studio shifts</h2>
    {% if edit_mode() %}{{ small_form('milestone_add', 'Add milestone') }}{% endif %}
    {% for m in content.milestones %}
    <div class="card">
        {{ editable('milestone_year', m.year, 'Year', extra={'id': m.id}) }}
        {{ editable('milestone_description', m.description, 'Description', multiline=True, extra={'id': m.id}) }}
        {% if edit_mode() %}
        {{ small_form('milestone_delete', 'Delete', {'id': m.id}) }}
        {{ small_form('milestone_add', 'Add after', {'after': m.id}) }}
        {% endif %}
    </div>
    {% endfor %}
</section>

<section class="card">
    <p class="eyebrow">Stay in touch</p>
    <h3>Contacts &amp; social dispatches</h3>
    <ul>
    {% for c in content.contactLinks %}
        <li>
        {% if edit_mode() %}
        <form method="post" class="editable">
            <input type="hidden" name="csrf" value="{{ csrf_token() }}">
            <input type="hidden" name="action" value="contact_update">
            <input type="hidden" name="id" value="{{ c.id }}">
            <input name="icon" value="{{ c.icon }}" placeholder="Icon">
            <input name="label" value="{{ c.label }}" placeholder="Label">
            <input name="link_value" value="{{ c.value }}" placeholder="Text">
            <input name="href" value="{{ c.href }}" placeholder="https://">
            <button type="submit">Save</button>
        </form>
        {{ small_form('contact_delete', 'Remove', {'id': c.id}) }}
        {% else %}
        {{ c.icon }} <strong>{{ c.label }}</strong>
        {% if c.href %}<a href="{{ c.href }}">{{ c.value }}</a>{% else %}{{ c.value }}{% endif %}
        {% endif %}
        </li>
    {% endfor %}
    </ul>
    {% if edit_mode() %}{{ small_form('contact_add', 'Add contact link') }}{% endif %}
</section>
""")


###############################################################################
# Admin + edit mode
###############################################################################
@app.route("/admin", methods=["GET", "POST"])
def admin():
    if request.method == "POST":
        edit_required()
        action = request.form.get("action", "")

        if _save_text_action(action):
            pass
        elif action == "notes":
            notes = [ln.strip() for ln in request.form.get("value", "").splitlines()]
            update_admin_notes([n for n in notes if n])
            flash("Notes updated.")
        elif action == "create_post":
            title, content = _form_value("title"), _form_value("content")
            post_type = _form_value("type")
            if not title or not content or post_type not in POST_TYPES:
                flash("Please complete all required fields.")
            else:
                images = (
                    [u.strip() for u in request.form.get("images", "").split(",") if u.strip()]
                    if post_type == "photo"
                    else []
                )
                insert_post(
                    title=title, post_type=post_type, content=content, images=images, db=get_db()
                )
                flash("Post created.")
        else:
            abort(400)
        return _back("admin")

    return render_template_string(TEMPL_ADMIN, title="Admin")


@app.route("/admin/unlock", methods=["POST"])
@rate_limit(max_requests=5, window=60)
def unlock():
    payload = request.get_json(silent=True) if request.is_json else None
    if payload is not None and not isinstance(payload, dict):
        payload = {}
    source = payload if payload is not None else request.form
    code = str(source.get("passcode") or "").strip()

    if not secrets.compare_digest(code.encode(), admin_passcode().encode()):
        app.logger.warning("Rejected edit-mode passphrase from %s", request.remote_addr)
        if payload is not None:
            return {"error": "Incorrect passcode."}, 403
        flash("Incorrect passcode. Please try again.")
        return _back("admin")

    session.clear()
    session.permanent = True
    session["edit"] = _issue_edit_token()
    session["csrf"] = secrets.token_hex(16)
    if payload is not None:
        return {"ok": True, "csrf": session["csrf"]}
    flash("Edit mode enabled for this browser.")
    return _back("admin")


@app.route("/admin/lock", methods=["POST"])
def lock():
    session.pop("edit", None)
    session.pop("csrf", None)
    flash("Edit mode disabled.")
    return _back("admin")


TEMPL_ADMIN = wrap("""
<p class="eyebrow">Admin studio</p>
<h1>Editorial control room</h1>

<div class="grid" style="grid-template-columns:repeat(auto-fill,minmax(22rem,1fr))">
    {% if edit_mode() %}
    <section class="card">
        <p class="eyebrow">Current status</p>
        <h2>Edit mode unlocked</h2>
        <form method="post" action="{{ url_for('lock') }}">
            <input type="hidden" name="csrf" value="{{ csrf_token() }}">
            <button type="submit">Close edit mode</button>
        </form>
        {{ editable('nav_eyebrow', content.navEyebrow, 'Nav eyebrow') }}
        {{ editable('nav_title', content.navTitle, 'Nav title') }}
    </section>
    {% else %}
    <form method="post" action="{{ url_for('unlock') }}" class="card">
        <p class="eyebrow">Edit mode access</p>
        <h2>Enter passphrase</h2>
        <input type="password" name="passcode" placeholder="Enter passphrase" required style="width:100%">
        <button type="submit">Unlock edit mode</button>
    </form>
    {% endif %}

    <section class="card">
        <p class="eyebrow">Notes</p>
        {% if edit_mode() %}
        {{ editable('notes', content.adminNotes|join('\\n'), 'One note per line', multiline=True) }}
        {% else %}
        <ul>{% for n in content.adminNotes %}<li>{{ n }}</li>{% endfor %}</ul>
        {% endif %}
    </section>
</div>

{% if edit_mode() %}
<form method="post" class="card">
    <p class="eyebrow">New post</p>
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <input type="hidden" name="action" value="create_post">
    <input name="title" placeholder="Title" style="width:100%">
    <select name="type">
        {% for t in post_types %}<option value="{{ t }}">{{ t }}</option>{% endfor %}
    </select>
    <textarea name="content" rows="6" placeholder="Markdown" style="width:100%"></textarea>
    <input name="images" placeholder="Image URLs, comma separated (photo posts)" style="width:100%">
    <button type="submit">Publish</button>
</form>
{% endif %}
""")


###############################################################################
# Post detail + comments
###############################################################################
@app.route("/post/<post_id>")
def post_detail(post_id):
    db = get_db()
    post = get_post(post_id, db=db)
    if not post:
        abort(404)
    return render_template_string(
        TEMPL_POST,
        post=post,
        comments=get_comments(post_id, db=db),
        title=post["title"],
    )


@app.route("/post/<post_id>/comments", methods=["POST"])
@rate_limit(max_requests=10, window=60)
def add_comment(post_id):
    db = get_db()
    if not get_post(post_id, db=db):
        abort(404)
    name, text = _form_value("name"), _form_value("text")
    if not name or not text:
        flash("Please add your name and a comment.")
    else:
        insert_comment(post_id, name=name, text=text, db=db)
        flash("Thanks for leaving a note!")
    return redirect(url_for("post_detail", post_id=post_id) + "#comments", code=303)


TEMPL_POST = wrap("""
<article class="card">
    <p class="eyebrow"><span class="badge">{{ post.type }}</span> {{ post.created_at|date }}</p>
    <h1>{{ post.title }}</h1>
    {% if post.type != 'photo' and post.images %}
    <img src="{{ post.images[0]|img('?auto=format&fit=crop&w=1400&q=90') }}" alt="{{ post.title }}"
         style="max-width:100%;border-radius:1.5rem">
    {% endif %}
    <div class="e-content">{{ post.content|md }}</div>
    {% if post.type == 'photo' %}
    <div class="grid">
        {% for img in post.images %}
        <img src="{{ img|img('?auto=format&fit=crop&w=900&q=80') }}"
             alt="{{ post.title }} photo {{ loop.index }}" style="width:100%;border-radius:1.5rem">
        {% endfor %}
    </div>
    {% endif %}
</article>

<section id="comments" class="card">
    <p class="eyebrow">Comments</p>
    {% for c in comments %}
    <div style="margin-bottom:1rem">
        <strong>{{ c.name }}</strong> <small>{{ c.created_at|date }}</small>
        <p style="white-space:pre-wrap;margin:.25rem 0">{{ c.text }}</p>
    </div>
    {% else %}
    <p>No notes yet.</p>
    {% endfor %}
    <form method="post" action="{{ url_for('add_comment', post_id=post.id) }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input name="name" placeholder="Your name" style="width:100%">
        <textarea name="text" rows="3" placeholder="Leave a note" style="width:100%"></textarea>
        <button type="submit">Send</button>
    </form>
</section>
""")


###############################################################################
# Theme
###############################################################################
@app.route("/theme/<name>", methods=["POST"])
def set_theme(name):
    if name not in THEMES:
        abort(404)
    target = request.form.get("next") or url_for("index")
    if not target.startswith("/") or target.startswith("//"):
        target = url_for("index")
    resp = redirect(target, code=303)
    resp.set_cookie("theme", name, max_age=THEME_MAX_AGE, samesite="Lax")
    return resp


###############################################################################
# JSON API
###############################################################################
@app.route("/api/moods", methods=["GET", "POST"])
def api_moods():
    db = get_db()
    if request.method == "GET":
        return jsonify([e.to_dict() for e in get_mood_entries(db=db)])

    edit_required()
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return {"error": "Expected a JSON object."}, 400
    try:
        entry = validate_entry(payload)
    except MoodValidationError as exc:
        return {"error": str(exc)}, 400

    try:
        upsert_mood_entry(entry, db=db)
    except sqlite3.Error:
        app.logger.exception("Failed to save mood entry %s", entry.date)
        return {"error": "Failed to save entry"}, 500
    return {"ok": True, "entry": entry.to_dict()}


@app.route("/api/posts", methods=["GET", "POST"])
def api_posts():
    db = get_db()
    if request.method == "GET":
        return jsonify(
            [
                {k: p[k] for k in ("id", "title", "type", "content", "created_at", "images")}
                for p in get_posts(db=db)
            ]
        )

    edit_required()
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return {"error": "Expected a JSON object."}, 400
    title =str(payload.get("title") or "").strip()
    post_type = str(payload.get("type") or "article").strip()
    if not title:
        return {"error": "title is required"}, 400
    if post_type not in POST_TYPES:
        return {"error": f"type must be one of {', '.join(POST_TYPES)}"}, 400
    post = insert_post(
        title=title,
        post_type=post_type,
        content=str(payload.get("content") or ""),
        db=db,
    )
    return {"ok": True, "id": post["id"], "created_at": post["created_at"]}, 201


@app.route("/api/upload", methods=["POST"])
def api_upload():
    edit_required()

    cfg = r2_config()
    if not r2_is_configured(cfg):
        return {"error": "Image uploads are not configured."}, 400

    if "file" not in request.files:
        return {"error": "file is required"}, 400

    f = request.files["file"]
    if not f.filename:
        return {"error": "No file selected."}, 400

    mime = (f.mimetype or "").lower()
    if mime not in IMAGE_MIMES:
        return {"error": "Only image uploads are allowed."}, 415

    clen = request.content_length
    if clen and clen > UPLOAD_MAX_BYTES:
        return {"error": "File too large (max 10MB)"}, 413

    ext = Path(secure_filename(f.filename)).suffix.lower()
    key = f"uploads/{utc_now().strftime('%Y/%m/%d')}/{uuid.uuid4().hex}{ext}"

    try:
        client = _r2_client(cfg)
        f.stream.seek(0)
        client.upload_fileobj(
            f.stream,
            cfg["R2_BUCKET"],
            key,
            ExtraArgs={"ContentType": mime},
        )
    except (BotoCoreError, ClientError):
        app.logger.exception("R2 upload failed")
        return {"error": "Upload failed – check R2 credentials."}, 502

    return {"url": r2_object_url(cfg, key), "key": key}, 201


###############################################################################
# Errors
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    if request.path.startswith("/api/"):
        return {"error": "Not found"}, 404
    return render_template_string(TEMPL_404, title="Not found"), 404


@app.errorhandler(500)
def internal_error(exc):
    app.logger.error("Unhandled error on %s", request.path)
    return render_template_string(TEMPL_500, title="Error"), 500


TEMPL_404 = wrap("""
<section class="card">
  <h2 style="margin-top:0">Page not found</h2>
  <p>The page you were looking for drifted away.
     <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
</section>
""")

TEMPL_500 = wrap("""
<section class="card">
  <h2 style="margin-top:0">Internal Server Error</h2>
  <p>Something broke on our side. Please try again in a minute.</p>
</section>
""")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "init":
        with app.app_context():
            init_db()
    else:
        app.run(debug=True)
