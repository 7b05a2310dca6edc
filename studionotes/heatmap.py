"""
Emotion heatmap: calendar layout, mood entries and the hover/edit state.

Everything here is independent of Flask so the site, the CLI and the
tests can drive the same logic.
"""

import logging
import random
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Mapping

import requests

log = logging.getLogger(__name__)

################################################################################
# Constants
################################################################################
MOODS = ("joy", "anger", "calm", "fatigue", "sadness")
INTENSITIES = (1, 2, 3)
DEFAULT_MOOD = "joy"
DEFAULT_INTENSITY = 2

# label, hue, saturation, lightness
MOOD_PALETTE = {
    "joy": ("Joy", 38, 95, 65),
    "calm": ("Calm", 135, 28, 64),
    "sadness": ("Sad", 205, 45, 72),
    "anger": ("Anger", 355, 70, 68),
    "fatigue": ("Fatigue", 260, 32, 70),
}

FNV_OFFSET = 2166136261
FNV_PRIME = 16777619
JITTER_AMPLITUDE = 2.2
REVEAL_WINDOW_MS = 1400
REVEAL_MIN_STEP_MS = 8
REVEAL_MAX_STEP_MS = 60
WAVE_STEP_MS = 4
TOOLTIP_OFFSET = 12

DATE_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class MoodValidationError(ValueError):
    """A mood write was rejected before it reached the store."""


class PersistenceError(RuntimeError):
    """The external mood store could not be read or written."""


################################################################################
# Data model
################################################################################
@dataclass
class MoodEntry:
    date: str
    mood: str
    intensity: int
    note: str = ""

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "mood": self.mood,
            "intensity": self.intensity,
            "note": self.note,
        }


@dataclass(frozen=True)
class DiaryLink:
    date: str
    url: str
    title: str


@dataclass
class Cell:
    date_key: str | None
    column: int
    row: int
    entry: MoodEntry | None = None
    diary: DiaryLink | None = None
    colour: str = "transparent"
    glow: str = ""
    jitter: tuple[float, float] = (0.0, 0.0)
    wave_delay: int = 0
    reveal_delay: int = 0

    @property
    def linked(self) -> bool:
        return self.diary is not None


################################################################################
# Date keys + calendar layout
################################################################################
def date_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}-{d.day:02d}"


def parse_date_key(value: str) -> date:
    """Strict ``yyyy-mm-dd`` → date. Raises MoodValidationError."""
    if not isinstance(value, str) or not DATE_KEY_RE.match(value):
        raise MoodValidationError(f"Invalid date {value!r} (expected yyyy-mm-dd).")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise MoodValidationError(f"Invalid date {value!r}.") from exc


def build_week_columns(year: int) -> list[list[str | None]]:
    """
    Monday-first week columns covering *year*.

    The range starts at the latest Monday on/before Jan 1 and ends at the
    earliest Sunday on/after Dec 31. Padding days from the neighbouring
    years keep their slot but hold ``None``.
    """
    first = date(year, 1, 1)
    last = date(year, 12, 31)
    start = first - timedelta(days=first.weekday())
    end = last + timedelta(days=6 - last.weekday())

    weeks: list[list[str | None]] = []
    day = start
    index = 0
    while day <= end:
        col = index // 7
        if col == len(weeks):
            weeks.append([None] * 7)
        weeks[col][day.weekday()] = date_key(day) if day.year == year else None
        day += timedelta(days=1)
        index += 1
    return weeks


def iter_cells(weeks: list[list[str | None]]):
    for col, week in enumerate(weeks):
        for row, key in enumerate(week):
            yield Cell(date_key=key, column=col, row=row)


################################################################################
# Stable hash, jitter, reveal order
################################################################################
def hash_for(seed: str) -> int:
    """32-bit FNV-1a over the UTF-16 code units of *seed*."""
    h = FNV_OFFSET
    raw = seed.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(raw), 2):
        h ^= raw[i] | (raw[i + 1] << 8)
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return h


def jitter_for(seed: str, amplitude: float = JITTER_AMPLITUDE) -> tuple[float, float]:
    h = hash_for(seed)
    x_unit = (h & 0xFF) / 255 * 2 - 1
    y_unit = ((h >> 8) & 0xFF) / 255 * 2 - 1
    return (x_unit * amplitude, y_unit * amplitude)


def reveal_delays(
    dates: Iterable[str],
    seed: str | int,
    *,
    window_ms: int = REVEAL_WINDOW_MS,
    min_step: int = REVEAL_MIN_STEP_MS,
    max_step: int = REVEAL_MAX_STEP_MS,
) -> dict[str, int]:
    """
    Map each date to an animation delay (ms).

    Dates are ordered by ``hash_for(f"{seed}-{date}")`` so the reveal looks
    random but is reproducible for the same seed. Delays never exceed
    *window_ms*.
    """
    keyed = sorted((hash_for(f"{seed}-{d}"), d) for d in set(dates))
    if not keyed:
        return {}

    count = len(keyed)
    raw_step = 0 if count <= 1 else int(window_ms / (count - 1) + 0.5)
    step = max(min_step, min(max_step, raw_step))
    return {d: min(i * step, window_ms) for i, (_, d) in enumerate(keyed)}


def new_reveal_seed() -> int:
    return random.randrange(1_000_000_000)


################################################################################
# Colours
################################################################################
def colour_for(mood: str, level: int) -> str:
    _, h, s, l = MOOD_PALETTE[mood]
    lightness = l + 8 if level == 1 else l if level == 2 else l - 8
    sat = s - (6 if level == 1 else 2 if level == 2 else 0)
    return f"hsl({h}, {sat}%, {lightness}%)"


def glow_for(mood: str) -> str:
    _, h, s, l = MOOD_PALETTE[mood]
    return f"0 0 6px 2px hsla({h}, {s}%, {max(0, l - 12)}%, 0.55)"


def mood_label(mood: str | None) -> str:
    return MOOD_PALETTE[mood][0] if mood in MOOD_PALETTE else ""


################################################################################
# Validation
################################################################################
def _coerce_intensity(value, *, clamp: bool) -> int:
    if value is None or value == "" or isinstance(value, bool):
        raise MoodValidationError("intensity is required.")
    if isinstance(value, float):
        if not value.is_integer():
            raise MoodValidationError(f"intensity must be a whole number, got {value}.")
        value = int(value)
    try:
        level = int(value)
    except (TypeError, ValueError) as exc:
        raise MoodValidationError(f"intensity must be a number, got {value!r}.") from exc
    if clamp:
        return min(INTENSITIES[-1], max(INTENSITIES[0], level))
    if level not in INTENSITIES:
        raise MoodValidationError(f"intensity must be 1, 2 or 3, got {level}.")
    return level


def validate_entry(payload: Mapping, *, clamp: bool = False) -> MoodEntry:
    """
    Turn a raw mapping into a MoodEntry or raise MoodValidationError.

    *clamp* is for data coming back from storage: out-of-range intensities
    are pulled into 1..3 instead of rejecting the row.
    """
    raw_date = payload.get("date")
    if not raw_date:
        raise MoodValidationError("date is required.")
    day = parse_date_key(str(raw_date))

    mood = payload.get("mood")
    if not mood:
        raise MoodValidationError("mood is required.")
    if mood not in MOODS:
        raise MoodValidationError(f"Unknown mood {mood!r}.")

    intensity = _coerce_intensity(payload.get("intensity"), clamp=clamp)
    note = payload.get("note")
    return MoodEntry(
        date=date_key(day),
        mood=mood,
        intensity=intensity,
        note=note if isinstance(note, str) else "",
    )


def load_entries(rows: Iterable) -> list[MoodEntry]:
    """Validate stored rows with clamping; malformed rows are skipped."""
    out = []
    for row in rows:
        if isinstance(row, MoodEntry):
            row = row.to_dict()
        elif not isinstance(row, Mapping):
            # sqlite3.Row and pairs convert; anything else is junk
            try:
                row = dict(row)
            except (TypeError, ValueError):
                log.warning("Skipping stored mood entry of type %s", type(row).__name__)
                continue
        try:
            out.append(validate_entry(row, clamp=True))
        except MoodValidationError as exc:
            log.warning("Skipping stored mood entry %r: %s", row.get("date"), exc)
    return out


################################################################################
# Persistence bridge
################################################################################
def run_inline(fn, *args, **kwargs) -> Future:
    """`submit`-compatible runner that executes immediately."""
    fut: Future = Future()
    try:
        fut.set_result(fn(*args, **kwargs))
    except BaseException as exc:
        fut.set_exception(exc)
    return fut


class HttpMoodTransport:
    """Talks to a running site's ``/api/moods`` endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        session: requests.Session | None = None,
        passphrase: str | None = None,
        timeout: float = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.http = session or requests.Session()
        self.passphrase = passphrase
        self.timeout = timeout
        self._csrf: str | None = None

    def _unlock(self) -> None:
        if not self.passphrase or self._csrf:
            return
        resp = self.http.post(
            f"{self.base_url}/admin/unlock",
            json={"passcode": self.passphrase},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        self._csrf = resp.json().get("csrf")

    def _post_entry(self, entry: MoodEntry):
        self._unlock()
        headers = {"X-CSRFToken": self._csrf} if self._csrf else {}
        return self.http.post(
            f"{self.base_url}/api/moods",
            json=entry.to_dict(),
            headers=headers,
            timeout=self.timeout,
        )

    def save(self, entry: MoodEntry) -> None:
        try:
            resp = self._post_entry(entry)
            if resp.status_code == 403 and self._csrf:
                # edit token expired server-side; unlock again once
                self._csrf = None
                resp = self._post_entry(entry)
            resp.raise_for_status()
        except (requests.RequestException, ValueError) as exc:
            raise PersistenceError(f"POST /api/moods failed: {exc}") from exc

    def load(self) -> list[dict]:
        try:
            resp = self.http.get(f"{self.base_url}/api/moods", timeout=self.timeout)
            resp.raise_for_status()
            rows = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise PersistenceError(f"GET /api/moods failed: {exc}") from exc
        if not isinstance(rows, list):
            raise PersistenceError(
                f"GET /api/moods failed: expected a list, got {type(rows).__name__}"
            )
        return rows


class MoodBridge:
    """
    Fire-and-forget persistence for a MoodStore.

    *transport* needs ``save(entry)`` and ``load()``, raising
    PersistenceError on failure. *submit* schedules the call; by default a
    single background worker, or `run_inline` for synchronous callers.
    """

    def __init__(self, transport, *, submit: Callable[..., Future] | None = None):
        self.transport = transport
        self._executor = None
        if submit is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="mood-bridge"
            )
            submit = self._executor.submit
        self._submit = submit

    def _save(self, entry: MoodEntry) -> bool:
        try:
            self.transport.save(entry)
        except PersistenceError:
            log.exception("Failed to persist mood entry %s", entry.date)
            return False
        return True

    def save(self, entry: MoodEntry) -> Future:
        return self._submit(self._save, entry)

    def _load(self, apply: Callable[[list], bool]) -> bool:
        try:
            rows = self.transport.load()
        except PersistenceError:
            log.exception("Failed to load mood entries")
            return False
        return apply(rows)

    def load(self, apply: Callable[[list], bool]) -> Future:
        return self._submit(self._load, apply)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)


################################################################################
# Store
################################################################################
class MoodStore:
    """
    date key → MoodEntry, owned by one HeatmapSession.

    `init` seeds a fresh store once; `replace` swaps the content later.
    Both bump `generation`, which is the token async loads check before
    applying their result.
    """

    def __init__(self, *, bridge: MoodBridge | None = None):
        self.bridge = bridge
        self.generation = 0
        self.last_save: Future | None = None
        self._entries: dict[str, MoodEntry] = {}
        self._lock = threading.Lock()
        self._initialised = False

    def init(self, rows: Iterable) -> None:
        if self._initialised:
            raise RuntimeError("MoodStore.init() called twice; use replace().")
        self._initialised = True
        self.replace(rows)

    def replace(self, rows: Iterable, *, expected_generation: int | None = None) -> bool:
        entries = {e.date: e for e in load_entries(rows)}
        with self._lock:
            if expected_generation is not None and expected_generation != self.generation:
                return False
            self._entries = entries
            self.generation += 1
        self._initialised = True
        return True

    def invalidate(self) -> None:
        with self._lock:
            self.generation += 1

    def get(self, day: str) -> MoodEntry | None:
        return self._entries.get(day)

    def entries(self) -> dict[str, MoodEntry]:
        return dict(self._entries)

    def dates(self) -> list[str]:
        return sorted(self._entries)

    def __contains__(self, day) -> bool:
        return day in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def upsert(self, day: str, **fields) -> MoodEntry:
        """
        Merge *fields* (mood / intensity / note) onto the entry for *day*.

        The merged entry is written here first, then handed to the bridge.
        A failed write on the bridge side does not undo it.
        """
        unknown = set(fields) - {"mood", "intensity", "note"}
        if unknown:
            raise MoodValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}.")

        merged = {
            "date": day,
            "mood": DEFAULT_MOOD,
            "intensity": DEFAULT_INTENSITY,
            "note": "",
        }
        current = self._entries.get(day) if day else None
        if current:
            merged.update(current.to_dict())
        merged.update({k: v for k, v in fields.items() if v is not None})
        entry = validate_entry(merged)

        with self._lock:
            self._entries[entry.date] = entry
        if self.bridge is not None:
            self.last_save = self.bridge.save(entry)
        return entry


################################################################################
# Rendering surface
################################################################################
def grid_cells(
    year: int,
    entries: Mapping[str, MoodEntry] | MoodStore,
    links: Mapping[str, DiaryLink],
    *,
    seed: str | int,
) -> list[list[Cell]]:
    weeks = build_week_columns(year)
    if isinstance(entries, MoodStore):
        entries = entries.entries()

    populated = [d for week in weeks for d in week if d and d in entries]
    delays = reveal_delays(populated, seed)

    columns: list[list[Cell]] = [[] for _ in weeks]
    for cell in iter_cells(weeks):
        cell.wave_delay = (cell.column * 7 + cell.row) * WAVE_STEP_MS
        key = cell.date_key
        if key:
            cell.entry = entries.get(key)
            cell.diary = links.get(key)
            cell.jitter = jitter_for(key)
            cell.colour = "rgba(0,0,0,0.04)"
        if cell.entry:
            cell.colour = colour_for(cell.entry.mood, cell.entry.intensity)
            if cell.entry.intensity == 3:
                cell.glow = glow_for(cell.entry.mood)
            cell.reveal_delay = delays.get(key, 0)
        columns[cell.column].append(cell)
    return columns


def year_options(dates: Iterable[str], current_year: int) -> list[int]:
    years = {current_year, current_year + 1}
    for key in dates:
        try:
            years.add(int(key[:4]))
        except (TypeError, ValueError):
            continue
    return sorted(years)


def pick_year(requested: int | None, options: list[int]) -> int:
    if requested in options:
        return requested
    return options[-1]


def diary_links(posts: Iterable[Mapping]) -> dict[str, DiaryLink]:
    """date key of each diary post's creation (UTC) → DiaryLink; newest wins."""
    out: dict[str, DiaryLink] = {}
    for post in sorted(posts, key=lambda p: p["created_at"]):
        created = datetime.fromisoformat(post["created_at"])
        if created.tzinfo is not None:
            created = created.astimezone(timezone.utc)
        key = date_key(created.date())
        out[key] = DiaryLink(date=key, url=f"/post/{post['id']}", title=post["title"])
    return out


################################################################################
# Interaction state: tooltip + modal
################################################################################
class TooltipTracker:
    """
    Pointer-following overlay, repositioned at most once per frame.

    *request_frame* takes a callback and returns a handle (the
    requestAnimationFrame contract); *cancel_frame* takes that handle.
    """

    def __init__(self, request_frame, cancel_frame=None, *, offset: int = TOOLTIP_OFFSET):
        self._request_frame = request_frame
        self._cancel_frame = cancel_frame
        self.offset = offset
        self.position = (0, 0)
        self.transform: str | None = None
        self.attached = False
        self.repaints = 0
        self._pending = False
        self._handle = None

    def _apply(self) -> None:
        x, y = self.position
        self.transform = f"translate3d({x + self.offset}px, {y + self.offset}px, 0)"

    def attach(self) -> None:
        if not self.attached:
            self.attached = True
            self._apply()

    def detach(self) -> None:
        self.cancel()
        self.attached = False

    def schedule(self, x: float, y: float) -> None:
        self.position = (x, y)
        if not self.attached or self._pending:
            return
        self._pending = True
        self._handle = self._request_frame(self._on_frame)

    def _on_frame(self, *_):
        self._pending = False
        self._handle = None
        if not self.attached:
            return
        self._apply()
        self.repaints += 1

    def cancel(self) -> None:
        if self._pending and self._cancel_frame is not None:
            self._cancel_frame(self._handle)
        self._pending = False
        self._handle = None


@dataclass
class Tooltip:
    date: str
    entry: MoodEntry | None = None
    diary: DiaryLink | None = None


@dataclass
class Modal:
    date: str
    draft: dict = field(default_factory=dict)
    diary: DiaryLink | None = None


class HeatmapSession:
    IDLE = "idle"
    HOVERING = "hovering"
    EDITING = "editing"

    def __init__(
        self,
        store: MoodStore,
        *,
        tracker: TooltipTracker | None = None,
        links: Mapping[str, DiaryLink] | None = None,
    ):
        self.store = store
        self.tracker = tracker
        self.links = dict(links or {})
        self.tooltip: Tooltip | None = None
        self.modal: Modal | None = None
        self.closed = False

    @property
    def state(self) -> str:
        if self.modal is not None:
            return self.EDITING
        if self.tooltip is not None:
            return self.HOVERING
        return self.IDLE

    # -- tooltip ---------------------------------------------------------
    def pointer_move(self, x: float, y: float) -> None:
        if self.tracker is not None:
            self.tracker.schedule(x, y)

    def hover(self, day: str | None, x: float | None = None, y: float | None = None) -> None:
        if not day:
            return
        if x is not None and y is not None:
            self.pointer_move(x, y)
        self.tooltip = Tooltip(date=day, entry=self.store.get(day), diary=self.links.get(day))
        if self.tracker is not None:
            self.tracker.attach()

    def _hide_tooltip(self) -> None:
        self.tooltip = None
        if self.tracker is not None:
            self.tracker.detach()

    def leave(self, *, into_tooltip: bool = False) -> None:
        if not into_tooltip:
            self._hide_tooltip()

    def leave_tooltip(self, *, into_grid: bool = False) -> None:
        if not into_grid:
            self._hide_tooltip()

    # -- modal -----------------------------------------------------------
    def open(self, day: str) -> Modal:
        parse_date_key(day)
        current = self.store.get(day)
        draft = (
            current.to_dict()
            if current
            else {"date": day, "mood": DEFAULT_MOOD, "intensity": DEFAULT_INTENSITY, "note": ""}
        )
        self.modal = Modal(date=day, draft=draft, diary=self.links.get(day))
        return self.modal

    def _draft(self) -> dict:
        if self.modal is None:
            raise RuntimeError("No mood entry is being edited.")
        return self.modal.draft

    def choose_mood(self, mood: str) -> None:
        draft = self._draft()
        if mood not in MOODS:
            raise MoodValidationError(f"Unknown mood {mood!r}.")
        draft["mood"] = mood

    def choose_intensity(self, level) -> None:
        draft = self._draft()
        draft["intensity"] = _coerce_intensity(level, clamp=False)

    def edit_note(self, note: str | None) -> None:
        self._draft()["note"] = note or ""

    def save(self) -> MoodEntry:
        draft = self._draft()
        entry = self.store.upsert(
            self.modal.date,
            mood=draft["mood"],
            intensity=draft["intensity"],
            note=draft["note"],
        )
        self.modal = None
        return entry

    def cancel(self) -> None:
        self.modal = None

    # -- lifecycle -------------------------------------------------------
    def load(self) -> Future | None:
        """Refresh from the bridge; a stale response is dropped."""
        bridge = self.store.bridge
        if bridge is None or self.closed:
            return None
        token = self.store.generation

        def apply(rows) -> bool:
            if self.closed:
                return False
            applied = self.store.replace(rows, expected_generation=token)
            if not applied:
                log.debug("Dropping stale mood entries (generation %s)", token)
            return applied

        return bridge.load(apply)

    def close(self) -> None:
        self.closed = True
        self.modal = None
        self._hide_tooltip()
        self.store.invalidate()
