"""
tests/test_session.py – tooltip tracking and the edit modal
"""
from __future__ import annotations

import pytest

from studionotes.heatmap import (
    DiaryLink,
    HeatmapSession,
    MoodBridge,
    MoodStore,
    MoodValidationError,
    TooltipTracker,
    run_inline,
)


class _Frames:
    """Collects requestAnimationFrame callbacks until `flush()`."""

    def __init__(self):
        self.queue = {}
        self.cancelled = []
        self._next = 0

    def request(self, cb):
        self._next += 1
        self.queue[self._next] = cb
        return self._next

    def cancel(self, handle):
        self.cancelled.append(handle)
        self.queue.pop(handle, None)

    def flush(self):
        pending, self.queue = self.queue, {}
        for cb in pending.values():
            cb(0.0)


class _Transport:
    def __init__(self, rows=()):
        self.rows = list(rows)
        self.saved = []

    def save(self, entry):
        self.saved.append(entry)

    def load(self):
        return list(self.rows)


def _session(rows=(), **kw) -> HeatmapSession:
    store = MoodStore(bridge=MoodBridge(_Transport(rows), submit=run_inline))
    store.init(rows)
    return HeatmapSession(store, **kw)


# ───────────────────────── tooltip ────────────────────────────────────
def test_tracker_coalesces_moves_into_one_frame():
    frames = _Frames()
    tracker = TooltipTracker(frames.request, frames.cancel)
    tracker.attach()
    assert tracker.transform == "translate3d(12px, 12px, 0)"

    for x in range(10):
        tracker.schedule(x, 5)
    assert len(frames.queue) == 1
    frames.flush()
    assert tracker.repaints == 1
    assert tracker.transform == "translate3d(21px, 17px, 0)"   # latest position


def test_tracker_ignores_moves_while_detached():
    frames = _Frames()
    tracker = TooltipTracker(frames.request, frames.cancel)
    tracker.schedule(3, 4)
    assert frames.queue == {}
    tracker.attach()
    assert tracker.transform == "translate3d(15px, 16px, 0)"


def test_tracker_detach_cancels_pending_frame():
    frames = _Frames()
    tracker = TooltipTracker(frames.request, frames.cancel)
    tracker.attach()
    tracker.schedule(1, 1)
    tracker.detach()
    assert frames.cancelled == [1]
    frames.flush()
    assert tracker.repaints == 0


def test_hover_and_leave_states():
    frames = _Frames()
    link = DiaryLink("2024-03-05", "/post/1", "Walk")
    hm = _session(
        [{"date": "2024-03-05", "mood": "calm", "intensity": 2, "note": "sea"}],
        tracker=TooltipTracker(frames.request, frames.cancel),
        links={"2024-03-05": link},
    )
    assert hm.state == HeatmapSession.IDLE

    hm.hover("2024-03-05", 100, 40)
    assert hm.state == HeatmapSession.HOVERING
    assert hm.tooltip.entry.note == "sea"
    assert hm.tooltip.diary == link
    assert hm.tracker.transform == "translate3d(112px, 52px, 0)"

    hm.leave(into_tooltip=True)                  # pointer moved onto the tooltip
    assert hm.state == HeatmapSession.HOVERING
    hm.leave_tooltip(into_grid=False)
    assert hm.state == HeatmapSession.IDLE
    assert hm.tracker.attached is False


def test_hover_on_padding_is_ignored():
    hm = _session()
    hm.hover(None)
    assert hm.state == HeatmapSession.IDLE


# ───────────────────────── modal ──────────────────────────────────────
def test_open_then_cancel_creates_nothing():
    hm = _session()
    modal = hm.open("2024-05-01")
    assert modal.draft == {"date": "2024-05-01", "mood": "joy", "intensity": 2, "note": ""}
    assert hm.state == HeatmapSession.EDITING
    hm.choose_mood("anger")
    hm.cancel()
    assert hm.state == HeatmapSession.IDLE
    assert "2024-05-01" not in hm.store


def test_open_prefills_existing_entry():
    hm = _session([{"date": "2024-05-02", "mood": "fatigue", "intensity": 3, "note": "late"}])
    modal = hm.open("2024-05-02")
    assert modal.draft["mood"] == "fatigue"
    assert modal.draft["note"] == "late"


def test_save_commits_draft():
    hm = _session()
    hm.open("2024-05-03")
    hm.choose_mood("sadness")
    hm.choose_intensity("1")
    hm.edit_note("rain")
    entry = hm.save()
    assert (entry.mood, entry.intensity, entry.note) == ("sadness", 1, "rain")
    assert hm.state == HeatmapSession.IDLE
    assert hm.store.bridge.transport.saved == [entry]
    assert hm.store.last_save.result() is True


def test_modal_rejects_bad_choices():
    hm = _session()
    with pytest.raises(MoodValidationError):
        hm.open("2024-13-01")
    hm.open("2024-05-04")
    with pytest.raises(MoodValidationError):
        hm.choose_mood("ennui")
    with pytest.raises(MoodValidationError):
        hm.choose_intensity(0)


def test_save_without_modal_is_an_error():
    with pytest.raises(RuntimeError):
        _session().save()


# ───────────────────────── lifecycle ──────────────────────────────────
def test_load_replaces_entries():
    hm = _session()
    hm.store.bridge.transport.rows = [{"date": "2024-06-01", "mood": "joy", "intensity": 1}]
    assert hm.load().result() is True
    assert "2024-06-01" in hm.store


def test_load_after_close_is_dropped():
    hm = _session()
    hm.close()
    assert hm.load() is None


def test_stale_load_is_dropped():
    deferred = []
    store = MoodStore(
        bridge=MoodBridge(
            _Transport([{"date": "2024-07-01", "mood": "calm", "intensity": 2}]),
            submit=lambda fn, *a: deferred.append((fn, a)),
        )
    )
    store.init([])
    hm = HeatmapSession(store)
    hm.load()
    hm.close()                        # unmounted before the response arrived
    fn, args = deferred.pop()
    assert fn(*args) is False
    assert "2024-07-01" not in store


def test_opening_another_day_discards_draft():
    hm = _session()
    hm.open("2024-05-10")
    hm.choose_mood("anger")
    hm.edit_note("first")
    modal = hm.open("2024-05-11")
    assert modal.draft == {"date": "2024-05-11", "mood": "joy", "intensity": 2, "note": ""}

    entry = hm.save()
    assert entry.date == "2024-05-11"
    assert "2024-05-10" not in hm.store
    assert [e.date for e in hm.store.bridge.transport.saved] == ["2024-05-11"]


def test_load_skips_junk_reply():
    hm = _session()
    hm.store.bridge.transport.rows = [None, "2024-06-02", {"date": "2024-06-03", "mood": "calm", "intensity": 7}]
    assert hm.load().result() is True
    assert hm.store.get("2024-06-03").intensity == 3
    assert "2024-06-02" not in hm.store
