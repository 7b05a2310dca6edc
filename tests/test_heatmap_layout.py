"""
tests/test_heatmap_layout.py
"""
from __future__ import annotations

from datetime import date, timedelta

import pytest

from studionotes.heatmap import (
    DiaryLink,
    MoodEntry,
    MoodStore,
    MoodValidationError,
    build_week_columns,
    colour_for,
    date_key,
    diary_links,
    glow_for,
    grid_cells,
    parse_date_key,
    pick_year,
    year_options,
)


# ───────────────────────── week columns ───────────────────────────────
def test_2024_starts_on_monday_row():
    weeks = build_week_columns(2024)
    assert weeks[0][0] == "2024-01-01"          # Jan 1st 2024 is a Monday
    assert weeks[0][6] == "2024-01-07"


def test_2023_pads_before_sunday_jan_first():
    weeks = build_week_columns(2023)
    assert weeks[0][:6] == [None] * 6
    assert weeks[0][6] == "2023-01-01"


@pytest.mark.parametrize("year", [2021, 2023, 2024, 2025, 2100])
def test_every_day_appears_once(year):
    weeks = build_week_columns(year)
    keys = [k for week in weeks for k in week if k]
    days = (date(year + 1, 1, 1) - date(year, 1, 1)).days
    assert len(keys) == len(set(keys)) == days
    assert keys[0] == f"{year}-01-01"
    assert keys[-1] == f"{year}-12-31"
    assert all(len(week) == 7 for week in weeks)


def test_rows_follow_weekday():
    weeks = build_week_columns(2025)
    for week in weeks:
        for row, key in enumerate(week):
            if key:
                assert parse_date_key(key).weekday() == row   # Monday row 0, Sunday row 6


def test_columns_are_consecutive_weeks():
    weeks = build_week_columns(2024)
    mondays = [parse_date_key(w[0]) for w in weeks if w[0]]
    assert all(b - a == timedelta(days=7) for a, b in zip(mondays, mondays[1:]))


# ───────────────────────── date keys ──────────────────────────────────
def test_date_key_zero_pads():
    assert date_key(date(987, 3, 5)) == "0987-03-05"


@pytest.mark.parametrize("bad", ["2024-3-5", "2024/03/05", "2024-02-30", "", None, "20240305"])
def test_parse_date_key_rejects(bad):
    with pytest.raises(MoodValidationError):
        parse_date_key(bad)


# ───────────────────────── year picker ────────────────────────────────
def test_year_options_include_current_and_next():
    assert year_options([], 2024) == [2024, 2025]
    assert year_options(["2019-05-01", "2024-01-02", "junk"], 2024) == [2019, 2024, 2025]


def test_pick_year_falls_back_to_last_option():
    assert pick_year(2019, [2019, 2024, 2025]) == 2019
    assert pick_year(1999, [2019, 2024, 2025]) == 2025
    assert pick_year(None, [2024, 2025]) == 2025


# ───────────────────────── diary links ────────────────────────────────
def test_diary_links_keyed_by_utc_day():
    posts = [
        {"id": "a", "title": "Late", "created_at": "2024-03-05T23:30:00-02:00"},
        {"id": "b", "title": "Naive", "created_at": "2024-03-01T08:00:00"},
    ]
    links = diary_links(posts)
    assert links["2024-03-06"] == DiaryLink("2024-03-06", "/post/a", "Late")
    assert links["2024-03-01"].url == "/post/b"


# ───────────────────────── grid cells ─────────────────────────────────
def test_grid_cells_colours_and_links():
    entries = {
        "2024-01-01": MoodEntry("2024-01-01", "joy", 3, "first"),
        "2024-01-02": MoodEntry("2024-01-02", "calm", 1),
    }
    links = {"2024-01-02": DiaryLink("2024-01-02", "/post/x", "Walk")}
    columns = grid_cells(2024, entries, links, seed=1)

    first = columns[0][0]
    assert first.date_key == "2024-01-01"
    assert first.colour == colour_for("joy", 3)
    assert first.glow == glow_for("joy")              # intensity 3 glows
    assert first.wave_delay == 0

    second = columns[0][1]
    assert second.colour == colour_for("calm", 1)
    assert second.glow == ""
    assert second.linked and second.diary.title == "Walk"
    assert second.wave_delay == 4

    empty = columns[1][0]
    assert empty.entry is None
    assert empty.wave_delay == (1 * 7 + 0) * 4
    assert empty.reveal_delay == 0


def test_grid_cells_accepts_store_and_pads():
    store = MoodStore()
    store.init([{"date": "2023-01-01", "mood": "anger", "intensity": 2}])
    columns = grid_cells(2023, store, {}, seed="s")
    pad = columns[0][0]
    assert pad.date_key is None
    assert pad.colour == "transparent"
    assert columns[0][6].entry.mood == "anger"


def test_jitter_is_stable_per_day():
    a = grid_cells(2024, {}, {}, seed=1)
    b = grid_cells(2024, {}, {}, seed=2)
    assert a[10][3].jitter == b[10][3].jitter
