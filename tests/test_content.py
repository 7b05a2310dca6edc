"""
tests/test_content.py – inline-editable site text, about page, admin notes
"""
from __future__ import annotations

import re

from studionotes.site import (
    DEFAULT_CONTENT,
    _issue_edit_token,
    add_milestone,
    delete_milestone,
    get_db,
    set_setting,
    site_content,
    update_milestone,
)

CSRF = "test-token"


def _unlock(client) -> None:
    with client.session_transaction() as sess:
        sess["edit"] = _issue_edit_token()
        sess["csrf"] = CSRF


def _act(client, path: str, **data):
    _unlock(client)
    return client.post(path, data={**data, "csrf": CSRF}, follow_redirects=True)


# ───────────────────────── text blocks ────────────────────────────────
def test_hero_title_roundtrip(client):
    rv = _act(client, "/", action="hero_title", value="Salt & light")
    assert b"Hero title updated." in rv.data
    assert b"Salt &amp; light" in client.get("/").data
    assert site_content()["heroTitle"] == "Salt & light"


def test_empty_intro_rejected(client):
    before = site_content()["homeIntroduction"]
    rv = _act(client, "/", action="home_intro", value="   ")
    assert b"Introduction cannot be empty." in rv.data
    assert site_content()["homeIntroduction"] == before


def test_gallery_description_may_be_empty(client):
    _act(client, "/gallery", action="gallery_description", value="")
    assert site_content()["galleryDescription"] == ""


def test_nav_title_shows_everywhere(client):
    _act(client, "/admin", action="nav_title", value="Tide Tables")
    assert b"Tide Tables" in client.get("/about").data
    _act(client, "/admin", action="nav_title", value=DEFAULT_CONTENT["navTitle"])


def test_admin_notes_one_per_line(client):
    _act(client, "/admin", action="notes", value="first\n\n  second  \n")
    assert site_content()["adminNotes"] == ["first", "second"]


# ───────────────────────── about page ─────────────────────────────────
def test_avatar_position(client):
    rv = _act(client, "/about", action="avatar_position", value="top")
    assert b"Avatar positioning updated." in rv.data
    assert b"object-position:top" in rv.data

    rv = _act(client, "/about", action="avatar_position", value="diagonal")
    assert b"Please choose an alignment." in rv.data
    assert site_content()["avatarPosition"] == "top"


def test_milestone_add_update_delete(client):
    rv = _act(client, "/about", action="milestone_add")
    assert b"Milestone added." in rv.data
    new = site_content()["milestones"][0]
    assert new["year"] == "New year"

    _act(client, "/about", action="milestone_year", id=new["id"], value="2027")
    _act(client, "/about", action="milestone_description", id=new["id"], value="Opened a print shop")
    updated = site_content()["milestones"][0]
    assert (updated["year"], updated["description"]) == ("2027", "Opened a print shop")

    rv = _act(client, "/about", action="milestone_year", id=new["id"], value="")
    assert b"Year cannot be empty." in rv.data

    _act(client, "/about", action="milestone_delete", id=new["id"])
    assert new["id"] not in {m["id"] for m in site_content()["milestones"]}


def test_milestone_insert_after(client):
    with client.application.test_request_context():
        first = site_content()["milestones"][0]
        added = add_milestone(year="2030", description="later", after_id=first["id"])
        ids = [m["id"] for m in site_content()["milestones"]]
        assert ids.index(added["id"]) == ids.index(first["id"]) + 1
        update_milestone(added["id"], year="2031", id="hijack")
        assert site_content()["milestones"][1]["id"] == added["id"]
        delete_milestone(added["id"])


def test_contact_links(client):
    rv = _act(client, "/about", action="contact_add")
    assert b"Contact link added." in rv.data
    link = site_content()["contactLinks"][-1]

    _act(
        client,
        "/about",
        action="contact_update",
        id=link["id"],
        label="Mastodon",
        link_value="@notes@example.social",
        href="https://example.social/@notes",
        icon="🐘",
    )
    client.post("/admin/lock", data={"csrf": CSRF})
    html = client.get("/about").data.decode()
    assert 'href="https://example.social/@notes"' in html
    assert "@notes@example.social" in html

    _act(client, "/about", action="contact_delete", id=link["id"])
    assert link["id"] not in {c["id"] for c in site_content()["contactLinks"]}


def test_defaults_are_not_mutated(client):
    db = get_db()
    db.execute("DELETE FROM site_settings WHERE key='milestones'")
    db.commit()
    site_content()["milestones"][0]["year"] = "mutated"
    assert site_content()["milestones"][0]["year"] == DEFAULT_CONTENT["milestones"][0]["year"]


def test_corrupt_json_setting_falls_back(client):
    set_setting("contactLinks", "{not json")
    assert site_content()["contactLinks"] == DEFAULT_CONTENT["contactLinks"]


def test_about_hides_edit_forms_for_visitors(client):
    html = client.get("/about").data.decode()
    assert not re.search(r'name="action" value="milestone_', html)
