"""Tests for Slack Block Kit builders."""

from datetime import datetime, timedelta, timezone

import pytest

from thread_tracker.blocks import (
    _get_status_emoji,
    MAX_SUMMARY_CARDS,
    MAX_VIEW_BLOCKS,
    build_summary_blocks,
    build_thread_blocks,
    build_thread_modal,
    html_to_text,
)
from thread_tracker.models import Category, Entry, Status
from thread_tracker.normalizer import tsv_to_html
from thread_tracker.service import EntryService
from thread_tracker.users import UserDirectory

T0 = datetime(2025, 10, 29, 0, 0, tzinfo=timezone.utc)


def _entry(entry_id, minutes, author="AB", status=Status.NEW, children=None):
    return Entry(
        id=entry_id,
        author_id=author,
        category=Category.PO,
        description=f"Order {entry_id}",
        content=f"<p>Body of {entry_id}</p>",
        status=status,
        created_at=T0 + timedelta(minutes=minutes),
        children=list(children or []),
    )


def test_build_summary_blocks_empty():
    """Test building summary blocks with no threads."""
    blocks = build_summary_blocks([])
    assert len(blocks) >= 2  # Header + empty message
    assert blocks[0]["type"] == "header"


def test_build_summary_blocks_orders_by_latest_activity():
    users = UserDirectory()
    users.add("CD", "Chris Doe")
    stale = _entry("old", 0, children=[_entry("reply", 90, author="CD")])
    fresh = _entry("new", 30, status=Status.COMPLETE)

    blocks = build_summary_blocks([fresh, stale], users)

    texts = [block["text"]["text"] for block in blocks if block["type"] == "section"]
    assert "*2 threads*" in texts[0]
    assert "1 complete" in texts[0]
    headings = [text for text in texts if "PO - Order" in text]
    assert headings[0].endswith("*PO - Order old* - New")
    assert "PO - Order new" in headings[1]
    contexts = [block["elements"][0]["text"] for block in blocks if block["type"] == "context"]
    assert "Latest: 2025-10-29 01:30 by *Chris Doe*" in contexts[0]
    assert "Entries: 2" in contexts[0]
    assert blocks[-1]["type"] == "actions"


def test_build_thread_blocks_indents_replies():
    root = _entry("root", 0, children=[_entry("child", 5, author="CD")])
    root.children[0].edited_at = T0 + timedelta(hours=1)
    root.children[0].edited_by = "EF"

    blocks = build_thread_blocks(root)

    assert blocks[0]["text"]["text"].startswith("*PO - Order root*")
    contexts = [block["elements"][0]["text"] for block in blocks if block["type"] == "context"]
    assert contexts[1].startswith("    CD - ")
    assert "edited 2025-10-29 01:00 by EF" in contexts[1]


def test_get_status_emoji():
    """Test status emoji mapping."""
    assert _get_status_emoji(Status.NEW) == ":new:"
    assert _get_status_emoji(Status.IN_PROGRESS) == ":large_yellow_circle:"
    assert _get_status_emoji("Complete") == ":white_check_mark:"
    assert _get_status_emoji(Status.CANCELLED) == ":no_entry_sign:"


@pytest.mark.parametrize("status", list(Status))
def test_every_status_has_an_emoji(status):
    assert _get_status_emoji(status)


def test_html_to_text_flattens_tables_and_paragraphs():
    content = "<p>Rates below</p>" + tsv_to_html("Part\tQty\nBolt\t40")

    assert html_to_text(content) == "Rates below\nPart | Qty\nBolt | 40"


def test_summary_stays_within_slack_block_limit():
    minutes = iter(range(1000))
    service = EntryService(clock=lambda: T0 + timedelta(minutes=next(minutes)))
    for n in range(40):
        service.create_entry(None, f"<p>update {n}</p>", description=f"Order {n}", caller_identity="AB")

    blocks = build_summary_blocks(service.roots(), service.users)

    assert len(blocks) <= MAX_VIEW_BLOCKS
    buttons = [block["accessory"]["value"] for block in blocks if "accessory" in block]
    assert len(buttons) == MAX_SUMMARY_CARDS
    assert buttons[0] == service.sorted_roots_by_activity()[0].id
    contexts = [block["elements"][0]["text"] for block in blocks if block["type"] == "context"]
    assert f"{40 - MAX_SUMMARY_CARDS} more threads not shown" in contexts[-1]
    assert "*40 threads*" in blocks[1]["text"]["text"]
    assert blocks[-1]["type"] == "actions"


def test_summary_card_links_to_thread_view():
    blocks = build_summary_blocks([_entry("po-1", 0)])

    accessory = next(block["accessory"] for block in blocks if "accessory" in block)
    assert accessory["action_id"] == "view_thread"
    assert accessory["value"] == "po-1"


def test_thread_modal_is_capped():
    root = _entry("root", 0, children=[_entry(f"r{n}", n + 1) for n in range(60)])

    view = build_thread_modal(root)

    assert view["type"] == "modal"
    assert view["title"]["text"] == "PO thread"
    assert len(view["blocks"]) == MAX_VIEW_BLOCKS
    assert "more blocks not shown" in view["blocks"][-1]["elements"][0]["text"]


def test_thread_modal_keeps_small_threads_whole():
    root = _entry("root", 0, children=[_entry("child", 5)])

    assert build_thread_modal(root)["blocks"] == build_thread_blocks(root)
