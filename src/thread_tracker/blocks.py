"""Build Slack Block Kit components for the tracker."""

from datetime import datetime
from html.parser import HTMLParser
from typing import Any, Iterable, Optional

from thread_tracker.activity import latest_activity, sorted_roots_by_activity, thread_size
from thread_tracker.models import Entry, Status
from thread_tracker.users import UserDirectory

STATUS_EMOJI = {
    Status.NEW: ":new:",
    Status.IN_PROGRESS: ":large_yellow_circle:",
    Status.COMPLETE: ":white_check_mark:",
    Status.CANCELLED: ":no_entry_sign:",
}

MAX_PREVIEW_CHARS = 280

# Slack rejects views with more than 100 blocks.
MAX_VIEW_BLOCKS = 100
SUMMARY_FIXED_BLOCKS = 6
SUMMARY_CARD_BLOCKS = 3
MAX_SUMMARY_CARDS = (MAX_VIEW_BLOCKS - SUMMARY_FIXED_BLOCKS) // SUMMARY_CARD_BLOCKS


def build_summary_blocks(roots: Iterable[Entry], users: Optional[UserDirectory] = None) -> list[dict]:
    """Build the "all updates" summary: one card per thread, most recent first.

    Args:
        roots: Root entries of every thread.
        users: Directory used to show display names instead of identity codes.

    Returns:
        List of Block Kit block dictionaries.
    """
    blocks = []

    blocks.append(
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": "Update Threads",
                "emoji": True,
            },
        }
    )

    ordered = sorted_roots_by_activity(roots)
    if not ordered:
        blocks.append(
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": "_No updates yet. Post the first one from the tracker._",
                },
            }
        )
        return blocks

    counts = {status: 0 for status in Status}
    for root in ordered:
        counts[root.status] += 1

    blocks.append(
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"*{len(ordered)} threads* | "
                + " | ".join(f"{counts[status]} {status.value.lower()}" for status in Status),
            },
        }
    )

    blocks.append({"type": "divider"})

    for root in ordered[:MAX_SUMMARY_CARDS]:
        blocks.extend(_build_summary_card(root, users))

    hidden = len(ordered) - MAX_SUMMARY_CARDS
    if hidden > 0:
        blocks.append(
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": f"_{hidden} more threads not shown. Open the local tracker for the full list._",
                    }
                ],
            }
        )

    blocks.append({"type": "divider"})

    blocks.append(
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {
                        "type": "plain_text",
                        "text": "Refresh",
                        "emoji": True,
                    },
                    "action_id": "refresh_updates",
                }
            ],
        }
    )

    return blocks


def build_thread_blocks(entry: Entry, users: Optional[UserDirectory] = None, depth: int = 0) -> list[dict]:
    """Build blocks for a full thread, replies indented beneath their parent."""

    indent = "    " * depth
    blocks = []

    if depth == 0:
        blocks.append(
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*{_escape_mrkdwn(entry.heading)}* {_get_status_emoji(entry.status)} {entry.status.value}",
                },
            }
        )

    byline = f"{_display_name(entry.author_id, users)} - {_format_timestamp(entry.created_at)}"
    if entry.edited_at:
        editor = entry.edited_by or entry.author_id
        byline += f" (edited {_format_timestamp(entry.edited_at)} by {_display_name(editor, users)})"

    blocks.append(
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"{indent}{_escape_mrkdwn(byline)}"}],
        }
    )
    blocks.append(
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": _indent_text(_preview(entry.content), indent)},
        }
    )

    for child in entry.children:
        blocks.extend(build_thread_blocks(child, users, depth + 1))

    return blocks


def build_thread_modal(entry: Entry, users: Optional[UserDirectory] = None) -> dict:
    """Wrap a thread's blocks in a modal view, cut to Slack's block limit."""

    blocks = build_thread_blocks(entry, users)
    if len(blocks) > MAX_VIEW_BLOCKS:
        hidden = len(blocks) - (MAX_VIEW_BLOCKS - 1)
        blocks = blocks[: MAX_VIEW_BLOCKS - 1]
        blocks.append(
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": f"_{hidden} more blocks not shown._"}],
            }
        )
    return {
        "type": "modal",
        "title": {"type": "plain_text", "text": entry.category.value + " thread"},
        "close": {"type": "plain_text", "text": "Close"},
        "blocks": blocks,
    }


def _build_summary_card(root: Entry, users: Optional[UserDirectory]) -> list[dict]:
    latest = latest_activity(root)
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{_get_status_emoji(root.status)} *{_escape_mrkdwn(root.heading)}* - {root.status.value}",
            },
            "accessory": {
                "type": "button",
                "text": {"type": "plain_text", "text": "View thread", "emoji": True},
                "action_id": "view_thread",
                "value": root.id,
            },
        },
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": (
                        f"Latest: {_format_timestamp(latest.timestamp)} by "
                        f"*{_escape_mrkdwn(_display_name(latest.author_id, users))}* | "
                        f"Entries: {thread_size(root)}"
                    ),
                }
            ],
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": _preview(latest.content)},
        },
    ]


def _get_status_emoji(status: Status) -> str:
    """Get emoji for an entry status.

    Args:
        status: Entry status.

    Returns:
        Emoji string.
    """
    return STATUS_EMOJI[Status.parse(status)]


def _format_timestamp(timestamp: Optional[datetime]) -> str:
    if not timestamp:
        return "Unknown"
    return timestamp.strftime("%Y-%m-%d %H:%M")


def _display_name(identity: str, users: Optional[UserDirectory]) -> str:
    if users is None:
        return identity
    return users.display_name(identity)


def _escape_mrkdwn(value: Any) -> str:
    text = str(value or "")
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )


def _indent_text(text: str, indent: str) -> str:
    return "\n".join(f"{indent}{line}" for line in text.splitlines()) or text


def _preview(content: str) -> str:
    """Plain-text rendering of entry HTML, cut to a card-sized preview."""

    text = _escape_mrkdwn(html_to_text(content)) or "_(empty)_"
    if len(text) > MAX_PREVIEW_CHARS:
        text = text[: MAX_PREVIEW_CHARS - 1].rstrip() + "…"
    return text


class _TextExtractor(HTMLParser):
    """Flatten entry HTML: one line per paragraph or row, cells joined by pipes."""

    BLOCK_TAGS = {"p", "div", "br", "tr", "li"}

    def __init__(self):
        super().__init__()
        self.lines: list[str] = []
        self._current: list[str] = []
        self._cells: list[str] = []
        self._in_cell = False

    def handle_starttag(self, tag, attrs):
        if tag in ("td", "th"):
            self._in_cell = True
            self._cells.append("")
        elif tag in self.BLOCK_TAGS:
            self._flush()

    def handle_endtag(self, tag):
        if tag in ("td", "th"):
            self._in_cell = False
        elif tag == "tr":
            self.lines.append(" | ".join(cell.strip() for cell in self._cells))
            self._cells = []
        elif tag in self.BLOCK_TAGS:
            self._flush()

    def handle_data(self, data):
        if self._in_cell and self._cells:
            self._cells[-1] += data
        else:
            self._current.append(data)

    def _flush(self):
        line = "".join(self._current).strip()
        if line:
            self.lines.append(line)
        self._current = []

    def get_text(self) -> str:
        self._flush()
        if self._cells:
            self.lines.append(" | ".join(cell.strip() for cell in self._cells))
            self._cells = []
        return "\n".join(self.lines)


def html_to_text(content: str) -> str:
    extractor = _TextExtractor()
    extractor.feed(content or "")
    extractor.close()
    return extractor.get_text()
