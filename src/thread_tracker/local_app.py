"""Local web app for posting and browsing update threads."""

from __future__ import annotations

import logging
import os
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set
from urllib.parse import urlparse

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse

from thread_tracker.activity import latest_activity, sorted_roots_by_activity, thread_size
from thread_tracker.composer import Composer
from thread_tracker.config import build_persistence, load_config, save_config
from thread_tracker.errors import (
    EmptyContent,
    InvalidValue,
    NoIdentity,
    NotFound,
    ParentNotFound,
    PersistenceError,
    TrackerError,
)
from thread_tracker.models import Category, Entry, Status, format_timestamp
from thread_tracker.normalizer import text_to_html
from thread_tracker.service import EntryService
from thread_tracker.users import UserDirectory

logger = logging.getLogger(__name__)

app = FastAPI(title="Thread Tracker (Local)")

_service: Optional[EntryService] = None

CSRF_HEADER = "X-Tracker-CSRF"
CSRF_TOKEN = secrets.token_urlsafe(32)
ALLOWED_HOSTS = {"127.0.0.1:8080", "localhost:8080", "testserver"}

STATUS_COLORS = {
    Status.NEW: "#2563eb",
    Status.IN_PROGRESS: "#d97706",
    Status.COMPLETE: "#16a34a",
    Status.CANCELLED: "#6b7280",
}

CATEGORY_COLORS = {
    Category.RFQ: "#7c3aed",
    Category.PO: "#0891b2",
    Category.ETA: "#ca8a04",
    Category.CLAIM: "#dc2626",
}

ERROR_STATUS_CODES = {
    EmptyContent: 400,
    NoIdentity: 400,
    InvalidValue: 400,
    ParentNotFound: 404,
    NotFound: 404,
    PersistenceError: 503,
}


def get_service() -> EntryService:
    """Return the process-wide service, building it from config on first use."""

    global _service
    if _service is None:
        try:
            _service = EntryService(build_persistence(load_config()))
        except TrackerError as exc:
            raise _http_error(exc) from exc
    return _service


def set_service(service: Optional[EntryService]) -> None:
    """Install a specific service (or clear it so the next request rebuilds)."""

    global _service
    _service = service


def _http_error(exc: TrackerError) -> HTTPException:
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
        400,
    )
    if status_code >= 500:
        logger.error(f"Request failed: {exc}")
    else:
        logger.warning(f"Request rejected: {exc}")
    return HTTPException(status_code=status_code, detail={"error": type(exc).__name__, "message": str(exc)})


def _serialize_entry(entry: Entry, users: UserDirectory) -> Dict[str, Any]:
    """Normalize an entry (and its replies) for the frontend."""

    data = entry.to_dict(include_children=False)
    data.update(
        {
            "heading": entry.heading,
            "authorName": users.display_name(entry.author_id),
            "editedByName": users.display_name(entry.edited_by or entry.author_id) if entry.edited_at else None,
            "statusColor": STATUS_COLORS[entry.status],
            "categoryColor": CATEGORY_COLORS[entry.category],
            "children": [_serialize_entry(child, users) for child in entry.children],
        }
    )
    return data


def _serialize_summary(root: Entry, users: UserDirectory) -> Dict[str, Any]:
    latest = latest_activity(root)
    return {
        "id": root.id,
        "heading": root.heading,
        "category": root.category.value,
        "description": root.description,
        "status": root.status.value,
        "statusColor": STATUS_COLORS[root.status],
        "categoryColor": CATEGORY_COLORS[root.category],
        "latest": format_timestamp(latest.timestamp),
        "latestBy": latest.author_id,
        "latestByName": users.display_name(latest.author_id),
        "latestContent": latest.content,
        "latestEntryId": latest.entry_id,
        "entryCount": thread_size(root),
    }


def _build_payload(service: EntryService) -> Dict[str, Any]:
    roots = service.roots()
    users = service.users
    return {
        "threads": [_serialize_entry(root, users) for root in roots],
        "summary": [_serialize_summary(root, users) for root in sorted_roots_by_activity(roots)],
        "users": users.to_records(),
        "categories": [category.value for category in Category],
        "statuses": [status.value for status in Status],
    }


def _origin_from_url(value: str | None) -> str | None:
    if not value:
        return None
    try:
        parsed = urlparse(value)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def _expected_origins(request: Request) -> Set[str]:
    host = request.headers.get("host")
    allowed_hosts = set(ALLOWED_HOSTS)
    if host:
        allowed_hosts.add(host)
    origins: Set[str] = set()
    for entry in allowed_hosts:
        origins.add(f"http://{entry}")
        origins.add(f"https://{entry}")
    return origins


def _require_authorized_post(request: Request) -> None:
    allowed_origins = _expected_origins(request)

    origin = _origin_from_url(request.headers.get("origin"))
    if origin and origin not in allowed_origins:
        raise HTTPException(status_code=403, detail="Cross-origin POST blocked")

    referer = _origin_from_url(request.headers.get("referer"))
    if referer and referer not in allowed_origins:
        raise HTTPException(status_code=403, detail="Cross-site POST blocked")

    token = request.headers.get(CSRF_HEADER)
    if token != CSRF_TOKEN:
        raise HTTPException(status_code=403, detail="Invalid or missing CSRF token")


def _optional_str(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail=f"{key} must be a string")
    return value


INDEX_HTML = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <meta name="tracker-csrf" content="__CSRF_TOKEN__" />
    <title>Daily Mail</title>
    <style>
      body { font-family: system-ui, -apple-system, "Segoe UI", Roboto, sans-serif; padding: 16px; }
      .card { border: 1px solid #ddd; padding: 8px; margin-top: 8px; }
      .row { display: flex; align-items: center; justify-content: space-between; }
      .heading { font-weight: bold; }
      .badge { border-radius: 4px; padding: 2px 6px; color: #fff; font-size: 0.75em; margin-left: 8px; }
      .meta { font-size: 0.8em; color: #666; }
      .editor { width: 100%; min-height: 80px; padding: 4px; border: 1px solid #ccc; overflow-y: auto; white-space: pre-wrap; }
      .error { color: #b91c1c; }
      button { margin-top: 4px; margin-right: 4px; }
    </style>
  </head>
  <body>
    <h1>Daily Mail</h1>
    <section id="compose">
      <label>User: <select id="identity"><option value="">Select initials</option></select></label>
      <input id="new-user-name" placeholder="New user name" />
      <input id="new-user-identity" placeholder="Initials" size="6" />
      <button id="add-user">Add User</button>
      <div>
        <label>Category: <select id="category"></select></label>
        <label>Status: <select id="status"></select></label>
      </div>
      <input id="description" placeholder="Description" style="width: 100%; margin-top: 4px" />
      <div id="message" class="editor" contenteditable="true"></div>
      <button id="save">Save</button>
      <span id="error" class="error"></span>
    </section>
    <nav>
      <button data-view="threads">Threads</button>
      <button data-view="all">All Updates</button>
    </nav>
    <main id="content"></main>
    <script>
      const csrf = document.querySelector('meta[name="tracker-csrf"]').content;
      let state = { threads: [], summary: [], users: [], categories: [], statuses: [] };
      let view = "threads";

      function escapeHtml(value) {
        return String(value ?? "")
          .replace(/&/g, "&amp;")
          .replace(/</g, "&lt;")
          .replace(/>/g, "&gt;")
          .replace(/"/g, "&quot;")
          .replace(/'/g, "&#39;");
      }

      async function post(url, body) {
        const response = await fetch(url, {
          method: "POST",
          headers: { "Content-Type": "application/json", "X-Tracker-CSRF": csrf },
          body: JSON.stringify(body),
        });
        const data = await response.json();
        if (!response.ok) {
          const detail = data.detail || {};
          throw new Error(detail.message || detail || response.statusText);
        }
        return data;
      }

      function showError(error) {
        document.getElementById("error").textContent = error ? error.message : "";
      }

      function identity() {
        return document.getElementById("identity").value;
      }

      function attachPaste(editor) {
        editor.addEventListener("paste", async (event) => {
          const html = event.clipboardData.getData("text/html");
          const text = event.clipboardData.getData("text/plain");
          if (!(html && /<table/i.test(html)) && !(text && /\\t/.test(text))) {
            return;
          }
          event.preventDefault();
          try {
            const result = await post("/api/paste", { html, text });
            if (result.handled) {
              document.execCommand("insertHTML", false, result.html);
            }
            showError(null);
          } catch (error) {
            showError(error);
          }
        });
      }

      function options(select, values, selected) {
        select.innerHTML = values
          .map((value) => `<option value="${escapeHtml(value)}"${value === selected ? " selected" : ""}>${escapeHtml(value)}</option>`)
          .join("");
      }

      function renderEntry(entry, depth) {
        const edited = entry.editedAt
          ? `<div class="meta">edited ${new Date(entry.editedAt).toLocaleString()} by ${escapeHtml(entry.editedByName)}</div>`
          : "";
        const children = entry.children.map((child) => renderEntry(child, depth + 1)).join("");
        return `
          <div class="card" style="margin-left: ${depth * 20}px" id="entry-${escapeHtml(entry.id)}">
            <div class="row">
              <span class="heading">${escapeHtml(entry.heading)}</span>
              <span class="badge" style="background: ${entry.statusColor}">${escapeHtml(entry.status)}</span>
            </div>
            <div class="meta">${escapeHtml(entry.authorName)} - ${new Date(entry.createdAt).toLocaleString()}</div>
            ${edited}
            <div class="body">${entry.content}</div>
            <button data-edit="${escapeHtml(entry.id)}">Edit</button>
            <button data-reply="${escapeHtml(entry.id)}">Reply</button>
            <div class="slot"></div>
            ${children}
          </div>`;
      }

      function renderSummary(item) {
        return `
          <div class="card">
            <div class="row">
              <span class="heading">${escapeHtml(item.heading)}</span>
              <span class="badge" style="background: ${item.statusColor}">${escapeHtml(item.status)}</span>
            </div>
            <div class="meta">Latest: ${new Date(item.latest).toLocaleString()} by ${escapeHtml(item.latestByName)}</div>
          </div>`;
      }

      function render() {
        const users = document.getElementById("identity");
        const current = users.value;
        users.innerHTML = '<option value="">Select initials</option>' + state.users
          .map((user) => `<option value="${escapeHtml(user.identity)}">${escapeHtml(user.identity)}</option>`)
          .join("");
        users.value = current;
        const content = document.getElementById("content");
        content.innerHTML = view === "threads"
          ? state.threads.map((entry) => renderEntry(entry, 0)).join("")
          : state.summary.map(renderSummary).join("");
      }

      async function refresh() {
        const response = await fetch("/api/data");
        state = await response.json();
        render();
      }

      function findEntry(list, id) {
        for (const entry of list) {
          if (entry.id === id) return entry;
          const found = findEntry(entry.children, id);
          if (found) return found;
        }
        return null;
      }

      function openEditor(card, entry, replying) {
        const slot = card.querySelector(".slot");
        const statusSelect = replying ? "" : `<select class="edit-status"></select>`;
        slot.innerHTML = `${statusSelect}<div class="editor" contenteditable="true"></div><button class="submit">${replying ? "Save Reply" : "Save"}</button>`;
        const editor = slot.querySelector(".editor");
        if (!replying) {
          editor.innerHTML = entry.content;
          options(slot.querySelector(".edit-status"), state.statuses, entry.status);
        }
        attachPaste(editor);
        slot.querySelector(".submit").addEventListener("click", async () => {
          try {
            if (replying) {
              await post("/api/entries", { parentId: entry.id, content: editor.innerHTML, identity: identity() });
            } else {
              const status = slot.querySelector(".edit-status").value;
              await post(`/api/entries/${entry.id}`, { content: editor.innerHTML, status, identity: identity() });
            }
            showError(null);
            await refresh();
          } catch (error) {
            showError(error);
          }
        });
      }

      document.getElementById("content").addEventListener("click", (event) => {
        const id = event.target.dataset.edit || event.target.dataset.reply;
        if (!id) return;
        const entry = findEntry(state.threads, id);
        openEditor(event.target.closest(".card"), entry, Boolean(event.target.dataset.reply));
      });

      document.querySelectorAll("nav button").forEach((button) =>
        button.addEventListener("click", () => { view = button.dataset.view; render(); })
      );

      document.getElementById("add-user").addEventListener("click", async () => {
        const nameInput = document.getElementById("new-user-name");
        const identityInput = document.getElementById("new-user-identity");
        try {
          const result = await post("/api/users", { identity: identityInput.value, displayName: nameInput.value });
          nameInput.value = "";
          identityInput.value = "";
          await refresh();
          document.getElementById("identity").value = result.user.identity;
          showError(null);
        } catch (error) {
          showError(error);
        }
      });

      document.getElementById("save").addEventListener("click", async () => {
        const message = document.getElementById("message");
        try {
          const result = await post("/api/entries", {
            content: message.innerHTML,
            category: document.getElementById("category").value,
            description: document.getElementById("description").value,
            status: document.getElementById("status").value,
            identity: identity(),
          });
          message.innerHTML = result.form.content;
          document.getElementById("description").value = result.form.description;
          options(document.getElementById("category"), state.categories, result.form.category);
          options(document.getElementById("status"), state.statuses, result.form.status);
          showError(null);
          await refresh();
        } catch (error) {
          showError(error);
        }
      });

      attachPaste(document.getElementById("message"));
      refresh().then(() => {
        options(document.getElementById("category"), state.categories, "__DEFAULT_CATEGORY__");
        options(document.getElementById("status"), state.statuses, "__DEFAULT_STATUS__");
      });
    </script>
  </body>
</html>
"""


@app.get("/", response_class=HTMLResponse)
async def index() -> HTMLResponse:
    """Render the tracker page."""

    config = load_config()
    html = (
        INDEX_HTML
        .replace("__CSRF_TOKEN__", CSRF_TOKEN)
        .replace("__DEFAULT_CATEGORY__", config.default_category)
        .replace("__DEFAULT_STATUS__", config.default_status)
    )
    return HTMLResponse(content=html)


@app.get("/api/data")
async def get_data() -> JSONResponse:
    """Return every thread plus the recency-sorted summary."""

    return JSONResponse(_build_payload(get_service()))


@app.get("/api/entries/{entry_id}")
async def get_entry(entry_id: str) -> JSONResponse:
    """Return one entry with its thread's latest activity and edit history."""

    service = get_service()
    try:
        entry = service.find_by_id(entry_id)
        latest = service.latest_activity(entry_id)
        history = service.thread_history(entry_id)
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return JSONResponse({
        "entry": _serialize_entry(entry, service.users),
        "latest": latest.to_dict(),
        "history": [state.to_dict() for state in history],
    })


@app.get("/api/export")
async def export_rows() -> JSONResponse:
    """Return every entry as flat pre-order rows linked by ``parentId``."""

    service = get_service()
    return JSONResponse({"entries": service.rows(), "users": service.users.to_records()})


@app.post("/api/entries")
async def create_entry(payload: Dict[str, Any], request: Request) -> JSONResponse:
    """Create a new thread, or a reply when ``parentId`` is given."""

    _require_authorized_post(request)

    config = load_config()
    service = get_service()
    parent_id = _optional_str(payload, "parentId")
    content = _optional_str(payload, "content") or ""
    identity = _optional_str(payload, "identity")
    description = _optional_str(payload, "description") or ""
    try:
        if parent_id is not None:
            entry = service.create_entry(parent_id, content, caller_identity=identity)
            return JSONResponse({"status": "ok", "entry": _serialize_entry(entry, service.users)})

        form = Composer(
            content=content,
            category=payload.get("category") or config.default_category,
            description=description,
            status=payload.get("status") or config.default_status,
            default_category=Category.parse(config.default_category),
            default_status=Status.parse(config.default_status),
        )
        entry = form.submit(service, identity)
    except TrackerError as exc:
        raise _http_error(exc) from exc
    # The form is only cleared by a successful submit.
    return JSONResponse({"status": "ok", "entry": _serialize_entry(entry, service.users), "form": form.to_dict()})


@app.post("/api/entries/{entry_id}")
async def update_entry(entry_id: str, payload: Dict[str, Any], request: Request) -> JSONResponse:
    """Replace an entry's content and/or status."""

    _require_authorized_post(request)

    service = get_service()
    try:
        entry = service.update_entry(
            entry_id,
            content=_optional_str(payload, "content"),
            status=payload.get("status"),
            caller_identity=_optional_str(payload, "identity"),
        )
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return JSONResponse({"status": "ok", "entry": _serialize_entry(entry, service.users)})


@app.post("/api/users")
async def register_user(payload: Dict[str, Any], request: Request) -> JSONResponse:
    """Ensure a user exists; registering an existing identity is a no-op."""

    _require_authorized_post(request)

    service = get_service()
    try:
        user = service.register_user(
            _optional_str(payload, "identity") or "",
            _optional_str(payload, "displayName") or "",
        )
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return JSONResponse({"status": "ok", "user": user.to_dict()})


@app.post("/api/paste")
async def paste(payload: Dict[str, Any], request: Request) -> JSONResponse:
    """Normalize a clipboard payload into sanitized HTML."""

    _require_authorized_post(request)

    html = _optional_str(payload, "html")
    text = _optional_str(payload, "text")
    form = Composer()
    handled = form.paste(html, text)
    converted = form.content
    if not handled and payload.get("convertText") and text:
        converted = text_to_html(text)
    return JSONResponse({"html": converted, "handled": handled})


@app.post("/api/config/defaults")
async def update_defaults(payload: Dict[str, Any], request: Request) -> JSONResponse:
    """Change the category and status preselected for new threads."""

    _require_authorized_post(request)

    config = load_config()
    try:
        if payload.get("defaultCategory") is not None:
            config.default_category = Category.parse(payload["defaultCategory"]).value
        if payload.get("defaultStatus") is not None:
            config.default_status = Status.parse(payload["defaultStatus"]).value
    except TrackerError as exc:
        raise _http_error(exc) from exc
    save_config(config)
    return JSONResponse({
        "status": "ok",
        "defaultCategory": config.default_category,
        "defaultStatus": config.default_status,
    })


@app.post("/api/reload")
async def reload(request: Request) -> JSONResponse:
    """Reload threads and users from the persistence backend."""

    _require_authorized_post(request)

    try:
        get_service().reload()
    except TrackerError as exc:
        raise _http_error(exc) from exc
    return JSONResponse({"status": "ok"})


@app.get("/api/health")
async def health_check() -> JSONResponse:
    """Health check endpoint with store counts."""

    service = get_service()
    return JSONResponse({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "threads": len(service.roots()),
        "entries": len(service.store),
        "users": len(service.users),
        "persistence": type(service.persistence).__name__,
    })


def run() -> None:
    """Convenience entry point for running with `python -m`."""

    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "thread_tracker.local_app:app",
        host="127.0.0.1",
        port=8080,
        reload=True,
    )


if __name__ == "__main__":
    run()
