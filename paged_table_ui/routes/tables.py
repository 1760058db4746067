"""Blueprint for table sessions: query, selection, keyboard and column actions."""

from __future__ import annotations

import io
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from flask import Blueprint, current_app, jsonify, request, send_file

from ..config import load_settings
from ..services.columns import Column
from ..services.controller import TableController
from ..services.navigation import KeyEvent
from ..services.runtime import TableRuntime, TableSession

bp = Blueprint("tables", __name__, url_prefix="/api")
logger = logging.getLogger(__name__)

Action = Callable[[TableController, Dict[str, Any]], Any]


def get_runtime() -> TableRuntime:
    return current_app.extensions["paged_table_ui"]


def json_payload() -> Dict[str, Any]:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def session_or_404(table_id: str) -> Tuple[Optional[TableSession], Optional[Any]]:
    session = get_runtime().get_session(table_id)
    if session is None:
        logger.warning("Unknown table session %s", table_id)
        return None, (jsonify({"error": "table not found"}), 404)
    return session, None


def _view_payload(session: TableSession) -> Dict[str, Any]:
    view = get_runtime().view(session)
    payload = view.to_dict()
    payload["tableId"] = session.session_id
    payload["lastEvent"] = session.controller.events.last_sequence
    return payload


def _parse_columns(raw: Any) -> List[Column]:
    if not isinstance(raw, list) or not raw:
        raise ValueError("columns must be a non-empty list")
    return [Column.from_payload(entry) for entry in raw]


@bp.route("/tables", methods=["POST"])
def api_open_table():
    data = json_payload()
    settings = load_settings(data)
    if not settings.url:
        logger.warning("POST /api/tables missing collection url")
        return jsonify({"error": "url is required"}), 400
    try:
        columns = _parse_columns(data.get("columns"))
        raw_table_id = data.get("tableId")
        table_id = str(raw_table_id).strip() if raw_table_id is not None else None
        session = get_runtime().open_session(
            settings, columns, table_id=table_id or None, wait=bool(data.get("wait"))
        )
    except ValueError as exc:
        logger.warning("POST /api/tables rejected: %s", exc)
        return jsonify({"error": str(exc)}), 400

    logger.info(
        "POST /api/tables url=%s table=%s columns=%d",
        settings.url,
        session.session_id,
        len(columns),
    )
    return jsonify(_view_payload(session)), 201


@bp.route("/tables/<table_id>", methods=["GET"])
def api_table_view(table_id: str):
    session, error = session_or_404(table_id)
    if error is not None:
        return error
    assert session is not None
    return jsonify(_view_payload(session))


@bp.route("/tables/<table_id>", methods=["DELETE"])
def api_close_table(table_id: str):
    if not get_runtime().close_session(table_id):
        return jsonify({"error": "table not found"}), 404
    return jsonify({"tableId": table_id, "closed": True})


@bp.route("/tables/<table_id>/events", methods=["GET"])
def api_table_events(table_id: str):
    session, error = session_or_404(table_id)
    if error is not None:
        return error
    assert session is not None
    try:
        since = int(request.args.get("since", 0))
    except (TypeError, ValueError):
        since = 0
    notifications = get_runtime().call_sync(session.controller.events.history, since)
    return jsonify({"events": [item.to_dict() for item in notifications]})


QUERY_ACTIONS: Dict[str, Action] = {
    "search": lambda controller, data: controller.search(data.get("value")),
    "filter": lambda controller, data: controller.filter_column(
        str(data.get("column") or ""), data.get("value")
    ),
    "clearFilters": lambda controller, data: controller.clear_filters(),
    "sort": lambda controller, data: controller.sort(
        str(data.get("column") or ""), data.get("direction")
    ),
    "clearSort": lambda controller, data: controller.clear_sort(),
    "page": lambda controller, data: controller.go_to_page(data.get("value")),
    "nextPage": lambda controller, data: controller.next_page(),
    "previousPage": lambda controller, data: controller.previous_page(),
    "firstPage": lambda controller, data: controller.first_page(),
    "lastPage": lambda controller, data: controller.last_page(),
    "perPage": lambda controller, data: controller.set_page_size(data.get("value")),
    "reset": lambda controller, data: controller.reset(),
    "reload": lambda controller, data: controller.reload(),
}

SELECTION_ACTIONS: Dict[str, Action] = {
    "select": lambda controller, data: controller.select(data.get("id")),
    "deselect": lambda controller, data: controller.deselect(data.get("id")),
    "toggle": lambda controller, data: controller.toggle(
        data.get("id"), data.get("force")
    ),
    "selectAll": lambda controller, data: controller.select_all(),
    "clear": lambda controller, data: controller.clear_selection(),
    "set": lambda controller, data: controller.set_selection(list(data.get("ids") or [])),
    "invert": lambda controller, data: controller.invert_selection(),
    "range": lambda controller, data: controller.select_range(
        data.get("from"), data.get("to")
    ),
    "mode": lambda controller, data: controller.set_select_mode(str(data.get("mode") or "")),
}

COLUMN_ACTIONS: Dict[str, Action] = {
    "show": lambda controller, data: controller.set_column_visible(
        str(data.get("column") or ""), True
    ),
    "hide": lambda controller, data: controller.set_column_visible(
        str(data.get("column") or ""), False
    ),
    "toggle": lambda controller, data: controller.set_column_visible(
        str(data.get("column") or "")
    ),
    "showAll": lambda controller, data: controller.show_all_columns(),
    "hideAll": lambda controller, data: controller.hide_all_columns(),
    "reset": lambda controller, data: controller.reset_columns(),
}


def _dispatch(table_id: str, actions: Dict[str, Action], endpoint: str):
    session, error = session_or_404(table_id)
    if error is not None:
        return error
    assert session is not None
    data = json_payload()
    action_name = str(data.get("action") or "")
    action = actions.get(action_name)
    if action is None:
        logger.warning("POST %s unknown action %r", endpoint, action_name)
        return jsonify({"error": f"unknown action: {action_name or '(missing)'}"}), 400

    logger.info("POST %s table=%s action=%s", endpoint, table_id, action_name)
    get_runtime().act(
        session, lambda controller: action(controller, data), wait=bool(data.get("wait"))
    )
    return jsonify(_view_payload(session))


@bp.route("/tables/<table_id>/query", methods=["POST"])
def api_table_query(table_id: str):
    return _dispatch(table_id, QUERY_ACTIONS, "/api/tables/query")


@bp.route("/tables/<table_id>/selection", methods=["POST"])
def api_table_selection(table_id: str):
    return _dispatch(table_id, SELECTION_ACTIONS, "/api/tables/selection")


@bp.route("/tables/<table_id>/columns", methods=["POST"])
def api_table_columns(table_id: str):
    return _dispatch(table_id, COLUMN_ACTIONS, "/api/tables/columns")


@bp.route("/tables/<table_id>/keys", methods=["POST"])
def api_table_key(table_id: str):
    session, error = session_or_404(table_id)
    if error is not None:
        return error
    assert session is not None
    data = json_payload()
    event = KeyEvent.from_payload(data)
    if not event.key:
        return jsonify({"error": "key is required"}), 400

    def press(controller: TableController):
        session.surface.text_entry = bool(data.get("textEntryFocused"))
        return controller.handle_key(event)

    command = get_runtime().act(session, press, wait=bool(data.get("wait")))
    payload = _view_payload(session)
    payload["command"] = command.value if command is not None else None
    return jsonify(payload)


def _json_download(content: str, file_name: str):
    return send_file(
        io.BytesIO(content.encode("utf-8")),
        mimetype="application/json",
        as_attachment=True,
        download_name=file_name,
    )


@bp.route("/tables/<table_id>/selected.json", methods=["GET"])
def api_download_selected(table_id: str):
    session, error = session_or_404(table_id)
    if error is not None:
        return error
    assert session is not None
    content = get_runtime().call_sync(session.controller.selected_json)
    return _json_download(content, "selected-data.json")


@bp.route("/tables/<table_id>/page.json", methods=["GET"])
def api_download_page(table_id: str):
    session, error = session_or_404(table_id)
    if error is not None:
        return error
    assert session is not None
    content = get_runtime().call_sync(session.controller.page_json)
    return _json_download(content, "table-data.json")
