"""
Field renderer.

Turns a submitted field mapping into the HTML body of the notification
email: a heading followed by a two-column table, one row per field in the
mapping's insertion order.

Keys and values are HTML-escaped before they are embedded. Form submissions
come from the public internet, so a value such as ``<script>`` must show up
as text in the recipient's mail client rather than as markup.
"""

import html
from typing import Any, Mapping

_KEY_CELL_STYLE = "padding:6px 10px;border:1px solid #eee;font-weight:600"
_VALUE_CELL_STYLE = "padding:6px 10px;border:1px solid #eee"
_TABLE_STYLE = "border-collapse:collapse;border:1px solid #eee"
_WRAPPER_STYLE = "font-family:Inter,Arial,sans-serif"

EMAIL_HEADING = "New Form Submission"


def format_value(value: Any) -> str:
    """
    Render a single field value as plain text.

    Sequences are joined with ", ", None becomes the empty string and any
    other scalar is passed through str().
    """
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join("" if v is None else str(v) for v in value)
    return str(value)


def render_rows(fields: Mapping[str, Any]) -> str:
    """Return the concatenated <tr> elements for every field, in order."""
    rows = []
    for key, value in fields.items():
        rows.append(
            f'<tr><td style="{_KEY_CELL_STYLE}">{html.escape(str(key))}</td>'
            f'<td style="{_VALUE_CELL_STYLE}">{html.escape(format_value(value))}</td></tr>'
        )
    return "".join(rows)


def build_html_from_fields(fields: Mapping[str, Any]) -> str:
    """Wrap the rendered rows in the email's heading and table markup."""
    return (
        f'<div style="{_WRAPPER_STYLE}">'
        f'<h2 style="margin:0 0 8px 0">{EMAIL_HEADING}</h2>'
        f'<table style="{_TABLE_STYLE}">{render_rows(fields)}</table>'
        "</div>"
    )
