"""HTML rendering of code diffs for notification emails."""

import difflib
import html
from typing import Iterable, List

from smart_worker.models.failure import CodeChange

ADDED_STYLE = "background-color: #e6ffec; color: #1a7f37;"
REMOVED_STYLE = "background-color: #ffebe9; color: #cf222e; text-decoration: line-through;"
UNCHANGED_STYLE = "color: #6a737d;"
WRAPPER_STYLE = (
    "font-family: ui-monospace, SFMono-Regular, Menlo, Consolas, monospace; "
    "font-size: 12px; white-space: pre-wrap;"
)


def _span(style: str, text: str) -> str:
    return f'<span style="{style}">{html.escape(text)}</span>'


def render_diff_html(old: str, new: str) -> str:
    """Render a line diff between two code versions as inline-styled HTML.

    Args:
        old: Original code.
        new: Rewritten code.

    Returns:
        An HTML fragment wrapped in a monospace ``div``.
    """
    old_lines = old.splitlines()
    new_lines = new.splitlines()
    parts: List[str] = []

    matcher = difflib.SequenceMatcher(a=old_lines, b=new_lines, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            parts.extend(_span(UNCHANGED_STYLE, line) for line in old_lines[i1:i2])
            continue
        # replace shows removals before additions
        if tag in ("delete", "replace"):
            parts.extend(_span(REMOVED_STYLE, line) for line in old_lines[i1:i2])
        if tag in ("insert", "replace"):
            parts.extend(_span(ADDED_STYLE, line) for line in new_lines[j1:j2])

    return f'<div style="{WRAPPER_STYLE}">' + "<br>".join(parts) + "</div>"


def render_changes_html(changes: Iterable[CodeChange]) -> str:
    """Render every change as a path heading followed by its diff."""
    blocks = []
    for change in changes:
        blocks.append(
            f"<b>Path</b>: {html.escape(change.path)}<br>"
            f"<b>Code</b>: <br><br><code>"
            f"{render_diff_html(change.original_code, change.code)}</code><br>"
        )
    return "<br><br>".join(blocks)
