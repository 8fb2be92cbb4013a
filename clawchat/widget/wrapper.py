"""
Widget HTML wrapping: injects the reset CSS and the widget runtime script
into agent-authored HTML before it is loaded into a sandboxed frame.
"""
import json
import re
from functools import lru_cache
from pathlib import Path

from clawchat.config import WIDGET_REQUEST_TIMEOUT
from clawchat.db.models import DEFAULT_CONVERSATION

EMBEDDED = "embedded"
FULLSCREEN = "fullscreen"
LAYOUT_MODES = (EMBEDDED, FULLSCREEN)

_STATIC_DIR = Path(__file__).parent / "static"

CSS_RESET_BASE = """
  *, *::before, *::after { box-sizing: border-box; }
  html, body { margin: 0; padding: 0; }
"""

CSS_RESET_EMBEDDED = CSS_RESET_BASE + """
  html, body { overflow: hidden; }
  :root { --widget-layout: embedded; }
"""

CSS_RESET_FULLSCREEN = CSS_RESET_BASE + """
  html, body { height: 100% !important; min-height: 100% !important; }
  :root { --widget-layout: fullscreen; }
"""

_HTML_TAG_RE = re.compile(r"<html((?:\s[^>]*)?)>", re.IGNORECASE)
_HEAD_TAG_RE = re.compile(r"<head((?:\s[^>]*)?)>", re.IGNORECASE)
_HAS_HTML_RE = re.compile(r"<html[\s>]", re.IGNORECASE)
_HAS_HEAD_RE = re.compile(r"<head[\s>]", re.IGNORECASE)


@lru_cache(maxsize=1)
def _runtime_template() -> str:
    return (_STATIC_DIR / "widget-runtime.js").read_text(encoding="utf-8")


def runtime_script(mode: str = EMBEDDED, conversation_id: str = DEFAULT_CONVERSATION,
                   request_timeout: float = WIDGET_REQUEST_TIMEOUT) -> str:
    """
    The runtime JS for one layout mode.

    `embedded` talks to the host page over postMessage; `fullscreen` is opened
    as its own tab and talks HTTP + SSE to the server directly.
    """
    if mode not in LAYOUT_MODES:
        raise ValueError(f"Unknown widget layout mode '{mode}'")
    # json.dumps()[1:-1] yields a JS-safe string body for the quoted placeholder
    conv = json.dumps(conversation_id)[1:-1].replace("<", "\\u003c").replace("'", "\\u0027")
    return (
        _runtime_template()
        .replace("__LAYOUT_MODE__", mode)
        .replace("__TRANSPORT__", "http" if mode == FULLSCREEN else "postMessage")
        .replace("__CONVERSATION_ID__", conv)
        .replace("__REQUEST_TIMEOUT_MS__", str(int(request_timeout * 1000)))
    )


def inject_into_html(html: str, css: str, js: str) -> str:
    """Place `<style>` + `<script>` at the start of `<head>`, creating it (or a whole document) if missing."""
    injection = f"<style>{css}</style><script>{js}</script>"

    if _HAS_HTML_RE.search(html):
        # Callable replacements keep backslashes in the script literal.
        if _HAS_HEAD_RE.search(html):
            return _HEAD_TAG_RE.sub(lambda m: f"<head{m.group(1)}>{injection}", html, count=1)
        return _HTML_TAG_RE.sub(lambda m: f"<html{m.group(1)}><head>{injection}</head>", html, count=1)

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
{injection}
</head>
<body>
{html}
</body>
</html>"""


def wrap_widget_html(html: str, mode: str = EMBEDDED, conversation_id: str = DEFAULT_CONVERSATION) -> str:
    css = CSS_RESET_FULLSCREEN if mode == FULLSCREEN else CSS_RESET_EMBEDDED
    return inject_into_html(html, css, runtime_script(mode, conversation_id))
