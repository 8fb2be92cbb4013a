"""Find ```widget fenced blocks in message content."""
import re
from dataclasses import dataclass

WIDGET_BLOCK_RE = re.compile(r"```widget\n(.*?)```", re.DOTALL)
_WIDGET_ID_RE = re.compile(r"widget-id:\s*([\w-]+)", re.IGNORECASE)
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass
class WidgetBlock:
    id: str
    code: str


def extract_widgets(content: str) -> list[WidgetBlock]:
    """All widget blocks of a message, in order of appearance."""
    blocks = []
    for match in WIDGET_BLOCK_RE.finditer(content or ""):
        code = match.group(1).strip()
        blocks.append(WidgetBlock(id=extract_widget_id(code), code=code))
    return blocks


def has_widgets(content: str) -> bool:
    return WIDGET_BLOCK_RE.search(content or "") is not None


def _to_base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, r = divmod(n, 36)
        digits.append(_BASE36[r])
    return "".join(reversed(digits))


def extract_widget_id(code: str) -> str:
    """
    Stable id for a widget: an explicit `widget-id: <id>` marker wins,
    otherwise a 32-bit string hash of the code rendered as `w<base36>`.
    """
    match = _WIDGET_ID_RE.search(code)
    if match:
        return match.group(1)

    # Hash UTF-16 code units so ids agree with the browser-side renderer.
    data = code.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 1 << 32
    return "w" + _to_base36(abs(h))
