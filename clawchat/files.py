"""
On-disk files owned by the chat: uploaded attachments in the shared
directory (served at /chat-public) and the agent's editable prompt files.
"""
import logging
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from clawchat.db.models import Attachment

logger = logging.getLogger(__name__)

_CHUNK = 64 * 1024
PROMPT_ORDER = ("system.md", "user.md", "memory.md")


class UploadTooLarge(Exception):
    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"File too large (max {limit} bytes)")


class PromptNotFound(Exception):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Prompt not found: {name}")


# ─────────────────────────────────────────────
# Uploads
# ─────────────────────────────────────────────

def resolve_filename(directory: Path, original: str) -> str:
    """Keep the uploaded name, adding `(2)`, `(3)`, ... before the extension on collision."""
    name = Path(original).name or "upload"
    stem, suffix = Path(name).stem, Path(name).suffix
    candidate, n = name, 2
    while (directory / candidate).exists():
        candidate = f"{stem}({n}){suffix}"
        n += 1
    return candidate


async def save_upload(directory: Path, upload: UploadFile, max_bytes: int) -> tuple[Attachment, Path]:
    """Stream an upload into `directory`. A file over `max_bytes` is removed and rejected."""
    directory.mkdir(parents=True, exist_ok=True)
    filename = resolve_filename(directory, upload.filename or "upload")
    target = directory / filename
    size = 0
    try:
        with open(target, "wb") as f:
            while True:
                chunk = await upload.read(_CHUNK)
                if not chunk:
                    break
                size += len(chunk)
                if size > max_bytes:
                    raise UploadTooLarge(max_bytes)
                f.write(chunk)
    except UploadTooLarge:
        target.unlink(missing_ok=True)
        raise
    logger.info(f"[Upload] Saved {filename} ({size} bytes)")
    mimetype = upload.content_type or "application/octet-stream"
    return Attachment(filename=filename, mimetype=mimetype, size=size), target


def shared_file(directory: Path, path: str) -> Optional[Path]:
    """Resolve a request path inside `directory`, or None when it escapes or is missing."""
    root = directory.resolve()
    target = (root / path).resolve()
    if root not in target.parents or not target.is_file():
        return None
    return target


# ─────────────────────────────────────────────
# Prompts
# ─────────────────────────────────────────────

def _prompt_sort_key(filename: str):
    if filename in PROMPT_ORDER:
        return (0, PROMPT_ORDER.index(filename), "")
    return (1, 0, filename)


def list_prompts(prompts_dir: Path) -> list[dict]:
    """`<name>.md` files, well-known names first. Descriptions come from `<name>.description.txt`."""
    if not prompts_dir.is_dir():
        return []
    files = sorted(
        (p.name for p in prompts_dir.iterdir()
         if p.is_file() and p.name.endswith(".md") and not p.name.endswith(".description.md")),
        key=_prompt_sort_key,
    )
    prompts = []
    for filename in files:
        name = filename[:-len(".md")]
        desc_file = prompts_dir / f"{name}.description.txt"
        description = desc_file.read_text(encoding="utf-8").strip() if desc_file.is_file() else None
        prompts.append({"name": name, "description": description})
    return prompts


def _prompt_path(prompts_dir: Path, name: str) -> Path:
    if name not in {p["name"] for p in list_prompts(prompts_dir)}:
        raise PromptNotFound(name)
    return prompts_dir / f"{name}.md"


def read_prompt(prompts_dir: Path, name: str) -> str:
    return _prompt_path(prompts_dir, name).read_text(encoding="utf-8")


def write_prompt(prompts_dir: Path, name: str, content: str) -> None:
    """Overwrite an existing prompt. New prompts are not created through the API."""
    _prompt_path(prompts_dir, name).write_text(content, encoding="utf-8")
