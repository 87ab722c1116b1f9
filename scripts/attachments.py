#!/usr/bin/env python3
"""
Attachment handling: validate files, upload what the composer accepts,
and inline the rest into the prompt as text.

Prompts may reference files directly:

    @notes.md               uploaded, replaced by [attached: notes.md]
    @"my notes/todo.txt"    quoted path with spaces
    @src/app.py:23-90       lines 23..90 inlined as a numbered code block
    @src/app.py:42          a single line
"""

import os
import re
from pathlib import Path

import page_scripts
from config import MAX_UPLOAD_FILES, MAX_FILE_SIZE
from errors import AttachmentError

KNOWN_EXTENSIONS = {
    "txt", "md", "markdown", "csv", "json", "js", "ts", "jsx", "tsx", "py",
    "java", "c", "cpp", "h", "hpp", "go", "rs", "swift", "kt", "kts", "m",
    "mm", "php", "rb", "cs", "fs", "fsx", "scala", "sc", "sql", "toml", "ini",
    "conf", "xml", "yaml", "yml", "html", "css", "pdf", "doc", "docx", "xls",
    "xlsx", "png", "jpg", "jpeg", "gif", "svg", "webp", "zip", "tar", "gz",
    "proto", "graphql", "gql",
}
KNOWN_FILENAMES = {
    "makefile", "dockerfile", "readme", "readme.md", "readme.txt",
    "license", "license.md", "license.txt",
}

FILE_REF_RE = re.compile(r'@(?:"([^"]+)"|\'([^\']+)\'|(\S+))(?::(\d+)(?:-(\d+))?)?')
_TRAILING_PUNCT_RE = re.compile(r'^(.*?)([),.;!?:\]}]+)$')
_LINE_RANGE_RE = re.compile(r':(\d+)(?:-(\d+))?$')
_PATH_CHARS_RE = re.compile(r'^[A-Za-z0-9._~\\/:-]+$')
_EXPLICIT_PREFIX_RE = re.compile(r'^(~|/|\./|\.\./|[A-Za-z]:[\\/])')


def _quiet(msg: str) -> None:
    pass


def _attachment_for(path: Path) -> dict:
    size = path.stat().st_size
    if size > MAX_FILE_SIZE:
        raise AttachmentError(
            f"{path.name} is {size / (1024 * 1024):.1f}MB; limit is {MAX_FILE_SIZE // (1024 * 1024)}MB"
        )
    return {"path": str(path), "display_name": path.name}


def resolve_attachments(paths: list[str]) -> list[dict]:
    """Turn CLI paths into [{path, display_name}], rejecting unusable files."""
    missing = [p for p in paths if not Path(p).is_file()]
    if missing:
        raise AttachmentError(f"File(s) not found: {', '.join(missing)}")
    return [_attachment_for(Path(p).resolve()) for p in paths]


def merge_attachments(*groups: list[dict]) -> list[dict]:
    """Concatenate attachment lists, keeping the first entry per path."""
    merged, seen = [], set()
    for group in groups:
        for attachment in group:
            if attachment["path"] not in seen:
                seen.add(attachment["path"])
                merged.append(attachment)
    return merged


# ── @file references ──────────────────────────────────────────────────

def _split_trailing_punctuation(ref: str) -> tuple[str, str]:
    match = _TRAILING_PUNCT_RE.match(ref)
    if not match:
        return ref, ""
    return match.group(1), match.group(2)


def looks_like_file_ref(ref: str, quoted: bool = False, prev_char: str = "") -> bool:
    """Tell `@path` apart from emails, handles and URLs."""
    if quoted:
        return True
    if not ref:
        return False
    if prev_char and re.match(r'[A-Za-z0-9._%+-]', prev_char):
        return False

    bare = _LINE_RANGE_RE.sub("", ref)
    if "@" in bare or re.match(r'^https?://', bare, re.IGNORECASE):
        return False
    if not _PATH_CHARS_RE.match(bare):
        return False
    if _EXPLICIT_PREFIX_RE.match(bare):
        return True

    base = re.split(r'[\\/]', bare)[-1]
    ext = os.path.splitext(base)[1][1:].lower()
    if base.startswith(".") or base.lower() in KNOWN_FILENAMES:
        return True
    if "/" in bare or "\\" in bare:
        return bool(ext)
    return ext in KNOWN_EXTENSIONS


def parse_line_range(ref: str) -> tuple[str, tuple[int, int] | None]:
    """Split `file.py:23-90` into ("file.py", (23, 90)); a single line gives (n, n)."""
    match = _LINE_RANGE_RE.search(ref)
    if not match:
        return ref, None
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else start
    if start < 1 or end < start:
        raise AttachmentError(f"Invalid line range: {match.group(0)} (must be positive, end >= start)")
    return ref[:match.start()], (start, end)


def inline_line_range(path: Path, start: int, end: int) -> str:
    """Lines start..end (1-indexed, inclusive) as a code block, each prefixed by its number."""
    lines = path.read_text(encoding="utf-8", errors="replace").split("\n")
    if start > len(lines):
        raise AttachmentError(f"Line {start} exceeds file length ({len(lines)} lines): {path.name}")
    selected = lines[start - 1:min(end, len(lines))]
    numbered = "\n".join(f"{start + i}\t{line}" for i, line in enumerate(selected))
    return f"```{path.suffix[1:]}\n{numbered}\n```"


def parse_prompt_attachments(prompt: str, cwd: Path | None = None) -> tuple[str, list[dict]]:
    """
    Expand @file references in `prompt`.

    Returns:
        (prompt with references rewritten, attachments to upload)

    Raises:
        AttachmentError: a referenced file is missing, is not a file, or
            the line range is invalid.
    """
    cwd = Path(cwd or Path.cwd())
    attachments: dict[str, dict] = {}
    inlined = set()

    def replace(match: re.Match) -> str:
        quoted = match.group(1) or match.group(2)
        raw_path = quoted or match.group(3)
        suffix = ""
        if match.group(4):
            suffix = f":{match.group(4)}" + (f"-{match.group(5)}" if match.group(5) else "")
        ref, trailing = _split_trailing_punctuation(raw_path + suffix)
        prev_char = prompt[match.start() - 1] if match.start() > 0 else ""
        if not looks_like_file_ref(ref, quoted=bool(quoted), prev_char=prev_char):
            return match.group(0)

        file_ref, line_range = parse_line_range(ref)
        path = Path(file_ref).expanduser()
        if not path.is_absolute():
            path = cwd / path
        path = path.resolve()
        if not path.exists():
            raise AttachmentError(f"File not found: {file_ref} (resolved to {path})")
        if not path.is_file():
            raise AttachmentError(f"Not a file: {file_ref} (resolved to {path})")

        if line_range:
            start, end = line_range
            key = (str(path), start, end)
            if key in inlined:
                return f"[see {path.name}:L{start}-{end} above]{trailing}"
            inlined.add(key)
            return inline_line_range(path, start, end) + trailing

        if str(path) not in attachments:
            attachments[str(path)] = _attachment_for(path)
        return f"[attached: {path.name}]{trailing}"

    return FILE_REF_RE.sub(replace, prompt), list(attachments.values())


async def upload_attachments(page, attachments: list[dict], log=_quiet) -> list[dict]:
    """
    Attach up to MAX_UPLOAD_FILES files to the composer.

    Returns:
        The attachments that were not uploaded (over the count limit, or
        all of them when the file chooser could not be driven).
    """
    if not attachments:
        return []
    batch = attachments[:MAX_UPLOAD_FILES]
    overflow = attachments[MAX_UPLOAD_FILES:]

    log(f"[upload] attaching {len(batch)} file(s): {[a['display_name'] for a in batch]}")
    if not await page.upload_files([a["path"] for a in batch]):
        log("[upload] file chooser not triggered; inlining all attachments")
        return list(attachments)

    try:
        chips = await page.evaluate(page_scripts.ATTACHMENT_COUNT)
        log(f"[upload] attachment indicators: {chips}")
    except Exception as e:
        log(f"[upload] could not count attachment indicators: {e}")

    if overflow:
        log(f"[upload] {len(overflow)} file(s) over the {MAX_UPLOAD_FILES}-file limit will be inlined")
    return overflow


def _inline_block(attachment: dict) -> str:
    content = Path(attachment["path"]).read_text(encoding="utf-8", errors="replace")
    return f"File: {attachment['display_name']}\n```\n{content.rstrip()}\n```"


def inline_overflow_attachments(prompt: str, overflow: list[dict]) -> str:
    """
    Put overflow file contents into the prompt.

    A `[attached: name]` marker in the prompt is replaced by that file's
    block; files without a marker are appended at the end.
    """
    appended = []
    for attachment in overflow:
        block = _inline_block(attachment)
        marker = f"[attached: {attachment['display_name']}]"
        if marker in prompt:
            prompt = prompt.replace(marker, block, 1)
        else:
            appended.append(block)
    if appended:
        prompt = prompt.rstrip() + "\n\n" + "\n\n".join(appended)
    return prompt
