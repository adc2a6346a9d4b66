"""Extract file contents from fenced code blocks in an LLM response.

A block may name its file with a comment on the fence line or on its first
line (``// server.js``, ``<!-- index.html -->``, ``/* styles.css */`` or
``# app.py``). Unnamed blocks get a filename inferred from their content.
"""

import posixpath
import re

_CODE_BLOCK_RE = re.compile(
    r"```[\w+.-]*[^\S\r\n]*(?P<inline>(?://|<!--|/\*)[^\r\n]*)?\r?\n(?P<body>[\s\S]*?)```"
)
_NAME_COMMENT_RE = re.compile(r"^\s*(?://|<!--|/\*|#)\s*(?P<name>.+?)\s*(?:-->|\*/)?\s*$")
_FILENAME_RE = re.compile(r"^[\w.\-/]+\.[A-Za-z0-9]+$")
_CSS_RULE_RE = re.compile(r"[.#]?[\w\-\s,:>]+\{[^}]*:[^}]*\}")


def safe_filename(name: str) -> str | None:
    """A relative, traversal-free path for name, or None if it does not look like a file."""
    name = name.strip().strip("`'\"")
    if not _FILENAME_RE.match(name):
        return None
    normalized = posixpath.normpath(name).lstrip("/")
    if normalized.startswith(".."):
        return posixpath.basename(normalized)
    return normalized


def infer_filename(content: str, index: int) -> str:
    """Guess a filename for an unnamed block by sniffing its content."""
    if "require('express')" in content or 'require("express")' in content or "app.listen" in content:
        return "server.js"
    if '"name"' in content and '"dependencies"' in content:
        return "package.json"
    if "<!DOCTYPE html>" in content or "<html" in content:
        return "index.html"
    if _CSS_RULE_RE.search(content):
        return "styles.css"
    return f"file_{index}.js"


def extract_code_blocks(text: str) -> dict[str, str]:
    """Map filename -> content for every fenced block in text.

    Later blocks with the same filename replace earlier ones.
    """
    files: dict[str, str] = {}
    for match in _CODE_BLOCK_RE.finditer(text):
        body = match.group("body")
        inline = match.group("inline")
        filename = None

        if inline:
            # ```js // server.js
            comment = _NAME_COMMENT_RE.match(inline)
            filename = safe_filename(comment.group("name")) if comment else None
        else:
            first_line, _, rest = body.partition("\n")
            comment = _NAME_COMMENT_RE.match(first_line)
            filename = safe_filename(comment.group("name")) if comment else None
            if filename is not None:
                body = rest

        content = body.strip()
        if not content:
            continue
        files[filename or infer_filename(content, len(files))] = content
    return files
