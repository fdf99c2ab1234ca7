"""
Context compression for token-constrained prompts.

Files that do not fit the budget are squeezed in three steps, each tried
only if the previous one was not enough:
  1. strip comments and collapse blank runs
  2. keep declarations plus the first few body lines
  3. hard truncate with an explicit marker
"""

from __future__ import annotations

import io
import math
import re
import tokenize
from dataclasses import dataclass

CHARS_PER_TOKEN = 3.2
SIGNATURE_BODY_LINES = 3

_HASH_COMMENT_EXTS = {".py", ".rb", ".sh", ".yml", ".yaml", ".toml", ".r", ".pl"}

_PY_SIGNATURE = re.compile(r"^(\s*)(def |class |async def )")
_C_SIGNATURE = re.compile(
    r"^(\s*)(function |class |const \w+\s*=\s*(?:async\s*)?\(|"
    r"export (?:default )?(?:function|class|const|async)|interface |type \w+\s*=|"
    r"func |fn |pub fn |pub async fn |impl )"
)


@dataclass
class CompressedFile:
    content: str
    compressed: bool
    level: int = 0
    original_chars: int = 0

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.content)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def tokens_to_chars(tokens: int) -> int:
    return math.floor(tokens * CHARS_PER_TOKEN)


def _uses_hash_comments(ext: str) -> bool:
    return ext.lower() in _HASH_COMMENT_EXTS


def comment_prefix(ext: str) -> str:
    return "#" if _uses_hash_comments(ext) else "//"


def _python_spans(content: str) -> list[tuple[int, int, str]]:
    """(start, end, replacement) offsets for comments and docstring bodies."""
    offsets = [0]
    for line in io.StringIO(content).readlines():
        offsets.append(offsets[-1] + len(line))

    def at(pos: tuple[int, int]) -> int:
        return offsets[pos[0] - 1] + pos[1]

    spans: list[tuple[int, int, str]] = []
    statement_start = True
    candidate: tokenize.TokenInfo | None = None
    for tok in tokenize.generate_tokens(io.StringIO(content).readline):
        if tok.type == tokenize.COMMENT:
            # shebangs survive
            if tok.start != (1, 0) or not tok.string.startswith("#!"):
                spans.append((at(tok.start), at(tok.end), ""))
            continue
        if tok.type == tokenize.NL:
            continue
        if candidate is not None and tok.type == tokenize.NEWLINE:
            body = candidate.string.lstrip("rRuU")
            prefix = candidate.string[: len(candidate.string) - len(body)]
            spans.append((at(candidate.start), at(candidate.end), prefix + body[:3] * 2))
        candidate = None
        if tok.type == tokenize.STRING and statement_start and tok.string.lstrip("rRuU")[:3] in ('"""', "'''"):
            candidate = tok
        statement_start = tok.type in (tokenize.NEWLINE, tokenize.INDENT, tokenize.DEDENT)
    return spans


def _strip_python(content: str) -> str:
    out = content
    for start, end, replacement in sorted(_python_spans(content), reverse=True):
        out = out[:start] + replacement + out[end:]
    return out


def _strip_scanned(content: str, hash_comments: bool) -> str:
    """Character scan that leaves string and template literals alone."""
    quotes = "\"'" if hash_comments else "\"'`"
    out: list[str] = []
    quote: str | None = None
    i, n = 0, len(content)
    while i < n:
        ch = content[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(content[i + 1])
                i += 2
                continue
            if ch == quote or (ch == "\n" and quote != "`"):
                quote = None
            i += 1
            continue
        if ch in quotes:
            quote = ch
        elif hash_comments and ch == "#" and (i == 0 or content[i - 1].isspace()):
            if not (i == 0 and content.startswith("#!")):
                end = content.find("\n", i)
                i = n if end == -1 else end
                continue
        elif not hash_comments and content.startswith("//", i):
            end = content.find("\n", i)
            i = n if end == -1 else end
            continue
        elif not hash_comments and content.startswith("/*", i):
            end = content.find("*/", i + 2)
            i = n if end == -1 else end + 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def strip_comments(content: str, ext: str) -> str:
    """Level 1: drop comments and docstring bodies, collapse blank runs."""
    if ext.lower() == ".py":
        try:
            out = _strip_python(content)
        except (tokenize.TokenError, SyntaxError):
            out = _strip_scanned(content, hash_comments=True)
    else:
        out = _strip_scanned(content, hash_comments=_uses_hash_comments(ext))
    out = "\n".join(line.rstrip() for line in out.split("\n"))
    return re.sub(r"\n{3,}", "\n\n", out)


def extract_signatures(content: str, ext: str) -> str:
    """Level 2: declarations plus the first few body lines of each."""
    signature = _PY_SIGNATURE if ext.lower() == ".py" else _C_SIGNATURE
    marker_prefix = comment_prefix(ext)

    result: list[str] = []
    in_body = False
    base_indent = 0
    body_lines = 0
    skipped = 0

    def flush() -> None:
        nonlocal skipped
        if skipped:
            result.append(f"{' ' * (base_indent + 2)}{marker_prefix} ... {skipped} lines collapsed")
            skipped = 0

    for line in content.split("\n"):
        match = signature.match(line)
        if match and not in_body:
            flush()
            in_body = True
            base_indent = len(match.group(1))
            body_lines = 0
            result.append(line)
            continue

        if in_body:
            stripped = line.lstrip()
            indent = base_indent + 1 if not stripped else len(line) - len(stripped)
            if stripped and indent <= base_indent:
                flush()
                in_body = False
                match = signature.match(line)
                if match:
                    in_body = True
                    base_indent = len(match.group(1))
                    body_lines = 0
                result.append(line)
                continue
            body_lines += 1
            if body_lines <= SIGNATURE_BODY_LINES:
                result.append(line)
            else:
                skipped += 1
        else:
            result.append(line)

    flush()
    return "\n".join(result)


def truncation_marker(original_chars: int, ext: str) -> str:
    return f"\n{comment_prefix(ext)} ... truncated ({round(original_chars / 1024)}KB original)\n"


def compress_file(content: str, ext: str, max_chars: int) -> CompressedFile:
    """Fit `content` into `max_chars`, compressing only as far as needed.

    The result never exceeds `max_chars`.
    """
    original = len(content)
    if original <= max_chars:
        return CompressedFile(content, False, 0, original)

    stripped = strip_comments(content, ext)
    if len(stripped) <= max_chars:
        return CompressedFile(stripped, True, 1, original)

    signatures = extract_signatures(stripped, ext)
    if len(signatures) <= max_chars:
        return CompressedFile(signatures, True, 2, original)

    marker = truncation_marker(original, ext)
    if max_chars <= len(marker):
        return CompressedFile(marker[:max(max_chars, 0)], True, 3, original)
    return CompressedFile(signatures[: max_chars - len(marker)] + marker, True, 3, original)


def compress_to_tokens(content: str, ext: str, token_budget: int) -> CompressedFile:
    return compress_file(content, ext, tokens_to_chars(token_budget))
