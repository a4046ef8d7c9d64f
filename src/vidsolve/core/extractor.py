"""Locating transformation functions inside a player bundle."""

import logging
import re
from typing import List, Optional, Tuple

from .errors import TransformExtractionError
from .models import CIPHER, N_SIG, TransformFunction

logger = logging.getLogger(__name__)

_NAME = r'[a-zA-Z0-9$_]+'

N_SIG_NAME_PATTERNS = [
    re.compile(r'\.get\("n"\)\)&&\(b=([a-zA-Z0-9$]+)(?:\[(\d+)\])?\([a-zA-Z0-9]\)'),
    re.compile(r'[=(,&|]([a-zA-Z0-9$]+)\(\w+\),\w+\.set\("n",'),
    re.compile(r'[=(,&|]([a-zA-Z0-9$]+)\[(\d+)\]\(\w+\),\w+\.set\("n",'),
    re.compile(r'\.set\("n",\s*([a-zA-Z0-9$]+)\(\s*\w+\s*\)'),
    re.compile(r'\w+=\w+\.get\("n"\)[^}]*\w+&&\(\w+=([a-zA-Z0-9$]+)(?:\[(\d+)\])?\(\w+\)'),
    re.compile(r'([a-zA-Z0-9$]+)\(\w+\.get\("n"\)\)[,;].*?\.set\("n"', re.S),
]

CIPHER_NAME_PATTERNS = [
    re.compile(r'\b[cs]\s*&&\s*[adf]\.set\([^,]+\s*,\s*encodeURIComponent\(([a-zA-Z0-9$]+)\('),
    re.compile(r'\b[a-zA-Z0-9]+\s*&&\s*[a-zA-Z0-9]+\.set\([^,]+\s*,\s*encodeURIComponent\(([a-zA-Z0-9$]+)\('),
    re.compile(r'\bm=([a-zA-Z0-9$]{2,})\(decodeURIComponent\(h\.s\)\)'),
    re.compile(r'[$_a-zA-Z0-9]+\.set\((?:[$_a-zA-Z0-9]+\.[$_a-zA-Z0-9]+\|\|)?"signature",\s*([$_a-zA-Z0-9]+)\s*\('),
    re.compile(r'=([a-zA-Z0-9$]{2,})\(decodeURIComponent\(\w+\.s\)\)'),
    re.compile(r'(?:^|[;,\n])\s*([a-zA-Z0-9$_]+)\s*=\s*function\s*\((\w+)\)\s*\{\s*\2\s*=\s*\2\.split\(\s*""\s*\)', re.M),
]

STS_PATTERNS = [
    re.compile(r',sts:(\d+)'),
    re.compile(r'signatureTimestamp[=:](\d+)'),
    re.compile(r'"signatureTimestamp":(\d+)'),
]

# early-return guards on globals that do not exist inside the sandbox
_UNDEFINED_GUARD_RE = re.compile(
    r';\s*if\s*\(\s*typeof\s+[a-zA-Z0-9_$]+\s*===?\s*(["\'])undefined\1\s*\)\s*return\s+\w+;')


def find_brace_block(code: str, pos: int, opening: str = "{", closing: str = "}") -> Optional[str]:
    """Return the balanced block starting at ``pos``, skipping string literals."""
    if pos < 0 or pos >= len(code) or code[pos] != opening:
        return None
    depth = 0
    quote = None
    escaped = False
    for i in range(pos, len(code)):
        c = code[i]
        if escaped:
            escaped = False
            continue
        if c == "\\":
            escaped = True
            continue
        if quote:
            if c == quote:
                quote = None
            continue
        if c in "\"'`":
            quote = c
            continue
        if c == opening:
            depth += 1
        elif c == closing:
            depth -= 1
            if depth == 0:
                return code[pos:i + 1]
    return None


def split_prelude(code: str) -> Tuple[List[str], str]:
    """Split leading ``var X={...};`` helper declarations from the rest of ``code``."""
    helpers = []
    rest = code.strip()
    while True:
        m = re.match(r'var\s+(' + _NAME + r')\s*=\s*\{', rest)
        if not m:
            break
        block = find_brace_block(rest, m.end() - 1)
        if block is None:
            break
        end = m.end() - 1 + len(block)
        if rest[end:end + 1] == ";":
            end += 1
        helpers.append(rest[:end])
        rest = rest[end:].lstrip()
    return helpers, rest


def find_function_definition(js: str, name: str) -> Optional[Tuple[str, str]]:
    """Return (params, body block) of the largest definition of ``name``."""
    esc = re.escape(name)
    patterns = [
        re.compile(r'(?:var|let|const)\s+' + esc + r'\s*=\s*function\s*\(([^)]*)\)\s*\{'),
        re.compile(r'(?:^|[;,\n])\s*' + esc + r'\s*=\s*function\s*\(([^)]*)\)\s*\{', re.M),
        re.compile(r'function\s+' + esc + r'\s*\(([^)]*)\)\s*\{'),
    ]
    best = None
    for pattern in patterns:
        for m in pattern.finditer(js):
            block = find_brace_block(js, m.end() - 1)
            # very small matches are usually unrelated functions sharing a short name
            if not block or len(block) < 10:
                continue
            if best is None or len(block) > len(best[1]):
                best = (m.group(1), block)
    return best


def _resolve_array_wrapper(js: str, name: str, index: int) -> Optional[str]:
    m = re.search(r'(?:var\s+|[,;\n]\s*)' + re.escape(name) + r'\s*=\s*\[([\w$,\s]+)\]', js)
    if not m:
        return None
    items = [item.strip() for item in m.group(1).split(",")]
    return items[index] if index < len(items) and items[index] else None


def _find_n_sig_by_structure(js: str) -> Optional[str]:
    for m in re.finditer(r'(?:^|[;,\n])\s*(' + _NAME + r')\s*=\s*function\s*\((\w+)\)\s*\{', js, re.M):
        block = find_brace_block(js, m.end() - 1)
        if not block or not 50 <= len(block) <= 30000:
            continue
        if re.search(r'try\s*\{', block) and re.search(r'catch\s*\(', block) and re.search(r'\[\s*\d+\s*\]', block):
            return m.group(1)
    return None


def extract_n_sig_code(js: str) -> Optional[str]:
    """Return the n-parameter transform as a ``function(a){...}`` expression."""
    name = None
    index = None
    for pattern in N_SIG_NAME_PATTERNS:
        m = pattern.search(js)
        if m:
            name = m.group(1)
            if m.lastindex and m.lastindex >= 2 and m.group(2) is not None:
                index = int(m.group(2))
            break

    if name and index is not None:
        resolved = _resolve_array_wrapper(js, name, index)
        if not resolved:
            logger.warning(f"N-sig array resolution failed for {name}[{index}]")
            return None
        name = resolved

    if not name:
        name = _find_n_sig_by_structure(js)
    if not name:
        return None

    definition = find_function_definition(js, name)
    if not definition:
        return None
    params, body = definition
    body = _UNDEFINED_GUARD_RE.sub(";", body)
    return f"function({params}){body}"


def extract_cipher_code(js: str) -> Optional[Tuple[str, str]]:
    """Return (code, argument name) for the signature cipher.

    The code is the helper object declaration followed by the function body,
    e.g. ``var Xy={...};a=a.split("");Xy.ab(a,3);return a.join("")``.
    """
    name = None
    for pattern in CIPHER_NAME_PATTERNS:
        m = pattern.search(js)
        if m:
            name = m.group(1)
            break
    if not name:
        return None

    definition = find_function_definition(js, name)
    if not definition:
        return None
    params, block = definition
    arg_name = params.split(",")[0].strip() or "a"
    body = block[1:-1].strip()

    helper = None
    for hm in re.finditer(r'(' + _NAME + r')\.' + _NAME + r'\s*\(', body):
        if hm.group(1) != arg_name:
            helper = hm.group(1)
            break
    if helper is None:
        return None

    dm = re.search(r'(?:var\s+|[;,]\s*)' + re.escape(helper) + r'\s*=\s*\{', js)
    if not dm:
        return None
    helper_block = find_brace_block(js, dm.end() - 1)
    if not helper_block:
        return None

    code = f"var {helper}={helper_block};{body}"
    if "return" not in body:
        code += f';return {arg_name}.join("")'
    return code, arg_name


def extract_signature_timestamp(js: str) -> Optional[int]:
    for pattern in STS_PATTERNS:
        m = pattern.search(js)
        if m:
            return int(m.group(1))
    return None


def extract_transform(js: str, kind: str, fingerprint: str) -> TransformFunction:
    """Extract one transform or raise TransformExtractionError."""
    if kind == N_SIG:
        code = extract_n_sig_code(js)
        if code:
            return TransformFunction(kind=N_SIG, code=code, bundle_fingerprint=fingerprint)
    elif kind == CIPHER:
        found = extract_cipher_code(js)
        if found:
            code, arg_name = found
            return TransformFunction(kind=CIPHER, code=code, bundle_fingerprint=fingerprint, arg_name=arg_name)
    raise TransformExtractionError(fingerprint, kind)
