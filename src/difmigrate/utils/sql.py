"""Divisão de scripts SQL em statements individuais."""

import re
from typing import List

_DOLLAR_TAG = re.compile(r"\$[A-Za-z_]*\$")


def _is_escape_string_prefix(script: str, quote_pos: int) -> bool:
    """True se a aspa em ``quote_pos`` abre uma string E'...' (e não um identificador terminado em 'e')."""
    if quote_pos == 0 or script[quote_pos - 1] not in "eE":
        return False
    before = script[quote_pos - 2] if quote_pos >= 2 else ""
    return not (before.isalnum() or before in ("_", "$"))


def split_statements(script: str) -> List[str]:
    """
    Divide um script SQL em statements separados por ``;``.

    Respeita strings ('...' e E'...' com escapes \\), identificadores entre aspas ("..."), blocos
    dollar-quoted do PostgreSQL ($$...$$, $body$...$body$), comentários de
    linha (--) e de bloco (/* */). Statements vazios (ou só comentários) são
    descartados.
    """
    statements: List[str] = []
    buf: List[str] = []
    has_code = False
    i = 0
    n = len(script)

    def flush():
        nonlocal has_code
        text = "".join(buf).strip()
        if text and has_code:
            statements.append(text)
        buf.clear()
        has_code = False

    while i < n:
        ch = script[i]
        nxt = script[i + 1] if i + 1 < n else ""

        if ch == "-" and nxt == "-":
            end = script.find("\n", i)
            end = n if end == -1 else end
            buf.append(script[i:end])
            i = end
            continue

        if ch == "/" and nxt == "*":
            end = script.find("*/", i + 2)
            end = n if end == -1 else end + 2
            buf.append(script[i:end])
            i = end
            continue

        if ch in ("'", '"'):
            # E'...' do PostgreSQL aceita escapes com barra invertida
            backslash_escapes = ch == "'" and _is_escape_string_prefix(script, i)
            j = i + 1
            while j < n:
                if backslash_escapes and script[j] == "\\":
                    j += 2
                    continue
                if script[j] == ch:
                    # aspas duplicadas escapam a própria aspa
                    if j + 1 < n and script[j + 1] == ch:
                        j += 2
                        continue
                    break
                j += 1
            end = min(j + 1, n)
            buf.append(script[i:end])
            has_code = True
            i = end
            continue

        if ch == "$":
            match = _DOLLAR_TAG.match(script, i)
            if match:
                tag = match.group(0)
                close = script.find(tag, match.end())
                end = n if close == -1 else close + len(tag)
                buf.append(script[i:end])
                has_code = True
                i = end
                continue

        if ch == ";":
            flush()
            i += 1
            continue

        if not ch.isspace():
            has_code = True
        buf.append(ch)
        i += 1

    flush()
    return statements
