"""Daemon layer — Shell-like argument splitting and quoting.

Service files store the gateway command line as a single string
(systemd ``ExecStart=``, the scheduled-task ``.cmd`` script).  Each
service manager has its own escaping convention, selected by
``escape_mode``:

    ``none``                  — quotes group words; backslashes are literal
    ``backslash``             — systemd: ``\\x`` yields ``x`` everywhere
    ``backslash-quote-only``  — cmd.exe: only ``\\"`` is unescaped; every
                                other backslash (paths, UNC prefixes) is kept
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Literal

EscapeMode = Literal["none", "backslash", "backslash-quote-only"]


def split_args_preserving_quotes(value: str, escape_mode: EscapeMode = "none") -> list[str]:
    args: list[str] = []
    current: list[str] = []
    in_quotes = False
    has_token = False
    index = 0

    while index < len(value):
        char = value[index]
        nxt = value[index + 1] if index + 1 < len(value) else None

        if char == "\\" and nxt is not None:
            if escape_mode == "backslash":
                current.append(nxt)
                has_token = True
                index += 2
                continue
            if escape_mode == "backslash-quote-only" and nxt == '"':
                current.append('"')
                has_token = True
                index += 2
                continue

        if char == '"':
            in_quotes = not in_quotes
            has_token = True
            index += 1
            continue

        if char.isspace() and not in_quotes:
            if has_token:
                args.append("".join(current))
                current = []
                has_token = False
            index += 1
            continue

        current.append(char)
        has_token = True
        index += 1

    if has_token:
        args.append("".join(current))
    return args


def quote_arg(arg: str, escape_mode: EscapeMode = "backslash") -> str:
    """Quote *arg* so ``split_args_preserving_quotes`` returns it unchanged."""
    needs_quotes = not arg or any(c.isspace() for c in arg) or '"' in arg
    if escape_mode == "backslash":
        needs_quotes = needs_quotes or "\\" in arg
        escaped = arg.replace("\\", "\\\\").replace('"', '\\"')
    elif escape_mode == "backslash-quote-only":
        escaped = arg.replace('"', '\\"')
    else:
        escaped = arg
    if not needs_quotes:
        return escaped
    if escape_mode == "backslash-quote-only":
        # A backslash before the closing quote would escape it.
        body = escaped.rstrip("\\")
        return f'"{body}"{escaped[len(body):]}'
    return f'"{escaped}"'


def join_args(args: Iterable[str], escape_mode: EscapeMode = "backslash") -> str:
    return " ".join(quote_arg(arg, escape_mode) for arg in args)
