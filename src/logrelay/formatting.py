"""
Formatting: turn raw logging arguments into one transport entry.

format_args() implements printf-style substitution when the first argument
is a string:
  %s  str(arg)
  %d  numeric value of arg (NaN if not numeric)
  %j  JSON of arg ("[Circular]" for self-referencing structures)
  %o  type name followed by the JSON of arg (scalars wrapped in <>)
  %%  literal percent
Arguments left over after substitution are appended, space-separated.

build_record() wraps the message with level, logger name, timestamp and an
optional stack trace; render_entry() turns the record into the entry string
(a JSON document, or the message followed by the stack trace).
"""

import json
import logging
import os
import re
import traceback
from typing import Any, Callable, Dict, Optional, Sequence

_DIRECTIVE = re.compile(r"(%?)(%([sdjo]))")

_INTERNAL_DIRS = tuple(
    os.path.normcase(os.path.abspath(os.path.dirname(path))) + os.sep
    for path in (logging.__file__, __file__)
)

CIRCULAR = "[Circular]"


def _stringify(arg: Any) -> str:
    try:
        return json.dumps(arg, default=str, ensure_ascii=False)
    except ValueError as e:
        if "Circular reference" in str(e):
            return CIRCULAR
        raise


def _number(arg: Any) -> str:
    if isinstance(arg, bool):
        return str(int(arg))
    try:
        value = float(arg)
    except (TypeError, ValueError):
        return "NaN"
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _as_text(arg: Any) -> str:
    if arg is None:
        return "null"
    if isinstance(arg, bool):
        return "true" if arg else "false"
    return str(arg)


def format_args(args: Sequence[Any]) -> str:
    """Render logging arguments as one message string."""
    result = ""
    index = 0

    if len(args) > 1 and isinstance(args[0], str):

        def substitute(match: re.Match) -> str:
            nonlocal index
            escaped, _, flag = match.groups()
            if escaped:
                return match.group(0)
            index += 1
            arg = args[index] if index < len(args) else None
            if flag == "s":
                return _as_text(arg)
            if flag == "d":
                return _number(arg)
            if flag == "j":
                return _stringify(arg)
            text = _stringify(arg)
            if not text.startswith(("{", "[")):
                text = f"<{text}>"
            return type(arg).__name__ + text

        result = _DIRECTIVE.sub(substitute, args[0])
        result = result.replace("%%", "%")
        index += 1

    if len(args) > index:
        if result:
            result += " "
        result += " ".join(_as_text(a) for a in args[index:])

    return result


def _is_internal(filename: str) -> bool:
    return os.path.normcase(os.path.abspath(filename)).startswith(_INTERNAL_DIRS)


def capture_stack(depth: int = 0) -> str:
    """
    Stack of the code that logged, as text, innermost frame last.

    Frames belonging to the logging package and to logrelay itself are
    skipped, then `depth` more innermost frames are dropped (for callers
    that wrap their logger in helpers).
    """
    frames = list(traceback.extract_stack())
    while frames and _is_internal(frames[-1].filename):
        frames.pop()
    if depth:
        frames = frames[:-depth]
    return "".join(traceback.format_list(frames)).rstrip("\n")


def build_record(
    message: str,
    level: str,
    logger_name: str,
    *,
    timestamp: Callable[[], str],
    stacktrace: Optional[str] = None,
) -> Dict[str, str]:
    return {
        "message": message,
        "level": level,
        "logger": logger_name or "",
        "timestamp": timestamp(),
        "stacktrace": stacktrace or "",
    }


def render_entry(record: Dict[str, str], as_json: bool) -> str:
    """Serialize a record for the queue."""
    if as_json:
        return json.dumps(record, ensure_ascii=False)
    if record["stacktrace"]:
        return f"{record['message']}\n{record['stacktrace']}"
    return record["message"]
