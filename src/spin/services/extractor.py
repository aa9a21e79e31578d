"""Recover the ``{path: content}`` object from free-form model output.

Models are asked for bare JSON but regularly wrap it in a fenced block or
surround it with prose. Extraction runs once on the fully buffered response:

1. a fenced block labelled ``json`` is tried first;
2. then the first balanced ``{...}`` span, with braces inside
   string literals (and escaped quotes) ignored;
3. stray fence markers are stripped if the candidate does not parse as is.

The first candidate that decodes to a non-empty object is used.

Non-string values are stringified with a logged warning.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from ..domain.errors import ExtractionError


LOG = logging.getLogger("spin.extractor")

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")
_FENCE_MARKERS = re.compile(r"```json|```")
_RAW_LOG_LIMIT = 2000
_NOTHING = object()


def find_json_object_span(text: str) -> Optional[str]:
    """Return the first balanced top-level ``{...}`` span in ``text``."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    return None


def _candidates(raw_text: str) -> List[str]:
    out: List[str] = []
    match = _FENCED_JSON.search(raw_text)
    if match:
        out.append(match.group(1))
    span = find_json_object_span(raw_text)
    if span:
        out.append(span)
    if not out:
        out.append(raw_text)
    return out


def _parse_candidate(raw_text: str) -> Any:
    """Parse the first candidate that decodes to a non-empty object.

    File contents may themselves contain fence markers (READMEs), which cut a
    fenced match short or pick out a snippet such as ``{}``; the brace-matched
    span is tried next. Fence markers are only stripped when the untouched
    candidate fails to decode. When no candidate yields a non-empty object,
    the first value that did decode is returned for the caller to reject.
    """
    last_error: Optional[json.JSONDecodeError] = None
    fallback: Any = _NOTHING
    for candidate in _candidates(raw_text):
        for text in (candidate.strip(), _FENCE_MARKERS.sub("", candidate).strip()):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError as exc:
                last_error = exc
                continue
            if isinstance(parsed, dict) and parsed:
                return parsed
            if fallback is _NOTHING:
                fallback = parsed
    if fallback is not _NOTHING:
        return fallback
    reason = last_error.msg if last_error else "empty response"
    raise ExtractionError(f"Failed to parse generated code: {reason}") from last_error


def _stringify(value: Any) -> str:
    # Mirror JavaScript String(): null/bools/numbers keep their JSON spelling.
    if value is None or isinstance(value, bool):
        return json.dumps(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def normalize_files(parsed: Dict[str, Any]) -> Dict[str, str]:
    files: Dict[str, str] = {}
    for key, value in parsed.items():
        if isinstance(value, str):
            files[key] = value
            continue
        LOG.warning(
            "file_value_coerced",
            extra={"path": key, "value_type": type(value).__name__},
        )
        files[key] = _stringify(value)
    return files


def extract_files(raw_text: str) -> Dict[str, str]:
    """Parse the generated project out of ``raw_text``.

    Raises ExtractionError when no non-empty JSON object can be recovered.
    """
    try:
        parsed = _parse_candidate(raw_text or "")
        if not isinstance(parsed, dict):
            raise ExtractionError("Failed to parse generated code: Response is not a valid object")
        files = normalize_files(parsed)
        if not files:
            raise ExtractionError("Failed to parse generated code: No files generated")
    except ExtractionError:
        LOG.warning(
            "extraction_failed",
            extra={"raw_excerpt": (raw_text or "")[:_RAW_LOG_LIMIT], "raw_length": len(raw_text or "")},
        )
        raise
    LOG.info("extraction_succeeded", extra={"paths": list(files.keys())})
    return files
