"""
Streaming reader for the newline-delimited result files of the extraction service.

Each line is one request result. The reader only unwraps the envelope (key,
answer text, error); the answer itself is handled by ``json_recovery``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional, Union

logger = logging.getLogger(__name__)

Chunk = Union[bytes, str]


@dataclass(frozen=True)
class RawRecord:
    key: Optional[str]
    text: Optional[str]
    error: Optional[str]
    line_number: int

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.text)


def _iter_lines(source: Iterable[Chunk]) -> Iterator[str]:
    """Split arbitrary byte/str chunks into lines without reading everything up front."""
    pending = b""
    for chunk in source:
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        pending += chunk
        while True:
            newline = pending.find(b"\n")
            if newline == -1:
                break
            line, pending = pending[:newline], pending[newline + 1 :]
            yield line.decode("utf-8", errors="replace").rstrip("\r")
    if pending:
        yield pending.decode("utf-8", errors="replace").rstrip("\r")


def _describe_error(error: Any) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and error.get("message"):
        code = error.get("code")
        return f"{code}: {error['message']}" if code else str(error["message"])
    return json.dumps(error, ensure_ascii=False, default=str)


def _candidate_text(response: dict) -> Optional[str]:
    candidates = response.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    content = (candidates[0] or {}).get("content") or {}
    parts = content.get("parts") or []
    texts = [p.get("text") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
    return "".join(texts) if texts else None


def _chat_completion_text(response: dict) -> Optional[str]:
    body = response.get("body")
    if not isinstance(body, dict):
        return None
    choices = body.get("choices") or []
    if not choices:
        return None
    message = (choices[0] or {}).get("message") or {}
    content = message.get("content")
    return content if isinstance(content, str) else None


def _to_record(payload: Any, line_number: int) -> RawRecord:
    if not isinstance(payload, dict):
        return RawRecord(None, None, "La línea no es un objeto JSON.", line_number)

    key = payload.get("key") or payload.get("custom_id")
    error = payload.get("error")
    if error:
        return RawRecord(key, None, _describe_error(error), line_number)

    response = payload.get("response")
    if not isinstance(response, dict):
        return RawRecord(key, None, "Respuesta vacía del servicio de extracción.", line_number)

    status_code = response.get("status_code")
    if isinstance(status_code, int) and status_code >= 400:
        return RawRecord(key, None, f"El servicio respondió {status_code}.", line_number)

    text = _candidate_text(response)
    if text is None and isinstance(response.get("text"), str):
        text = response["text"]
    if text is None:
        text = _chat_completion_text(response)
    if not text:
        return RawRecord(key, None, "Respuesta sin texto del servicio de extracción.", line_number)
    return RawRecord(key, text, None, line_number)


def read_records(source: Iterable[Chunk]) -> Iterator[RawRecord]:
    """
    Lazily yield one RawRecord per non-blank line of ``source``.

    ``source`` is consumed once. A line that is not valid JSON becomes a
    record with an error marker instead of stopping the read.
    """
    for line_number, line in enumerate(_iter_lines(source), start=1):
        if not line.strip():
            continue
        try:
            payload = json.loads(line)
        except ValueError as exc:
            logger.warning("Failed to parse result line %s: %s", line_number, exc)
            yield RawRecord(None, None, f"Línea {line_number} ilegible: {exc}", line_number)
            continue
        yield _to_record(payload, line_number)
