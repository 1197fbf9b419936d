"""
Extraction service backed by the OpenAI Batch API.

One JSONL request per PDF; ``custom_id`` carries the file key so results can
be matched back to the uploaded file regardless of output order.
"""

import base64
import hashlib
import hmac
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

import openai

from facturas.application.batch_service import BatchFile, ExternalJobStatus, result_key
from facturas.core import config
from facturas.infrastructure.extraction.prompts import EXTRACTION_PROMPT, SYSTEM_PROMPT

logger = logging.getLogger(__name__)

CHAT_ENDPOINT = "/v1/chat/completions"

if config.OPENAI_API_KEY:
    openai.api_key = config.OPENAI_API_KEY


def _require_client() -> None:
    if not config.OPENAI_API_KEY:
        raise RuntimeError("OpenAI client not configured")


def build_request(index: int, batch_file: BatchFile) -> Dict[str, Any]:
    encoded = base64.b64encode(Path(batch_file.path).read_bytes()).decode("ascii")
    return {
        "custom_id": result_key(index),
        "method": "POST",
        "url": CHAT_ENDPOINT,
        "body": {
            "model": config.OPENAI_MODEL,
            "temperature": 0,
            "max_tokens": config.OPENAI_MAX_TOKENS,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "file",
                            "file": {
                                "filename": batch_file.name,
                                "file_data": f"data:application/pdf;base64,{encoded}",
                            },
                        },
                        {"type": "text", "text": EXTRACTION_PROMPT},
                    ],
                },
            ],
        },
    }


def build_request_file(files: Sequence[BatchFile]) -> bytes:
    lines = [json.dumps(build_request(i, f), ensure_ascii=False) for i, f in enumerate(files)]
    return ("\n".join(lines) + "\n").encode("utf-8")


def _error_text(batch: Any) -> Optional[str]:
    errors = getattr(batch, "errors", None)
    data = getattr(errors, "data", None) or []
    messages = [e.message for e in data if getattr(e, "message", None)]
    return "; ".join(messages) or None


class OpenAIBatchExtraction:
    def submit(self, files: Sequence[BatchFile]) -> str:
        _require_client()
        payload = build_request_file(files)
        uploaded = openai.files.create(file=("facturas.jsonl", payload), purpose="batch")
        batch = openai.batches.create(
            input_file_id=uploaded.id,
            endpoint=CHAT_ENDPOINT,
            completion_window=config.OPENAI_BATCH_COMPLETION_WINDOW,
            metadata={"files": str(len(files))},
        )
        logger.info("Created OpenAI batch %s with %s requests", batch.id, len(files))
        return batch.id

    def get_status(self, external_ref: str) -> ExternalJobStatus:
        _require_client()
        batch = openai.batches.retrieve(external_ref)
        counts = batch.request_counts
        return ExternalJobStatus(
            state=batch.status,
            total=counts.total if counts else None,
            completed=counts.completed if counts else None,
            failed=counts.failed if counts else None,
            output_refs=[ref for ref in (batch.output_file_id, batch.error_file_id) if ref],
            error=_error_text(batch),
        )

    def read_output(self, output_ref: str) -> Iterable[bytes]:
        _require_client()
        return openai.files.content(output_ref).iter_bytes()

    def cancel(self, external_ref: str) -> None:
        _require_client()
        openai.batches.cancel(external_ref)
        logger.info("Cancellation requested for OpenAI batch %s", external_ref)


def verify_webhook_signature(secret: str, timestamp: Optional[str], body: bytes, header: Optional[str]) -> bool:
    """
    Check a ``webhook-signature`` header (space separated ``v1,<base64>``
    entries) against HMAC-SHA256 of ``"<timestamp>.<body>"``.
    """
    if not timestamp or not header:
        return False
    signed = timestamp.encode("utf-8") + b"." + body
    expected = base64.b64encode(hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).digest()).decode("ascii")
    for entry in header.split():
        version, _, signature = entry.partition(",")
        if version == "v1" and hmac.compare_digest(signature, expected):
            return True
    return False
