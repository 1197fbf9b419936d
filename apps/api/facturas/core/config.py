import os
from decimal import Decimal

DATABASE_URL = os.environ.get("DATABASE_URL")

UPLOAD_ROOT = os.environ.get("UPLOAD_ROOT", "data/uploads")
MAX_UPLOAD_MB = int(os.environ.get("MAX_UPLOAD_MB", "25"))

# Chunking only keeps each upload request small; it has no effect on results.
BATCH_CHUNK_SIZE = int(os.environ.get("BATCH_CHUNK_SIZE", "25"))
BATCH_CHUNK_MAX_BYTES = int(os.environ.get("BATCH_CHUNK_MAX_MB", "40")) * 1024 * 1024

EXTRACTION_RETRY_ATTEMPTS = int(os.environ.get("EXTRACTION_RETRY_ATTEMPTS", "3"))
EXTRACTION_RETRY_DELAY_SECONDS = float(os.environ.get("EXTRACTION_RETRY_DELAY_SECONDS", "3"))
EXTRACTION_RETRY_BACKOFF = float(os.environ.get("EXTRACTION_RETRY_BACKOFF", "1.0"))
RATE_LIMIT_MARKERS = tuple(
    marker.strip().lower()
    for marker in os.environ.get("RATE_LIMIT_MARKERS", "429,quota,rate limit").split(",")
    if marker.strip()
)

TOTALS_MISMATCH_TOLERANCE = Decimal(os.environ.get("TOTALS_MISMATCH_TOLERANCE", "0.5"))
DEFAULT_IVA_PERCENTAGE = Decimal(os.environ.get("DEFAULT_IVA_PERCENTAGE", "21"))
UNIT_PRICE_TOLERANCE = Decimal(os.environ.get("UNIT_PRICE_TOLERANCE", "0.01"))

BATCH_POLL_INTERVAL_SECONDS = int(os.environ.get("BATCH_POLL_INTERVAL_SECONDS", "15"))
RECENT_BATCH_WINDOW_SECONDS = int(os.environ.get("RECENT_BATCH_WINDOW_SECONDS", "120"))
PROGRESS_SAFETY_TIMEOUT_SECONDS = int(os.environ.get("PROGRESS_SAFETY_TIMEOUT_SECONDS", "300"))

OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4.1-mini")
OPENAI_BATCH_COMPLETION_WINDOW = os.environ.get("OPENAI_BATCH_COMPLETION_WINDOW", "24h")
OPENAI_MAX_TOKENS = int(os.environ.get("OPENAI_MAX_TOKENS", "4096"))
OPENAI_WEBHOOK_SECRET = os.environ.get("OPENAI_WEBHOOK_SECRET")

FRONTEND_ORIGIN = os.environ.get("FRONTEND_ORIGIN", "http://localhost:3000")

# Longer than the worker task time limit, so only a dead worker's claim expires.
INGESTION_CLAIM_TIMEOUT_SECONDS = int(os.environ.get("INGESTION_CLAIM_TIMEOUT_SECONDS", "900"))
