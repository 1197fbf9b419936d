import json
import uuid
from typing import Any, Dict, List, Optional

from facturas.core.domain.batch import BatchJob, BatchStatus, ErrorDetail
from facturas.infrastructure.db import connection as db


TABLE_DDL = """
CREATE TABLE IF NOT EXISTS batch_jobs (
    id TEXT PRIMARY KEY,
    submission_id TEXT NOT NULL,
    status TEXT NOT NULL,
    total_files INTEGER NOT NULL,
    file_names TEXT[] NOT NULL DEFAULT '{}',
    processed_files INTEGER NOT NULL DEFAULT 0,
    successful_files INTEGER NOT NULL DEFAULT 0,
    failed_files INTEGER NOT NULL DEFAULT 0,
    blocked_files INTEGER NOT NULL DEFAULT 0,
    current_file TEXT,
    errors JSONB NOT NULL DEFAULT '[]'::jsonb,
    retry_attempts INTEGER NOT NULL DEFAULT 0,
    retried_files INTEGER NOT NULL DEFAULT 0,
    external_ref TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    estimated_completion TIMESTAMPTZ,
    ingestion_started_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_batch_jobs_status ON batch_jobs(status);
CREATE INDEX IF NOT EXISTS idx_batch_jobs_submission ON batch_jobs(submission_id);
CREATE INDEX IF NOT EXISTS idx_batch_jobs_external_ref ON batch_jobs(external_ref);
"""

COLUMNS = (
    "id, submission_id, status, total_files, file_names, processed_files, successful_files, "
    "failed_files, blocked_files, current_file, errors, retry_attempts, retried_files, "
    "external_ref, created_at, started_at, completed_at, estimated_completion, ingestion_started_at"
)

ALLOWED_KEYS = {
    "status",
    "processed_files",
    "successful_files",
    "failed_files",
    "blocked_files",
    "current_file",
    "errors",
    "retry_attempts",
    "retried_files",
    "external_ref",
    "started_at",
    "estimated_completion",
}


def ensure_table() -> None:
    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(TABLE_DDL)
        conn.commit()


def _parse_errors(value) -> List[ErrorDetail]:
    if value is None:
        return []
    items = value if isinstance(value, list) else json.loads(value)
    return [ErrorDetail.from_dict(item) for item in items]


def _row_to_job(row) -> BatchJob:
    getter = row.get if hasattr(row, "get") else lambda k: row[k]
    return BatchJob(
        id=getter("id"),
        submission_id=getter("submission_id"),
        status=BatchStatus(getter("status")),
        total_files=int(getter("total_files")),
        file_names=list(getter("file_names") or []),
        processed_files=int(getter("processed_files") or 0),
        successful_files=int(getter("successful_files") or 0),
        failed_files=int(getter("failed_files") or 0),
        blocked_files=int(getter("blocked_files") or 0),
        current_file=getter("current_file"),
        errors=_parse_errors(getter("errors")),
        retry_attempts=int(getter("retry_attempts") or 0),
        retried_files=int(getter("retried_files") or 0),
        external_ref=getter("external_ref"),
        created_at=getter("created_at"),
        started_at=getter("started_at"),
        completed_at=getter("completed_at"),
        estimated_completion=getter("estimated_completion"),
        ingestion_started_at=getter("ingestion_started_at"),
    )


def _to_db(key: str, value: Any) -> Any:
    if key == "status" and isinstance(value, BatchStatus):
        return value.value
    if key == "errors":
        return json.dumps([error.to_dict() for error in value or []])
    return value


def _set_clauses(fields: Dict[str, Any], params: Dict[str, Any]) -> List[str]:
    clauses = []
    for key, value in fields.items():
        if key not in ALLOWED_KEYS:
            continue
        clauses.append(f"{key} = %({key})s")
        params[key] = _to_db(key, value)
    return clauses


def create_job(submission_id: str, file_names: List[str]) -> BatchJob:
    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO batch_jobs (id, submission_id, status, total_files, file_names)
            VALUES (%(id)s, %(submission_id)s, %(status)s, %(total_files)s, %(file_names)s)
            RETURNING {COLUMNS}
            """,
            {
                "id": str(uuid.uuid4()),
                "submission_id": submission_id,
                "status": BatchStatus.PENDING.value,
                "total_files": len(file_names),
                "file_names": list(file_names),
            },
        )
        row = cur.fetchone()
        conn.commit()
    return _row_to_job(row)


def update_job(job_id: str, **kwargs) -> Optional[BatchJob]:
    """Update mutable fields of a batch that has not finished yet."""
    params: Dict[str, Any] = {"job_id": job_id}
    set_clauses = _set_clauses(kwargs, params)
    if not set_clauses:
        return get_job(job_id)

    set_clauses.append("updated_at = now()")
    query = f"""
        UPDATE batch_jobs
        SET {", ".join(set_clauses)}
        WHERE id = %(job_id)s AND completed_at IS NULL
        RETURNING {COLUMNS}
    """
    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(query, params)
        row = cur.fetchone()
        conn.commit()
    return _row_to_job(row) if row else None


def finish_job(job_id: str, *, unclaimed_only: bool = False, **kwargs) -> Optional[BatchJob]:
    """
    Move a batch to its terminal state and stamp completed_at.

    Returns None when another worker finished the batch first; the stored
    result is then left untouched. With ``unclaimed_only`` the update also
    loses to a worker that has claimed the batch for ingestion.
    """
    params: Dict[str, Any] = {"job_id": job_id}
    set_clauses = _set_clauses(kwargs, params)
    set_clauses.extend(["completed_at = now()", "updated_at = now()"])
    guard = " AND ingestion_started_at IS NULL" if unclaimed_only else ""
    query = f"""
        UPDATE batch_jobs
        SET {", ".join(set_clauses)}
        WHERE id = %(job_id)s AND completed_at IS NULL{guard}
        RETURNING {COLUMNS}
    """
    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(query, params)
        row = cur.fetchone()
        conn.commit()
    return _row_to_job(row) if row else None


def claim_ingestion(job_id: str, stale_after_seconds: Optional[int] = None) -> Optional[BatchJob]:
    """
    Mark a batch as being ingested. Returns None if it is finished or claimed.

    A claim older than ``stale_after_seconds`` is taken over.
    """
    params: Dict[str, Any] = {"job_id": job_id}
    claimable = "ingestion_started_at IS NULL"
    if stale_after_seconds is not None:
        params["stale_seconds"] = stale_after_seconds
        claimable = (
            "(ingestion_started_at IS NULL"
            " OR ingestion_started_at < now() - make_interval(secs => %(stale_seconds)s))"
        )
    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            f"""
            UPDATE batch_jobs
            SET ingestion_started_at = now(), updated_at = now()
            WHERE id = %(job_id)s
              AND completed_at IS NULL
              AND {claimable}
            RETURNING {COLUMNS}
            """,
            params,
        )
        row = cur.fetchone()
        conn.commit()
    return _row_to_job(row) if row else None


def get_job(job_id: str) -> Optional[BatchJob]:
    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            f"SELECT {COLUMNS} FROM batch_jobs WHERE id = %(job_id)s",
            {"job_id": job_id},
        )
        row = cur.fetchone()
    return _row_to_job(row) if row else None


def find_by_external_ref(external_ref: str) -> Optional[BatchJob]:
    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            f"SELECT {COLUMNS} FROM batch_jobs WHERE external_ref = %(external_ref)s",
            {"external_ref": external_ref},
        )
        row = cur.fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    submission_id: Optional[str] = None,
    active_or_recent_seconds: Optional[int] = None,
) -> List[BatchJob]:
    """
    List batches, optionally for one submission and/or only those still active
    or finished within the last ``active_or_recent_seconds``.
    """
    where = []
    params: Dict[str, Any] = {}
    if submission_id:
        where.append("submission_id = %(submission_id)s")
        params["submission_id"] = submission_id
    if active_or_recent_seconds is not None:
        where.append(
            "(status IN ('PENDING', 'PROCESSING') "
            "OR completed_at >= now() - make_interval(secs => %(recent_seconds)s))"
        )
        params["recent_seconds"] = active_or_recent_seconds
    where_sql = f"WHERE {' AND '.join(where)}" if where else ""

    pool = db.get_pool()
    with pool.connection() as conn, conn.cursor() as cur:
        cur.execute(
            f"SELECT {COLUMNS} FROM batch_jobs {where_sql} ORDER BY created_at ASC",
            params,
        )
        rows = cur.fetchall()
    return [_row_to_job(row) for row in rows]
