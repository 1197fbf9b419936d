import logging
from pathlib import Path
from typing import List

from fastapi import UploadFile

from facturas.application.batch_service import BatchFile
from facturas.core import config
from facturas.infrastructure.extraction.pdf_inspect import count_pages

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = config.MAX_UPLOAD_MB * 1024 * 1024


def _unique_path(target_dir: Path, name: str) -> Path:
    dest_path = target_dir / name
    counter = 1
    while dest_path.exists():
        dest_path = target_dir / f"{Path(name).stem}-{counter}{Path(name).suffix}"
        counter += 1
    return dest_path


def save_upload(staging_id: str, upload: UploadFile) -> Path:
    target_dir = Path(config.UPLOAD_ROOT) / staging_id
    target_dir.mkdir(parents=True, exist_ok=True)
    safe_name = Path(upload.filename or "factura.pdf").name
    dest_path = _unique_path(target_dir, safe_name)

    bytes_written = 0
    upload.file.seek(0)
    with dest_path.open("wb") as buffer:
        while True:
            chunk = upload.file.read(1024 * 512)
            if not chunk:
                break
            bytes_written += len(chunk)
            if bytes_written > MAX_UPLOAD_BYTES:
                buffer.close()
                dest_path.unlink(missing_ok=True)
                raise ValueError(f"{safe_name} excede el limite de {config.MAX_UPLOAD_MB}MB.")
            buffer.write(chunk)

    if bytes_written == 0:
        dest_path.unlink(missing_ok=True)
        raise ValueError(f"{safe_name} está vacío.")
    return dest_path


def stage_files(staging_id: str, uploads: List[UploadFile]) -> List[BatchFile]:
    """
    Store every upload and check it is a readable PDF.

    All-or-nothing: if one file is rejected the files staged so far are
    removed and the error propagates as ValueError.
    """
    staged: List[Path] = []
    try:
        for upload in uploads:
            path = save_upload(staging_id, upload)
            staged.append(path)
            pages = count_pages(path)
            logger.info("Staged %s (%s pages)", path.name, pages)
    except ValueError:
        for path in staged:
            path.unlink(missing_ok=True)
        raise
    return [BatchFile.from_path(str(path)) for path in staged]
