from pathlib import Path

import pdfplumber


class InvalidPdfError(ValueError):
    pass


def count_pages(path: Path) -> int:
    """Open the PDF once to make sure the extraction service gets something readable."""
    try:
        with pdfplumber.open(str(path)) as pdf:
            pages = len(pdf.pages)
    except Exception as exc:
        raise InvalidPdfError(f"{path.name} no es un PDF legible.") from exc
    if pages == 0:
        raise InvalidPdfError(f"{path.name} no tiene páginas.")
    return pages
