"""
Account service — accounts, reference-procedure uploads and document text extraction.

Procedure uploads:
    1. Extract text from the PDF with pdfplumber.  An unreadable file or a
       file with no extractable text rejects the upload; nothing is indexed.
    2. Ensure the account has a vector store, then index the text.  A newly
       created store id is committed before indexing and survives an index
       failure.
    3. Append an entry to ``procedure_history``.  Entries are never edited
       or removed.
"""

from __future__ import annotations

import io
import logging
import os

import pdfplumber

from crisis_trainer.ai.gateway import get_gateway
from crisis_trainer.core.exceptions import UpstreamError, ValidationError
from crisis_trainer.models import db, utcnow
from crisis_trainer.models.account import Account
from crisis_trainer.utils.helpers import get_or_404, require_str

logger = logging.getLogger(__name__)

MAX_PROCEDURE_BYTES = 20 * 1024 * 1024
PDF_SIGNATURE = b"%PDF-"


def list_accounts() -> list[Account]:
    return Account.query.order_by(Account.name).all()


def get_account(account_id: str) -> Account:
    return get_or_404(Account, account_id)


def create_account(data: dict) -> Account:
    account = Account(
        name=require_str(data, "name", max_length=255),
        vector_store_id=(data.get("vector_store_id") or None),
        procedure_history=[],
    )
    db.session.add(account)
    db.session.commit()
    logger.info("Account created: %s", account.name, extra={"event_type": "account_created"})
    return account


def extract_pdf_text(stream) -> str:
    """Return the text of every page joined by blank lines.

    Raises:
        ValidationError: the file is not a readable PDF or contains no text.
    """
    try:
        with pdfplumber.open(stream) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
    except Exception as e:
        # pdfplumber surfaces pdfminer parse errors under several types
        logger.warning("PDF extraction failed: %s", e)
        raise ValidationError("Could not read the uploaded PDF.")

    text = "\n\n".join(p.strip() for p in pages if p.strip())
    if not text:
        raise ValidationError("No extractable text found in the uploaded PDF.")
    return text


def read_document_upload(file_storage, allowed=(".pdf",), max_bytes: int = MAX_PROCEDURE_BYTES) -> tuple[str, str]:
    """Validate a multipart upload and return (filename, extracted text).

    PDFs must start with the ``%PDF-`` signature and are read with
    pdfplumber; ``.txt`` files are decoded as UTF-8.

    Raises:
        ValidationError: missing file, wrong extension, too large,
                         unreadable, or no text.
    """
    if file_storage is None or not file_storage.filename:
        raise ValidationError("A file is required.", details={"file": "required"})
    filename = file_storage.filename
    extension = os.path.splitext(filename.lower())[1]
    if extension not in allowed:
        raise ValidationError(
            f"Only {', '.join(allowed)} files are accepted.", details={"file": list(allowed)},
        )

    payload = file_storage.read()
    if not payload:
        raise ValidationError("The uploaded file is empty.", details={"file": "empty"})
    if len(payload) > max_bytes:
        raise ValidationError(
            f"File exceeds the {max_bytes // (1024 * 1024)} MB limit.", details={"file": "too large"},
        )

    if extension == ".pdf":
        if not payload.startswith(PDF_SIGNATURE):
            raise ValidationError("File must be a valid PDF.", details={"file": "not a pdf"})
        return filename, extract_pdf_text(io.BytesIO(payload))

    try:
        text = payload.decode("utf-8").strip()
    except UnicodeDecodeError:
        raise ValidationError("Text files must be UTF-8 encoded.", details={"file": "not utf-8"})
    if not text:
        raise ValidationError("The uploaded file is empty.", details={"file": "empty"})
    return filename, text


def upload_procedure(account_id: str, file_storage) -> Account:
    """Extract, index and record a reference-procedure PDF for an account.

    Args:
        account_id: Target account.
        file_storage: werkzeug FileStorage from the multipart request.

    Raises:
        ValidationError: no file, not a PDF, too large, or no text.
        UpstreamError: the retrieval index rejected the document.
    """
    account = get_or_404(Account, account_id)
    filename, text = read_document_upload(file_storage)

    gateway = get_gateway()
    try:
        if not account.vector_store_id:
            account.vector_store_id = gateway.create_vector_store(f"account-{account.id}-procedures")
            # The remote store exists now; keep its id even if indexing fails
            db.session.commit()
        file_id = gateway.index_document(account.vector_store_id, filename, text)
    except Exception as e:
        db.session.rollback()
        logger.error("Indexing procedure %s for account %s failed: %s", filename, account.id, e)
        raise UpstreamError("Could not index the document for retrieval")

    account.append_procedure({
        "filename": filename,
        "uploaded_at": utcnow().isoformat(),
        "characters": len(text),
        "file_id": file_id,
    })
    db.session.commit()
    logger.info(
        "Procedure %s indexed for account %s (%d chars)", filename, account.id, len(text),
        extra={"event_type": "procedure_uploaded"},
    )
    return account
