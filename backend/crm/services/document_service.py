# Overview: Per-store document numbering for sales and repair tickets.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _current_number(store_id: int, document_type: str) -> int:
    return (
        db.session.query(DocumentSequence.next_number)
        .filter_by(store_id=store_id, document_type=document_type)
        .scalar()
    )


def next_document_number(
    *,
    store_id: int | None,
    document_type: str,
    prefix: str,
    pad: int = 4,
) -> str:
    """
    Atomically allocate the next document number for a store/type.

    The increment is a single UPDATE on (store_id, document_type); the first
    allocation inserts the row inside a savepoint so a concurrent insert
    only loses the savepoint, not the caller's transaction.

    store_id None uses the store-less sequence 0.

    Runs inside the caller's transaction; the caller commits.
    """
    if not document_type:
        raise DocumentSequenceError("document_type is required")
    seq_store = store_id or 0

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.store_id == seq_store,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        next_num = _current_number(seq_store, document_type) - 1
    else:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(store_id=seq_store, document_type=document_type, next_number=2))
            next_num = 1
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise DocumentSequenceError(f"Could not allocate {document_type} number")
            next_num = _current_number(seq_store, document_type) - 1

    return f"{prefix}-{seq_store:03d}-{next_num:0{pad}d}"
