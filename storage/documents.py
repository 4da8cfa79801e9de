"""
Storage - Session Documents.

============================================================
PURPOSE
============================================================
Plain-dict form of a session, shared by the file and SQL stores.

Unlike WorkerIdentity.to_dict(), these records include the
credential: the session store is the only place it is kept.

DOCUMENT SHAPE:
    {
        "session_ref", "stage", "resource_ref", "resource_name",
        "pair", "admin", "pool_size", "funding_amount",
        "last_lap_number", "created_at", "updated_at",
        "stranded_workers": [identity, ...],
        "generations": [[identity, ...], ...]
    }

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from lap_engine.types import PairInfo, SessionCheckpoint, SessionStage, WorkerIdentity, utcnow


DOCUMENT_VERSION = 1


def identity_to_record(identity: WorkerIdentity) -> Dict[str, Any]:
    record = identity.to_dict()
    record["credential"] = identity.credential
    return record


def identity_from_record(record: Dict[str, Any]) -> WorkerIdentity:
    return WorkerIdentity(
        id=int(record["id"]),
        address=record["address"],
        credential=record.get("credential"),
        primary_balance=Decimal(record.get("primary_balance") or "0"),
        secondary_balance=Decimal(record.get("secondary_balance") or "0"),
        active=bool(record.get("active", False)),
        created_at=_parse_time(record.get("created_at")) or utcnow(),
        retired_at=_parse_time(record.get("retired_at")),
    )


def header_to_document(checkpoint: SessionCheckpoint) -> Dict[str, Any]:
    """Everything but the worker generations."""
    return {
        "version": DOCUMENT_VERSION,
        "session_ref": checkpoint.session_ref,
        "stage": int(checkpoint.stage),
        "resource_ref": checkpoint.resource_ref,
        "resource_name": checkpoint.resource_name,
        "pair": checkpoint.pair.to_dict() if checkpoint.pair else None,
        "admin": identity_to_record(checkpoint.admin) if checkpoint.admin else None,
        "pool_size": checkpoint.pool_size,
        "funding_amount": str(checkpoint.funding_amount),
        "last_lap_number": checkpoint.last_lap_number,
        "created_at": checkpoint.created_at.isoformat(),
        "updated_at": checkpoint.updated_at.isoformat(),
        "stranded_workers": [identity_to_record(w) for w in checkpoint.stranded_workers],
    }


def checkpoint_from_document(
    document: Dict[str, Any],
    workers: Optional[List[Dict[str, Any]]] = None,
) -> SessionCheckpoint:
    """
    Rebuild a checkpoint.

    Args:
        document: Header document
        workers: Worker records to load (default: newest generation)
    """
    if workers is None:
        generations = document.get("generations") or [[]]
        workers = generations[-1]

    checkpoint = SessionCheckpoint(
        session_ref=document["session_ref"],
        stage=SessionStage(int(document["stage"])),
        resource_ref=document["resource_ref"],
        resource_name=document.get("resource_name", ""),
        pair=PairInfo.from_dict(document["pair"]) if document.get("pair") else None,
        admin=identity_from_record(document["admin"]) if document.get("admin") else None,
        workers=[identity_from_record(r) for r in workers],
        stranded_workers=[identity_from_record(r) for r in document.get("stranded_workers", [])],
        pool_size=int(document.get("pool_size", 0)),
        funding_amount=Decimal(document.get("funding_amount") or "0"),
        last_lap_number=int(document.get("last_lap_number") or 0),
    )
    created_at = _parse_time(document.get("created_at"))
    updated_at = _parse_time(document.get("updated_at"))
    if created_at:
        checkpoint.created_at = created_at
    if updated_at:
        checkpoint.updated_at = updated_at
    return checkpoint


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)
