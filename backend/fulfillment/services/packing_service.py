# Overview: Packing session persistence; resumable scan progress for one order at a time.

"""
Packing Sessions

A packing session stores the reconciliation progress (item_key -> scanned
count) of one order so an interrupted run can pick up where it left off.

RULES:
- At most one in_progress session per order. resume_or_create returns the
  existing one; a concurrent create that loses the unique-index race
  resolves to the winner.
- Saving progress is best-effort. A database failure is logged and
  reported as False; the in-memory engine stays authoritative and the
  operator keeps scanning. Progress that could not be saved is held in
  _unsaved_progress and folded into the next engine built for that
  session, so a later scan (or the packed transition) starts from the
  real count and the next successful save writes it through.
- Two writers on the same session (two tabs) are a conflict, never a
  silent overwrite: version_id mismatches raise PackingSessionConflict.
- Cancelling a session does not change the order's status.
"""

from __future__ import annotations

import threading
from typing import Mapping

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Order, PackingSession
from ..models.packing import ACTIVE_SESSION_STATUS
from ..time_utils import minutes_between, utcnow
from ..validation import NotFoundError, ValidationError, coerce_non_negative_int
from .reconciliation import LineItem, ReconciliationEngine, ScanResult


class PackingError(Exception):
    """Raised for packing session operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class PackingSessionConflict(PackingError):
    """Another writer changed the session since it was read."""


# session_id -> progress accepted in memory but not yet stored
_unsaved_progress: dict[int, dict[str, int]] = {}
_unsaved_lock = threading.Lock()


def _remember_unsaved(session_id: int, progress: Mapping[str, int]) -> None:
    with _unsaved_lock:
        _unsaved_progress[session_id] = dict(progress)


def forget_unsaved(session_id: int) -> None:
    with _unsaved_lock:
        _unsaved_progress.pop(session_id, None)


def unsaved_progress(session_id: int) -> dict[str, int] | None:
    with _unsaved_lock:
        pending = _unsaved_progress.get(session_id)
        return dict(pending) if pending is not None else None


def _merge_progress(*maps: Mapping[str, int] | None) -> dict[str, int]:
    """Per-item maximum; scan counts only ever grow within a session."""
    merged: dict[str, int] = {}
    for progress in maps:
        for key, count in (progress or {}).items():
            merged[str(key)] = max(merged.get(str(key), 0), count)
    return merged


def line_items_for(order: Order) -> list[LineItem]:
    return [
        LineItem(item_id=item.item_key, quantity=item.quantity, barcode=item.barcode, name=item.name)
        for item in order.items
    ]


def build_engine(
    order: Order,
    session: PackingSession | None = None,
    progress: Mapping[str, int] | None = None,
) -> ReconciliationEngine:
    """
    Engine for order, seeded from an explicit progress map, else from the
    session's saved progress plus anything a failed save left unsaved,
    else empty.
    """
    if progress is None and session is not None:
        progress = _merge_progress(session.scan_progress, unsaved_progress(session.id))
    return ReconciliationEngine(line_items_for(order), progress)


def get_session(session_id: int) -> PackingSession:
    session = db.session.get(PackingSession, session_id)
    if session is None:
        raise NotFoundError(f"Packing session {session_id} not found")
    return session


def get_active_session(order_id: int) -> PackingSession | None:
    return (
        db.session.query(PackingSession)
        .filter_by(order_id=order_id, status=ACTIVE_SESSION_STATUS)
        .first()
    )


def _require_active(session: PackingSession) -> None:
    if not session.is_active:
        raise PackingError(
            f"Packing session {session.id} is {session.status}",
            details={"session_id": session.id, "status": session.status},
        )


def resume_or_create(order_id: int, *, admin_email: str | None = None) -> PackingSession:
    """Return the order's in_progress session, creating one if there is none."""
    if db.session.get(Order, order_id) is None:
        raise NotFoundError(f"Order {order_id} not found")

    existing = get_active_session(order_id)
    if existing is not None:
        return existing

    session = PackingSession(
        order_id=order_id,
        status=ACTIVE_SESSION_STATUS,
        scan_progress={},
        admin_email=admin_email,
        started_at=utcnow(),
    )
    db.session.add(session)
    try:
        db.session.commit()
    except IntegrityError:
        # Lost the race against another tab opening the same order
        db.session.rollback()
        winner = get_active_session(order_id)
        if winner is None:
            raise
        return winner

    current_app.logger.info("Started packing session %s for order %s", session.id, order_id)
    return session


def validate_progress(order: Order, scan_progress: Mapping) -> dict[str, int]:
    if not isinstance(scan_progress, Mapping):
        raise ValidationError("scan_progress must be an object of item_key -> count")

    required = {item.item_key: item.quantity for item in order.items}
    cleaned: dict[str, int] = {}
    for key, raw in scan_progress.items():
        key = str(key)
        if key not in required:
            raise ValidationError(f"scan_progress has unknown item {key!r}")
        count = coerce_non_negative_int(raw, f"scan_progress[{key}]")
        if count > required[key]:
            raise ValidationError(
                f"scan_progress[{key}] is {count} but only {required[key]} required"
            )
        cleaned[key] = count
    return cleaned


def persist_scan(
    session_id: int,
    scan_progress: Mapping,
    *,
    expected_version: int | None = None,
) -> bool:
    """
    Save scan progress for an in_progress session.

    Returns False (after logging) when the database write fails; callers
    carry on with their in-memory state. Malformed progress raises
    ValidationError and a stale expected_version raises
    PackingSessionConflict.
    """
    session = get_session(session_id)
    _require_active(session)

    if expected_version is not None and session.version_id != expected_version:
        raise PackingSessionConflict(
            f"Packing session {session_id} was updated elsewhere",
            details={"expected_version": expected_version, "current_version": session.version_id},
        )

    progress = validate_progress(session.order, scan_progress)

    try:
        session.scan_progress = progress
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise PackingSessionConflict(
            f"Packing session {session_id} was updated elsewhere",
            details={"session_id": session_id},
        )
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning(
            "Failed to save scan progress for packing session %s", session_id, exc_info=True
        )
        _remember_unsaved(session_id, progress)
        return False

    forget_unsaved(session_id)
    return True


def record_scan(
    session_id: int,
    raw_barcode: str | None,
    *,
    client_progress: Mapping | None = None,
    expected_version: int | None = None,
) -> tuple[ScanResult | None, ReconciliationEngine, bool]:
    """
    Apply one scan to a stored session.

    Returns (result, engine, saved). result is None for blank input.
    Progress is saved only when the scan was accepted; saved is False if
    that write failed, and the count is carried into the next scan.

    client_progress is the progress map the scanning client last saw. It
    is merged in when it is ahead of the stored row (a save that failed in
    another worker), so the count never drifts below what is in the box.
    """
    session = get_session(session_id)
    _require_active(session)

    if expected_version is not None and session.version_id != expected_version:
        raise PackingSessionConflict(
            f"Packing session {session_id} was updated elsewhere",
            details={"expected_version": expected_version, "current_version": session.version_id},
        )

    progress = _merge_progress(session.scan_progress, unsaved_progress(session.id))
    if client_progress is not None:
        progress = _merge_progress(progress, validate_progress(session.order, client_progress))
    engine = build_engine(session.order, progress=progress)
    result = engine.submit_scan(raw_barcode)

    saved = True
    if result is not None and result.accepted:
        saved = persist_scan(session.id, engine.progress(), expected_version=session.version_id)
    return result, engine, saved


def complete(session_id: int, *, scan_progress: Mapping | None = None, commit: bool = True) -> PackingSession:
    """
    Finalize a session. Used by the order lifecycle on in_packing -> packed,
    which passes commit=False to keep both writes in one transaction and
    calls forget_unsaved itself once that transaction is committed.
    """
    session = get_session(session_id)
    _require_active(session)

    now = utcnow()
    if scan_progress is not None:
        session.scan_progress = dict(scan_progress)
    session.status = "completed"
    session.completed_at = now
    session.packing_duration_minutes = minutes_between(session.started_at, now)

    if commit:
        db.session.commit()
        forget_unsaved(session.id)
    return session


def cancel(session_id: int, *, commit: bool = True) -> PackingSession:
    """Abandon a session. The order stays where it is."""
    session = get_session(session_id)
    _require_active(session)

    session.status = "cancelled"
    session.cancelled_at = utcnow()

    if commit:
        db.session.commit()
        forget_unsaved(session.id)
    current_app.logger.info(
        "Cancelled packing session %s for order %s", session.id, session.order_id
    )
    return session
