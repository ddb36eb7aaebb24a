# backend/stockaudit/services/recovery_service.py
"""
Recovery (loss-chargeback) ticket workflow.

WHY: A sustained shortage found by the month scan becomes a ticket that
head office approves, collects, and closes. Several operators act on the
same tickets at once, so every status change is a compare-and-swap on the
status column, never a read-modify-write of an in-memory copy.

STATE MACHINE:
    PENDING     -> APPROVED, REJECTED, CANCELLED
    APPROVED    -> IN_PROGRESS, CANCELLED
    IN_PROGRESS -> RECOVERED, CANCELLED
    RECOVERED, REJECTED, CANCELLED are terminal.

RULES:
1. PENDING is the only initial state (create_ticket).
2. Every transition goes through _apply_transition(), which takes the
   allowed source statuses from the transition table and performs
   UPDATE ... WHERE id = :id AND status = :source as one statement.
3. A lost race raises TransitionConflictError, never a generic error, so the
   caller can refresh and retry. Retrying a transition that already
   succeeded fails the same way.
4. Notifications are published only after the commit and can never undo
   or fail the mutation.
"""
from __future__ import annotations

import logging
from datetime import datetime, time, timedelta
from enum import Enum

from sqlalchemy import func, or_

from ..extensions import db
from ..models import Product, RecoveryHistoryEntry, RecoveryTicket, Store, User
from ..time_utils import parse_iso_date, utcnow
from ..validation import (
    ValidationError,
    coerce_int,
    coerce_text,
    enforce_rules_recovered_amount,
    enforce_rules_ticket_amounts,
)
from . import notification_service
from .concurrency import compare_and_set_status, run_with_retry
from .notification_service import NotificationEvent

logger = logging.getLogger(__name__)


class RecoveryStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    IN_PROGRESS = "IN_PROGRESS"
    RECOVERED = "RECOVERED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


_TRANSITIONS: dict[RecoveryStatus, frozenset[RecoveryStatus]] = {
    RecoveryStatus.PENDING: frozenset({RecoveryStatus.APPROVED, RecoveryStatus.REJECTED, RecoveryStatus.CANCELLED}),
    RecoveryStatus.APPROVED: frozenset({RecoveryStatus.IN_PROGRESS, RecoveryStatus.CANCELLED}),
    RecoveryStatus.IN_PROGRESS: frozenset({RecoveryStatus.RECOVERED, RecoveryStatus.CANCELLED}),
    RecoveryStatus.RECOVERED: frozenset(),
    RecoveryStatus.REJECTED: frozenset(),
    RecoveryStatus.CANCELLED: frozenset(),
}

# Every transition moves forward in this order
_LIFECYCLE_ORDER = tuple(RecoveryStatus)

TERMINAL_STATUSES = frozenset(s for s, targets in _TRANSITIONS.items() if not targets)
ACTIVE_STATUSES = frozenset(RecoveryStatus) - TERMINAL_STATUSES

DEFAULT_LIST_LIMIT = 200


class RecoveryError(Exception):
    """Base class for recovery workflow failures."""
    pass


class TicketNotFoundError(RecoveryError):
    def __init__(self, ticket_id: int):
        super().__init__(f"Recovery ticket {ticket_id} not found")
        self.ticket_id = ticket_id


class TransitionConflictError(RecoveryError):
    """
    The ticket is not in a state that allows the requested change.

    This is the expected shape of a lost race: refresh and retry.
    """

    def __init__(self, ticket_id: int, current_status: str, target_status: str | None, message: str | None = None):
        self.ticket_id = ticket_id
        self.current_status = current_status
        self.target_status = target_status
        if message is None:
            message = f"Cannot transition ticket {ticket_id} from {current_status} to {target_status}"
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "ticket_id": self.ticket_id,
            "current_status": self.current_status,
            "target_status": self.target_status,
            "retryable": True,
        }


def parse_status(value) -> RecoveryStatus:
    try:
        return RecoveryStatus(str(value).upper().strip())
    except ValueError:
        raise ValidationError(
            f"Invalid status '{value}'. Must be one of: {', '.join(s.value for s in RecoveryStatus)}",
            "status",
        )


def allowed_next(status) -> frozenset[RecoveryStatus]:
    """The transition table: statuses reachable in one step from status."""
    return _TRANSITIONS[RecoveryStatus(status)]


def allowed_sources(target) -> tuple[RecoveryStatus, ...]:
    """Statuses from which target is reachable, in lifecycle order."""
    target = RecoveryStatus(target)
    return tuple(s for s in _LIFECYCLE_ORDER if target in _TRANSITIONS[s])


def can_transition(from_status, to_status) -> bool:
    return RecoveryStatus(to_status) in allowed_next(from_status)


def is_terminal(status) -> bool:
    return RecoveryStatus(status) in TERMINAL_STATUSES


# ================================================================================
# Creation
# ================================================================================

def _store_recipients(store_id: int, *, exclude_user_id: int | None) -> tuple[int, ...]:
    # Runs after the ticket commit, so a failed lookup only loses the notification
    try:
        return tuple(notification_service.store_employee_ids(store_id, exclude_user_id=exclude_user_id))
    except Exception:
        db.session.rollback()
        logger.exception("Could not resolve notification recipients for store %s", store_id)
        return ()


def create_ticket(
    *,
    store_id: int,
    product_id: int | None,
    quantity,
    unit_price,
    reason: str | None,
    created_by_user_id: int,
    notes: str | None = None,
    product_name: str | None = None,
    barcode: str | None = None,
) -> RecoveryTicket:
    """
    Create a recovery ticket in PENDING.

    Validation happens before anything is written. total_amount is always
    quantity * unit_price.

    Side effect (after commit): every employee of the store except the
    creator is notified.

    Raises:
        ValidationError: Field-level input problem
    """
    if product_id is None or product_id == "":
        raise ValidationError("product_id is required", "product_id")
    product_id = coerce_int("product_id", product_id)
    store_id = coerce_int("store_id", store_id)
    patch = {
        "quantity": coerce_int("quantity", quantity),
        "unit_price": coerce_int("unit_price", unit_price),
    }
    enforce_rules_ticket_amounts(patch)
    reason = coerce_text("reason", reason, required=True)
    notes = coerce_text("notes", notes)

    store = db.session.get(Store, store_id)
    if store is None:
        raise ValidationError(f"Store {store_id} not found", "store_id")
    product = db.session.get(Product, product_id)
    if product is None:
        raise ValidationError(f"Product {product_id} not found", "product_id")

    def _op():
        now = utcnow()
        ticket = RecoveryTicket(
            store_id=store_id,
            product_id=product_id,
            product_name=product_name or product.name,
            barcode=barcode or product.barcode,
            quantity=patch["quantity"],
            unit_price=patch["unit_price"],
            total_amount=patch["quantity"] * patch["unit_price"],
            status=RecoveryStatus.PENDING.value,
            reason=reason,
            notes=notes,
            created_by_user_id=created_by_user_id,
            created_at=now,
            submitted_at=now,
            updated_at=now,
        )
        db.session.add(ticket)
        db.session.flush()

        db.session.add(RecoveryHistoryEntry(
            ticket_id=ticket.id,
            changed_by_user_id=created_by_user_id,
            previous_status=None,
            new_status=RecoveryStatus.PENDING.value,
            notes=reason,
            changed_at=now,
        ))
        db.session.commit()
        return ticket

    ticket = run_with_retry(_op)
    logger.info("Recovery ticket %s created for store %s (amount=%s)", ticket.id, store.code, ticket.total_amount)

    notification_service.publish([
        NotificationEvent(
            user_ids=_store_recipients(store_id, exclude_user_id=created_by_user_id),
            type=notification_service.TYPE_RECOVERY_CREATED,
            title=f"New recovery ticket at {store.code}",
            message=f"{ticket.product_name}: {ticket.quantity} unit(s), {ticket.total_amount} total. {reason}",
            reference_id=str(ticket.id),
        )
    ])
    return ticket


# ================================================================================
# Transitions
# ================================================================================

def _current_status(ticket_id: int) -> RecoveryStatus | None:
    # Column query: always hits the database, never the identity map
    value = db.session.query(RecoveryTicket.status).filter(RecoveryTicket.id == ticket_id).scalar()
    return RecoveryStatus(value) if value is not None else None


def _apply_transition(
    ticket_id: int,
    target: RecoveryStatus | None,
    *,
    actor_user_id: int | None,
    values: dict,
    history_notes: str | None = None,
    action: str | None = None,
) -> tuple[RecoveryTicket, RecoveryStatus]:
    """
    Single mutation point for ticket status.

    The check and the write are one statement per candidate source:
    UPDATE ... WHERE id = :id AND status = :source. Sources are tried in
    lifecycle order; since tickets only move forward in that order, a ticket
    sitting in any allowed source is always matched. Only when nothing
    matched is the row read back, to tell "not found" from a conflict.

    target=None keeps the status but still requires a non-terminal ticket
    (assignment). Commits on success.

    Returns:
        (fresh ticket, status before the change)
    """
    if target is None:
        sources = tuple(s for s in _LIFECYCLE_ORDER if s in ACTIVE_STATUSES)
    else:
        sources = allowed_sources(target)

    def _op():
        now = utcnow()
        update_values = {"updated_at": now, **values}
        if target is not None:
            update_values["status"] = target.value

        previous = None
        for source in sources:
            updated = compare_and_set_status(
                RecoveryTicket,
                ticket_id,
                expected_statuses=[source.value],
                values=update_values,
            )
            if updated == 1:
                previous = source
                break

        if previous is None:
            db.session.rollback()
            current = _current_status(ticket_id)
            if current is None:
                raise TicketNotFoundError(ticket_id)
            if target is None:
                raise TransitionConflictError(
                    ticket_id, current.value, None,
                    f"Cannot {action or 'update'} ticket {ticket_id} in {current.value} status",
                )
            raise TransitionConflictError(ticket_id, current.value, target.value)

        db.session.add(RecoveryHistoryEntry(
            ticket_id=ticket_id,
            changed_by_user_id=actor_user_id,
            previous_status=previous.value,
            new_status=(target or previous).value,
            notes=history_notes,
            changed_at=now,
        ))
        db.session.commit()
        return previous

    previous = run_with_retry(_op)
    ticket = db.session.get(RecoveryTicket, ticket_id, populate_existing=True)
    logger.info(
        "Recovery ticket %s: %s -> %s by user %s",
        ticket_id, previous.value, ticket.status, actor_user_id,
    )
    return ticket, previous


def _creator_event(ticket: RecoveryTicket, actor_user_id: int | None, type_: str, title: str, message: str) -> NotificationEvent:
    recipients = {ticket.created_by_user_id}
    if ticket.assigned_to_user_id:
        recipients.add(ticket.assigned_to_user_id)
    recipients.discard(actor_user_id)
    return NotificationEvent(
        user_ids=tuple(sorted(recipients)),
        type=type_,
        title=title,
        message=message,
        reference_id=str(ticket.id),
    )


def approve_ticket(ticket_id: int, *, user_id: int, notes: str | None = None) -> RecoveryTicket:
    """PENDING -> APPROVED."""
    ticket, _ = _apply_transition(
        ticket_id,
        RecoveryStatus.APPROVED,
        actor_user_id=user_id,
        values={"approved_by_user_id": user_id, "approved_at": utcnow()},
        history_notes=coerce_text("notes", notes),
    )
    notification_service.publish([
        _creator_event(
            ticket, user_id, notification_service.TYPE_RECOVERY_APPROVED,
            f"Recovery ticket #{ticket.id} approved",
            f"{ticket.product_name}: {ticket.total_amount} to recover",
        )
    ])
    return ticket


def reject_ticket(ticket_id: int, *, user_id: int, reason: str | None) -> RecoveryTicket:
    """PENDING -> REJECTED. A rejection reason is mandatory."""
    reason = coerce_text("reason", reason, required=True)
    ticket, _ = _apply_transition(
        ticket_id,
        RecoveryStatus.REJECTED,
        actor_user_id=user_id,
        values={
            "rejected_by_user_id": user_id,
            "rejected_at": utcnow(),
            "rejection_reason": reason,
        },
        history_notes=reason,
    )
    notification_service.publish([
        _creator_event(
            ticket, user_id, notification_service.TYPE_RECOVERY_REJECTED,
            f"Recovery ticket #{ticket.id} rejected",
            reason,
        )
    ])
    return ticket


def mark_in_progress(ticket_id: int, *, user_id: int) -> RecoveryTicket:
    """APPROVED -> IN_PROGRESS."""
    ticket, _ = _apply_transition(
        ticket_id,
        RecoveryStatus.IN_PROGRESS,
        actor_user_id=user_id,
        values={"in_progress_at": utcnow()},
    )
    return ticket


def mark_recovered(ticket_id: int, *, user_id: int, recovered_amount=None) -> RecoveryTicket:
    """
    IN_PROGRESS -> RECOVERED.

    recovered_amount is what was actually collected; it defaults to the
    ticket's total_amount and may legitimately be lower (partial recovery).
    """
    amount = coerce_int("recovered_amount", recovered_amount, required=False)
    enforce_rules_recovered_amount(amount)

    ticket, _ = _apply_transition(
        ticket_id,
        RecoveryStatus.RECOVERED,
        actor_user_id=user_id,
        values={
            "recovered_at": utcnow(),
            # SQL expression keeps the default atomic with the status check
            "recovered_amount": amount if amount is not None else RecoveryTicket.total_amount,
        },
        history_notes=f"Recovered {amount}" if amount is not None else None,
    )
    notification_service.publish([
        _creator_event(
            ticket, user_id, notification_service.TYPE_RECOVERY_COMPLETED,
            f"Recovery ticket #{ticket.id} recovered",
            f"Collected {ticket.recovered_amount} of {ticket.total_amount}",
        )
    ])
    return ticket


def cancel_ticket(ticket_id: int, *, user_id: int, reason: str | None = None) -> RecoveryTicket:
    """Any non-terminal status -> CANCELLED."""
    ticket, _ = _apply_transition(
        ticket_id,
        RecoveryStatus.CANCELLED,
        actor_user_id=user_id,
        values={"cancelled_by_user_id": user_id, "cancelled_at": utcnow()},
        history_notes=coerce_text("reason", reason),
    )
    return ticket


def assign_ticket(ticket_id: int, *, assignee_user_id, assigned_by_user_id: int | None) -> RecoveryTicket:
    """
    Set (or overwrite) the ticket's assignee. Allowed in any non-terminal status.

    Side effect (after commit): the assignee is notified.
    """
    assignee_user_id = coerce_int("assignee_user_id", assignee_user_id)
    assignee = db.session.get(User, assignee_user_id)
    if assignee is None or not assignee.is_active:
        raise ValidationError(f"User {assignee_user_id} not found or inactive", "assignee_user_id")

    ticket, _ = _apply_transition(
        ticket_id,
        None,
        actor_user_id=assigned_by_user_id,
        values={"assigned_to_user_id": assignee_user_id},
        history_notes=f"Assigned to user {assignee_user_id}",
        action="assign",
    )
    notification_service.publish([
        NotificationEvent(
            user_ids=(assignee_user_id,),
            type=notification_service.TYPE_RECOVERY_ASSIGNED,
            title=f"Recovery ticket #{ticket.id} assigned to you",
            message=f"{ticket.product_name}: {ticket.quantity} unit(s), {ticket.total_amount} total",
            reference_id=str(ticket.id),
        )
    ])
    return ticket


# ================================================================================
# Edits and queries
# ================================================================================

EDITABLE_FIELDS = {"product_id", "product_name", "barcode", "quantity", "unit_price", "reason", "notes"}


def update_ticket(ticket_id: int, changes: dict, *, user_id: int) -> RecoveryTicket:
    """
    Edit a PENDING ticket (typically to fill in unit_price after bulk creation).

    total_amount is recomputed. version_id turns a concurrent transition into
    a StaleDataError, which run_with_retry replays against fresh state.
    """
    if not isinstance(changes, dict) or not changes:
        raise ValidationError("No changes provided")
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(sorted(unknown))}", sorted(unknown)[0])

    patch: dict = {}
    for key in ("quantity", "unit_price", "product_id"):
        if key in changes:
            patch[key] = coerce_int(key, changes[key])
    for key in ("product_name", "barcode", "notes"):
        if key in changes:
            patch[key] = coerce_text(key, changes[key])
    if "reason" in changes:
        patch["reason"] = coerce_text("reason", changes["reason"], required=True)
    enforce_rules_ticket_amounts(patch)

    if "product_id" in patch and db.session.get(Product, patch["product_id"]) is None:
        raise ValidationError(f"Product {patch['product_id']} not found", "product_id")

    def _op():
        ticket = db.session.get(RecoveryTicket, ticket_id, populate_existing=True)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        if ticket.status != RecoveryStatus.PENDING.value:
            raise TransitionConflictError(
                ticket_id, ticket.status, None,
                f"Cannot edit ticket {ticket_id} in {ticket.status} status",
            )

        for key, value in patch.items():
            setattr(ticket, key, value)
        ticket.total_amount = ticket.quantity * ticket.unit_price
        ticket.updated_at = utcnow()
        db.session.commit()
        return ticket

    ticket = run_with_retry(_op)
    logger.info("Recovery ticket %s edited by user %s: %s", ticket_id, user_id, sorted(patch))
    return ticket


def get_ticket(ticket_id: int) -> RecoveryTicket:
    ticket = db.session.get(RecoveryTicket, ticket_id)
    if ticket is None:
        raise TicketNotFoundError(ticket_id)
    return ticket


def get_ticket_history(ticket_id: int) -> list[RecoveryHistoryEntry]:
    get_ticket(ticket_id)
    return (
        db.session.query(RecoveryHistoryEntry)
        .filter_by(ticket_id=ticket_id)
        .order_by(RecoveryHistoryEntry.id.asc())
        .all()
    )


def _filtered_query(
    *,
    store_id: int | None = None,
    status=None,
    created_by_user_id: int | None = None,
    from_date: str | None = None,
    to_date: str | None = None,
    search: str | None = None,
):
    q = db.session.query(RecoveryTicket)

    if store_id is not None:
        q = q.filter(RecoveryTicket.store_id == store_id)
    if status:
        q = q.filter(RecoveryTicket.status == parse_status(status).value)
    if created_by_user_id is not None:
        q = q.filter(RecoveryTicket.created_by_user_id == created_by_user_id)

    try:
        start = parse_iso_date(from_date)
        end = parse_iso_date(to_date)
    except ValueError:
        raise ValidationError("from_date/to_date must be YYYY-MM-DD dates")
    if start is not None:
        q = q.filter(RecoveryTicket.created_at >= datetime.combine(start, time.min))
    if end is not None:
        # Inclusive end date
        q = q.filter(RecoveryTicket.created_at < datetime.combine(end + timedelta(days=1), time.min))

    if search:
        escaped = search.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        term = f"%{escaped}%"
        q = q.filter(or_(
            RecoveryTicket.reason.ilike(term, escape="\\"),
            RecoveryTicket.notes.ilike(term, escape="\\"),
            RecoveryTicket.product_name.ilike(term, escape="\\"),
            RecoveryTicket.barcode.ilike(term, escape="\\"),
        ))
    return q


def list_tickets(*, limit: int = DEFAULT_LIST_LIMIT, **filters) -> list[RecoveryTicket]:
    """
    Query tickets.

    Filters: store_id, status, created_by_user_id, from_date, to_date
    (created_at, inclusive, YYYY-MM-DD), search (reason, notes, product).
    """
    q = _filtered_query(**filters)
    q = q.order_by(RecoveryTicket.created_at.desc(), RecoveryTicket.id.desc())
    return q.limit(limit).all()


def get_ticket_stats(**filters) -> dict:
    """Counts per status, money totals, and a per-store breakdown."""
    base = _filtered_query(**filters).subquery()

    by_status = dict(
        db.session.query(base.c.status, func.count(base.c.id)).group_by(base.c.status).all()
    )
    totals = db.session.query(
        func.count(base.c.id),
        func.coalesce(func.sum(base.c.total_amount), 0),
        func.coalesce(func.sum(base.c.recovered_amount), 0),
    ).one()

    by_store = (
        db.session.query(
            base.c.store_id,
            Store.code,
            Store.name,
            func.count(base.c.id),
            func.coalesce(func.sum(base.c.total_amount), 0),
        )
        .join(Store, Store.id == base.c.store_id)
        .group_by(base.c.store_id, Store.code, Store.name)
        .order_by(Store.code.asc())
        .all()
    )

    return {
        "total_items": totals[0],
        "total_amount": int(totals[1]),
        "recovered_amount": int(totals[2]),
        "pending_count": by_status.get(RecoveryStatus.PENDING.value, 0),
        "approved_count": by_status.get(RecoveryStatus.APPROVED.value, 0),
        "in_progress_count": by_status.get(RecoveryStatus.IN_PROGRESS.value, 0),
        "recovered_count": by_status.get(RecoveryStatus.RECOVERED.value, 0),
        "rejected_count": by_status.get(RecoveryStatus.REJECTED.value, 0),
        "cancelled_count": by_status.get(RecoveryStatus.CANCELLED.value, 0),
        "by_store": [
            {
                "store_id": row[0],
                "store_code": row[1],
                "store_name": row[2],
                "count": row[3],
                "total_amount": int(row[4]),
            }
            for row in by_store
        ],
    }
