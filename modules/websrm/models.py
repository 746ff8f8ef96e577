"""
WEB-SRM Module - Models
=========================
Durable delivery queue for signed WEB-SRM submissions.

Models:
  - FiscalQueueEntry: One signed transaction/closing + projection of its current state
  - FiscalQueueEvent: Immutable audit trail (one row per status transition)
  - FiscalReceipt: Confirmation returned by WEB-SRM for a sent entry
  - CircuitBreakerState: Consecutive transient failures per device

Events are never updated or deleted, entries are never deleted, and the
signed payload of an entry never changes after insert.
"""

from sqlalchemy import (
    JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, event, inspect,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from config.database import Base
from common.exceptions import ImmutableRecordError
from modules.websrm.enums import QueueStatus


# ==========================================
# FiscalQueueEntry
# ==========================================

class FiscalQueueEntry(Base):
    __tablename__ = "fiscal_queue_entries"

    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False)                           # transaction / closing
    id_trans = Column(String, nullable=False)                       # idTrans or idFer
    operation = Column(String, nullable=False)                      # acti/typTrans or FER
    device_id = Column(String, nullable=False)
    branch_id = Column(String, nullable=True)

    # Signed request (immutable)
    payload = Column(Text, nullable=False)                          # canonical body, sent as-is
    signature = Column(Text, nullable=False)
    algorithm = Column(String, nullable=False)
    payload_hash = Column(String(64), nullable=False)
    idempotency_key = Column(String(64), nullable=False, unique=True)

    # Current state (projection of the event log)
    status = Column(String, default=QueueStatus.PENDING.value, nullable=False)
    attempt_count = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, nullable=False)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(JSON, nullable=True)                        # {code, category, message, http_status}

    # Lease while status == sending
    lease_owner = Column(String, nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    events = relationship(
        "FiscalQueueEvent", back_populates="entry",
        order_by="FiscalQueueEvent.id", passive_deletes=True,
    )
    receipt = relationship("FiscalReceipt", back_populates="entry", uselist=False)

    __table_args__ = (
        UniqueConstraint("device_id", "kind", "id_trans", "operation", name="uq_fiscal_queue_submission"),
        Index("ix_fiscal_queue_due", "status", "next_attempt_at"),
        Index("ix_fiscal_queue_device_status", "device_id", "status"),
    )

    IMMUTABLE_COLUMNS = (
        "kind", "id_trans", "operation", "device_id", "payload", "signature",
        "algorithm", "payload_hash", "idempotency_key",
    )

    def __repr__(self):
        return f"<FiscalQueueEntry #{self.id} {self.kind}:{self.id_trans} {self.status}>"


# ==========================================
# FiscalQueueEvent (append-only)
# ==========================================

class FiscalQueueEvent(Base):
    __tablename__ = "fiscal_queue_events"

    id = Column(Integer, primary_key=True)
    entry_id = Column(Integer, ForeignKey("fiscal_queue_entries.id", ondelete="RESTRICT"), nullable=False)
    from_status = Column(String, nullable=True)                     # NULL for the enqueue event
    to_status = Column(String, nullable=False)
    attempt_count = Column(Integer, default=0, nullable=False)
    response_code = Column(String, nullable=True)                   # codRetour / TIMEOUT / NETWORK_ERROR
    http_status = Column(Integer, nullable=True)
    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)                     # PII-redacted
    duration_ms = Column(Integer, nullable=True)
    actor = Column(String, nullable=True)                           # worker id / admin / system
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    entry = relationship("FiscalQueueEntry", back_populates="events")

    __table_args__ = (
        Index("ix_fiscal_queue_events_entry", "entry_id", "id"),
    )


# ==========================================
# FiscalReceipt
# ==========================================

class FiscalReceipt(Base):
    __tablename__ = "fiscal_receipts"

    id = Column(Integer, primary_key=True)
    entry_id = Column(Integer, ForeignKey("fiscal_queue_entries.id", ondelete="RESTRICT"), nullable=False, unique=True)
    id_trans = Column(String, nullable=False)
    id_trans_srm = Column(String, nullable=True)
    code_qr = Column(Text, nullable=True)
    receipt_url = Column(Text, nullable=True)
    confirmed_at = Column(String, nullable=True)                    # dtConfirmation as returned
    response_code = Column(String, nullable=True)
    response_body = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    entry = relationship("FiscalQueueEntry", back_populates="receipt")

    def confirmation(self) -> dict:
        """Response fields in wire names, for receipt reference building."""
        data = {
            "idTrans": self.id_trans,
            "idTransSrm": self.id_trans_srm,
            "codeQR": self.code_qr,
            "urlRecu": self.receipt_url,
            "dtConfirmation": self.confirmed_at,
        }
        return {k: v for k, v in data.items() if v is not None}


# ==========================================
# CircuitBreakerState
# ==========================================

class CircuitBreakerState(Base):
    __tablename__ = "fiscal_circuit_breakers"

    device_id = Column(String, primary_key=True)
    consecutive_failures = Column(Integer, default=0, nullable=False)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    open_until = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


# ==========================================
# Append-only guards
# ==========================================

@event.listens_for(FiscalQueueEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise ImmutableRecordError(f"Queue event #{target.id} is append-only")


@event.listens_for(FiscalQueueEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Queue event #{target.id} is append-only")


@event.listens_for(FiscalQueueEntry, "before_delete")
def _reject_entry_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Queue entry #{target.id} cannot be deleted")


@event.listens_for(FiscalQueueEntry, "before_update")
def _reject_payload_change(mapper, connection, target):
    state = inspect(target)
    for name in FiscalQueueEntry.IMMUTABLE_COLUMNS:
        if state.attrs[name].history.has_changes():
            raise ImmutableRecordError(f"Queue entry #{target.id}: {name} is immutable")
