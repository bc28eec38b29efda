"""
Invoice model - cached extraction results.

One row per PDF attachment. The (message_id, attachment_id) pair is unique,
so re-extracting an attachment overwrites its row instead of adding one.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from app.database import Base

# Fields produced by the extractor, in API order
INVOICE_FIELDS = (
    "invoice_number",
    "issue_date",
    "due_date",
    "supplier_name",
    "supplier_tax_id",
    "supplier_vat_id",
    "total_amount",
    "amount_without_tax",
    "tax_amount",
    "payment_reference",
    "currency",
    "bank_account",
)


class Invoice(Base):
    """Structured invoice data extracted from one attachment."""
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True)

    # ============ SOURCE ============
    message_id = Column(String(255), nullable=False)
    attachment_id = Column(String(1024), nullable=False)

    # ============ DOCUMENT ============
    invoice_number = Column(String(255))
    issue_date = Column(String(32))  # YYYY-MM-DD as returned by the model
    due_date = Column(String(32))

    # ============ SUPPLIER ============
    supplier_name = Column(String(512))
    supplier_tax_id = Column(String(64))  # Company registration number
    supplier_vat_id = Column(String(64))

    # ============ AMOUNTS ============
    total_amount = Column(Float)
    amount_without_tax = Column(Float)
    tax_amount = Column(Float)
    currency = Column(String(16))

    # ============ PAYMENT ============
    payment_reference = Column(String(255))  # Variable symbol
    bank_account = Column(String(255))

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("message_id", "attachment_id", name="uq_invoices_message_attachment"),
    )

    def __repr__(self):
        return f"<Invoice(id={self.id}, number={self.invoice_number}, supplier={self.supplier_name})>"

    def to_fields_dict(self) -> dict:
        """Return the extracted fields only."""
        return {field: getattr(self, field) for field in INVOICE_FIELDS}
