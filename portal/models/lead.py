from __future__ import annotations

from sqlalchemy import Column, Enum, Index, Numeric, String, Text

from portal.db.base import Base, UTCDateTime, new_uuid, utcnow

LEAD_STATUSES = ("draft", "submitted", "processing", "other")


class Lead(Base):
    """A credit application submitted by a prospective car buyer.

    Leads are ingested by another system; this service only reads them and
    never deletes them.
    """
    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=new_uuid)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    submitted_at = Column(UTCDateTime, default=utcnow, nullable=False)
    status = Column(Enum(*LEAD_STATUSES, name="lead_status"), nullable=False, default="submitted")

    # Descriptive fields, visible to every dealer
    full_name = Column(String(200), nullable=False)
    city = Column(String(128))
    province = Column(String(64))
    vehicle_type = Column(String(64))
    preferred_make_model = Column(String(200))
    employment_status = Column(String(64))
    monthly_income = Column(Numeric(12, 2))
    additional_notes = Column(Text)

    # Contact fields, only revealed to purchasers
    email = Column(String(200))
    phone_number = Column(String(32))
    street_address = Column(String(255))
    postal_code = Column(String(16))

    __table_args__ = (
        Index("idx_leads_submitted_at", "submitted_at"),
        Index("idx_leads_status_submitted", "status", "submitted_at"),
    )

    CONTACT_FIELDS = ("email", "phone_number", "street_address", "postal_code")

    def public_dict(self) -> dict:
        """Lead details without contact information."""
        return self.to_dict(exclude=list(self.CONTACT_FIELDS))
