"""
Production Workflow & Billing
Fiscal sequence counter.

One row per (prefix, fiscal_year). ``next_value`` is the number the next
caller will receive; it only ever grows and issued numbers are never handed
out twice. Rows are written exclusively by app.services.fiscal_sequence.
"""

from app.models import db, utcnow


class FiscalSequence(db.Model):
    __tablename__ = "fiscal_sequences"

    prefix = db.Column(db.String(20), primary_key=True)
    fiscal_year = db.Column(db.String(5), primary_key=True, comment="YY-YY, e.g. 25-26")
    next_value = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "prefix": self.prefix,
            "fiscal_year": self.fiscal_year,
            "next_value": self.next_value,
        }

    def __repr__(self):
        return f"<FiscalSequence {self.prefix} {self.fiscal_year} next={self.next_value}>"
