from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z


class Store(db.Model):
    """
    Seller storefront.

    Read-only from the settlement core's point of view apart from the
    commission override columns, which feed the seller tier of commission
    resolution. NULL on both override columns means "no seller override".
    """
    __tablename__ = "stores"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)
    status = db.Column(db.String(16), nullable=False, default="ACTIVE", index=True)  # ACTIVE, LIMITED_ACTIVE, SUSPENDED, CLOSED
    currency_code = db.Column(db.String(3), nullable=False, default="USD")

    # Seller-tier commission override
    commission_rate_bps = db.Column(db.Integer, nullable=True)
    fixed_commission_cents = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Store id={self.id} name={self.name!r}>"

    @property
    def has_commission_override(self) -> bool:
        return self.commission_rate_bps is not None or self.fixed_commission_cents is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "status": self.status,
            "currency_code": self.currency_code,
            "commission_rate_bps": self.commission_rate_bps,
            "fixed_commission_cents": self.fixed_commission_cents,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }


class Category(db.Model):
    """Product category; carries the highest-priority commission override."""
    __tablename__ = "categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    parent_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    # Category-tier commission override
    commission_rate_bps = db.Column(db.Integer, nullable=True)
    fixed_commission_cents = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    parent = db.relationship("Category", remote_side=[id], backref=db.backref("children", lazy=True))

    @property
    def has_commission_override(self) -> bool:
        return self.commission_rate_bps is not None or self.fixed_commission_cents is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "parent_id": self.parent_id,
            "commission_rate_bps": self.commission_rate_bps,
            "fixed_commission_cents": self.fixed_commission_cents,
            "created_at": to_utc_z(self.created_at),
        }


class CommissionConfig(db.Model):
    """
    Platform-wide commission configuration (global tier).

    Only the newest active row applies. Older rows are kept for audit.
    """
    __tablename__ = "commission_configs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    commission_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    fixed_commission_cents = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "commission_rate_bps": self.commission_rate_bps,
            "fixed_commission_cents": self.fixed_commission_cents,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
