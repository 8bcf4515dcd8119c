"""Sale model."""
from sqlalchemy import Column, String, Text, Numeric, DateTime, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from subdesk.database import Base, BigIntPK
import enum


class SaleStatus(enum.Enum):
    """Sale status enum."""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def consumes_slots(self):
        """Whether sales in this status hold their account slots."""
        return self is not SaleStatus.CANCELLED


class CustomerType(enum.Enum):
    """Customer type enum (resellers are eligible for discounts)."""
    STANDARD = "standard"
    RESELLER = "reseller"


class Sale(Base):
    """Sale (order of slots on one or more accounts)."""

    __tablename__ = 'sale'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_number = Column(String(32), unique=True, nullable=False, index=True)

    customer_name = Column(String(100), nullable=False)
    customer_email = Column(String(255), nullable=True, index=True)
    customer_phone = Column(String(20), nullable=True)
    customer_type = Column(Enum(CustomerType, name='customer_type'), nullable=False, default=CustomerType.STANDARD)

    discount_rate = Column(Numeric(5, 2), nullable=False, default=0)
    subtotal = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)

    status = Column(Enum(SaleStatus, name='sale_status'), nullable=False, default=SaleStatus.ACTIVE)
    payment_method = Column(String(20), nullable=False, default='card')
    notes = Column(Text, nullable=True)
    order_date = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    # Valid-until date of the sold access
    end_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    lines = relationship(
        'SaleLine',
        back_populates='sale',
        cascade='all, delete-orphan',
        passive_deletes=True,
        order_by='SaleLine.position'
    )
    credentials = relationship(
        'AccountCredential',
        back_populates='sale',
        cascade='all, delete-orphan',
        passive_deletes=True
    )

    @property
    def slot_count(self):
        """Total slots consumed by the sale's lines."""
        return sum(line.quantity for line in self.lines)

    def to_dict(self, include_credentials=True):
        data = {
            'id': self.id,
            'orderNumber': self.order_number,
            'customerName': self.customer_name,
            'customerEmail': self.customer_email,
            'customerPhone': self.customer_phone,
            'customerType': self.customer_type.value,
            'status': self.status.value,
            'paymentMethod': self.payment_method,
            'notes': self.notes,
            'orderDate': self.order_date.isoformat() if self.order_date else None,
            'endDate': self.end_date.isoformat() if self.end_date else None,
            'discountRate': str(self.discount_rate),
            'subtotal': str(self.subtotal),
            'discountAmount': str(self.discount_amount),
            'totalAmount': str(self.total_amount),
            'items': [line.to_dict() for line in self.lines],
        }
        if include_credentials:
            data['credentials'] = [cred.to_dict() for cred in self.credentials]
        return data

    def __repr__(self):
        return f"<Sale(order_number='{self.order_number}', total={self.total_amount}, status={self.status.value})>"
