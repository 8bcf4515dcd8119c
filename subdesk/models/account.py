"""Account model (shared service subscription sold in slots)."""
from sqlalchemy import Column, BigInteger, Integer, String, Text, Numeric, Boolean, DateTime, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from subdesk.database import Base, BigIntPK


class Account(Base):
    """Shared account whose user slots are sold through sales."""

    __tablename__ = 'account'
    __table_args__ = (
        CheckConstraint('max_user_slots >= 1', name='ck_account_max_user_slots_positive'),
        CheckConstraint('current_users >= 0', name='ck_account_current_users_non_negative'),
        CheckConstraint('current_users <= max_user_slots', name='ck_account_current_users_within_max'),
        CheckConstraint(
            'available_slots = max_user_slots - current_users',
            name='ck_account_available_slots_consistent'
        ),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    product_name = Column(String(100), nullable=False)
    label = Column(String(100), nullable=True)
    # Display and lookup only; sale lines reference the account by id
    email = Column(String(255), nullable=True, index=True)
    service_type = Column(String(50), nullable=True)
    cost = Column(Numeric(10, 2), nullable=True)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default='1')

    max_user_slots = Column(Integer, nullable=False, default=1)
    current_users = Column(Integer, nullable=False, default=0)
    available_slots = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    sale_lines = relationship('SaleLine', back_populates='account', passive_deletes=True)

    def to_dict(self):
        return {
            'id': self.id,
            'productName': self.product_name,
            'label': self.label,
            'email': self.email,
            'serviceType': self.service_type,
            'cost': str(self.cost) if self.cost is not None else None,
            'description': self.description,
            'isActive': self.is_active,
            'maxUserSlots': self.max_user_slots,
            'currentUsers': self.current_users,
            'availableSlots': self.available_slots,
        }

    def __repr__(self):
        return (
            f"<Account(id={self.id}, email='{self.email}', "
            f"current_users={self.current_users}/{self.max_user_slots})>"
        )
