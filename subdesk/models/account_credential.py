"""Account Credential model."""
from sqlalchemy import Column, BigInteger, String, Text, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from subdesk.database import Base, BigIntPK


class AccountCredential(Base):
    """Login details handed to the customer of a sale."""

    __tablename__ = 'account_credential'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    sale_id = Column(BigInteger, ForeignKey('sale.id', ondelete='CASCADE'), nullable=False, index=True)
    username = Column(String(255), nullable=True)
    password = Column(String(255), nullable=True)
    login_url = Column(String(500), nullable=True)
    additional_info = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default='1')
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    sale = relationship('Sale', back_populates='credentials')

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'password': self.password,
            'loginUrl': self.login_url,
            'additionalInfo': self.additional_info,
            'isActive': self.is_active,
        }

    def __repr__(self):
        return f"<AccountCredential(id={self.id}, sale_id={self.sale_id})>"
