"""Sale Line model."""
from sqlalchemy import Column, BigInteger, Integer, String, Numeric, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from subdesk.database import Base, BigIntPK


class SaleLine(Base):
    """Sale Line (slots bought on one account)."""

    __tablename__ = 'sale_line'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_sale_line_quantity_positive'),
        CheckConstraint('unit_price >= 0', name='ck_sale_line_unit_price_non_negative'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    sale_id = Column(BigInteger, ForeignKey('sale.id', ondelete='CASCADE'), nullable=False, index=True)
    # Submission order of the item within the sale
    position = Column(Integer, nullable=False, default=0)
    account_id = Column(BigInteger, ForeignKey('account.id', ondelete='SET NULL'), nullable=True, index=True)
    # Denormalized copy for display; never used to find the account
    account_email = Column(String(255), nullable=True)
    product_name = Column(String(100), nullable=True)
    unit_price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    line_total = Column(Numeric(10, 2), nullable=False)

    # Relationships
    sale = relationship('Sale', back_populates='lines')
    account = relationship('Account', back_populates='sale_lines')

    def to_dict(self):
        return {
            'accountId': self.account_id,
            'accountEmail': self.account_email,
            'productName': self.product_name,
            'unitPrice': str(self.unit_price),
            'quantity': self.quantity,
            'lineTotal': str(self.line_total),
        }

    def __repr__(self):
        return f"<SaleLine(id={self.id}, account_id={self.account_id}, quantity={self.quantity})>"
