# inventory_models.py
import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import text
from datetime import datetime
from decimal import Decimal
from typing import Optional

from models import Base, Product, PaymentStatus, Money, Quantity, UnitCost  # Shared Base and column types

# --- STOCK LEVELS ---

class InventoryItem(Base):
    """On-hand quantity of a leaf (raw material / consumable) product"""
    __tablename__ = 'inventory_items'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(sa.ForeignKey('products.id', ondelete="CASCADE"), unique=True, nullable=False)
    # Fractional, may go below zero when allowed by settings
    quantity: Mapped[Decimal] = mapped_column(Quantity, default=Decimal('0.000'))

    product: Mapped["Product"] = relationship("Product", lazy='selectin')

class InventoryMovement(Base):
    """Audit trail of every quantity change"""
    __tablename__ = 'inventory_movements'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(sa.ForeignKey('products.id', ondelete="CASCADE"), nullable=False, index=True)
    # Signed change applied to the quantity
    quantity: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Quantity, nullable=False)
    # sale, sale_reversal, purchase, purchase_return, waste, stocktaking, manual_in, manual_out
    reason: Mapped[str] = mapped_column(sa.String(30), nullable=False)
    # "order:12", "purchase_invoice:3", ...
    reference: Mapped[Optional[str]] = mapped_column(sa.String(50), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, default=datetime.now)

# --- SUPPLIERS ---

class Supplier(Base):
    __tablename__ = 'suppliers'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(sa.String(100))
    phone: Mapped[str] = mapped_column(sa.String(50), nullable=True)

# --- PURCHASE INVOICES ---

class PurchaseInvoice(Base):
    """Purchase from a supplier. Stock and costs change only when it is closed."""
    __tablename__ = 'purchase_invoices'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    supplier_id: Mapped[int] = mapped_column(sa.ForeignKey('suppliers.id'), nullable=False)
    user_name: Mapped[Optional[str]] = mapped_column(sa.String(100), nullable=True)
    total: Mapped[Decimal] = mapped_column(Money, default=Decimal('0.00'))
    paid: Mapped[Decimal] = mapped_column(Money, default=Decimal('0.00'))
    status: Mapped[PaymentStatus] = mapped_column(
        sa.Enum(PaymentStatus, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e]),
        default=PaymentStatus.PARTIAL_PAID
    )
    closed: Mapped[bool] = mapped_column(sa.Boolean, default=False, server_default=text("false"), index=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, default=datetime.now)

class PurchaseInvoiceItem(Base):
    __tablename__ = 'purchase_invoice_items'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    purchase_invoice_id: Mapped[int] = mapped_column(sa.ForeignKey('purchase_invoices.id', ondelete="CASCADE"), index=True)
    product_id: Mapped[int] = mapped_column(sa.ForeignKey('products.id'))
    quantity: Mapped[Decimal] = mapped_column(Quantity)
    cost: Mapped[Decimal] = mapped_column(UnitCost)  # Unit purchase cost
    total: Mapped[Decimal] = mapped_column(Money)

# --- RETURNS TO SUPPLIER ---

class ReturnPurchaseInvoice(Base):
    __tablename__ = 'return_purchase_invoices'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    supplier_id: Mapped[int] = mapped_column(sa.ForeignKey('suppliers.id'), nullable=False)
    user_name: Mapped[Optional[str]] = mapped_column(sa.String(100), nullable=True)
    total: Mapped[Decimal] = mapped_column(Money, default=Decimal('0.00'))
    closed: Mapped[bool] = mapped_column(sa.Boolean, default=False, server_default=text("false"), index=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, default=datetime.now)

class ReturnPurchaseInvoiceItem(Base):
    __tablename__ = 'return_purchase_invoice_items'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    return_purchase_invoice_id: Mapped[int] = mapped_column(sa.ForeignKey('return_purchase_invoices.id', ondelete="CASCADE"), index=True)
    product_id: Mapped[int] = mapped_column(sa.ForeignKey('products.id'))
    quantity: Mapped[Decimal] = mapped_column(Quantity)
    price: Mapped[Decimal] = mapped_column(UnitCost)  # Refund per unit
    total: Mapped[Decimal] = mapped_column(Money)

# --- STOCKTAKING ---

class Stocktaking(Base):
    """Physical count. Closing it sets every counted product to the counted quantity."""
    __tablename__ = 'stocktakings'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_name: Mapped[Optional[str]] = mapped_column(sa.String(100), nullable=True)
    # Sum of item totals: negative = shrinkage, positive = found stock
    total: Mapped[Decimal] = mapped_column(Money, default=Decimal('0.00'))
    closed: Mapped[bool] = mapped_column(sa.Boolean, default=False, server_default=text("false"), index=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, default=datetime.now)

class StocktakingItem(Base):
    __tablename__ = 'stocktaking_items'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    stocktaking_id: Mapped[int] = mapped_column(sa.ForeignKey('stocktakings.id', ondelete="CASCADE"), index=True)
    product_id: Mapped[int] = mapped_column(sa.ForeignKey('products.id'))
    counted_quantity: Mapped[Decimal] = mapped_column(Quantity)
    # counted - system quantity, refreshed at close
    quantity: Mapped[Decimal] = mapped_column(Quantity)
    cost: Mapped[Decimal] = mapped_column(UnitCost)
    total: Mapped[Decimal] = mapped_column(Money)

# --- WASTE ---

class Waste(Base):
    __tablename__ = 'wastes'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_name: Mapped[Optional[str]] = mapped_column(sa.String(100), nullable=True)
    total: Mapped[Decimal] = mapped_column(Money, default=Decimal('0.00'))
    closed: Mapped[bool] = mapped_column(sa.Boolean, default=False, server_default=text("false"), index=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, default=datetime.now)

class WastedItem(Base):
    __tablename__ = 'wasted_items'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    waste_id: Mapped[int] = mapped_column(sa.ForeignKey('wastes.id', ondelete="CASCADE"), index=True)
    product_id: Mapped[int] = mapped_column(sa.ForeignKey('products.id'))
    quantity: Mapped[Decimal] = mapped_column(Quantity)
    cost: Mapped[Decimal] = mapped_column(UnitCost)
    total: Mapped[Decimal] = mapped_column(Money)
