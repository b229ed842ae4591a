from .tenancy import Store, Category, CommissionConfig
from .orders import Order, SubOrder, OrderItem, OrderStatusHistory
from .finance import EscrowTransaction, CommissionTransaction, RefundTransaction, RefundAllocation, Payout
from .documents import (
    Settlement, SettlementItem, SettlementAdjustment,
    CommissionInvoice, CommissionInvoiceItem, CommissionInvoiceConfig,
)

__all__ = [
    'Store', 'Category', 'CommissionConfig',
    'Order', 'SubOrder', 'OrderItem', 'OrderStatusHistory',
    'EscrowTransaction', 'CommissionTransaction', 'RefundTransaction', 'RefundAllocation', 'Payout',
    'Settlement', 'SettlementItem', 'SettlementAdjustment',
    'CommissionInvoice', 'CommissionInvoiceItem', 'CommissionInvoiceConfig',
]
