"""
Domain constants used across services/routers.
"""
from decimal import Decimal

# Currency amounts are kept to two decimal places
MONEY_QUANTUM = Decimal("0.01")

# Largest amount a Numeric(12, 2) column holds
MAX_MONEY = Decimal("9999999999.99")

# Causes whose positive surplus is credited to the customer wallet
WALLET_CREDIT_CAUSES = frozenset({"wallet", "no_change"})

# Causes a caller may pick when the received amount differs from the invoice
DIFFERENCE_CAUSES = frozenset({"tip", "wallet", "no_change", "other"})

# Ledger entry type for wallet credits
WALLET_TX_CREDIT = "credit"

# Order references in customer-facing messages use the id tail
ORDER_REF_LENGTH = 6

# Change feed table names
TABLE_ORDERS = "orders"
TABLE_ORDER_SPECIALISTS = "order_specialists"
TABLE_PAYMENT_CONFIRMATIONS = "payment_confirmations"
TABLE_CUSTOMER_WALLETS = "customer_wallets"
