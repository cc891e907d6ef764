import os

# Trade limits
TRADE_MAX_ITEMS_PER_SIDE = int(os.getenv("TRADE_MAX_ITEMS_PER_SIDE", "10"))

# Storage / request boundary (seconds)
TRADE_DB_BUSY_TIMEOUT = float(os.getenv("TRADE_DB_BUSY_TIMEOUT", "30"))
TRADE_REQUEST_TIMEOUT = float(os.getenv("TRADE_REQUEST_TIMEOUT", "15"))
TRADE_VIEW_TIMEOUT = float(os.getenv("TRADE_VIEW_TIMEOUT", "600"))

# Notifications
TRADE_NOTIFY_DM = os.getenv("TRADE_NOTIFY_DM", "1") == "1"

# Trade status values (as stored)
STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"
STATUS_CANCELED = "canceled"
TERMINAL_STATUSES = (STATUS_ACCEPTED, STATUS_REJECTED, STATUS_CANCELED)

# Notification kinds
TRADE_OFFER = "TRADE_OFFER"
TRADE_ACCEPTED = "TRADE_ACCEPTED"
TRADE_REJECTED = "TRADE_REJECTED"
TRADE_CANCELLED = "TRADE_CANCELLED"
NOTIFY_SYSTEM = "SYSTEM"
NOTIFICATION_KINDS = {TRADE_OFFER, TRADE_ACCEPTED, TRADE_REJECTED, TRADE_CANCELLED, NOTIFY_SYSTEM}
