from .tenancy import Store
from .auth import User, UserStoreAccess
from .inventory import Product
from .recovery import RecoveryTicket, RecoveryHistoryEntry
from .communications import Notification

__all__ = [
    'Store',
    'User', 'UserStoreAccess',
    'Product',
    'RecoveryTicket', 'RecoveryHistoryEntry',
    'Notification',
]
