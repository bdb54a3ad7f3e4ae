from .user import User  # noqa: F401
from .group import Group, GroupMember  # noqa: F401
from .payout import Payout, PayoutScheduleEntry  # noqa: F401
from .contribution import Contribution  # noqa: F401
from .transaction import Transaction, RevenueTransaction  # noqa: F401
from .reserve import ReserveWallet, ReserveWalletEntry  # noqa: F401
from .payment_account import MobileMoneyAccount, BankAccount  # noqa: F401
from .notification import Notification  # noqa: F401
from .trust import TrustScoreEvent  # noqa: F401
from .settlement import SettlementIntent, ManualIntervention  # noqa: F401
from .audit import AuditLog, WebhookEvent  # noqa: F401
