"""Models package."""

from .user import User
from .credit_ledger import CreditLedger
from .engagement_session import EngagementSession
from .provider_usage import ProviderUsage
