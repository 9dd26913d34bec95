"""SQLAlchemy ORM models for the account trust subsystem.

All models are exported from this module for convenient imports:
    from account_trust.models import User, SingleUseToken, ...

- user.py: User
- single_use_token.py: SingleUseToken (unique per identifier + kind)
- recovery_code.py: RecoveryCode
- user_session.py: UserSession, RevokedSession
"""

from account_trust.models.base import Base, TimestampMixin
from account_trust.models.recovery_code import RecoveryCode
from account_trust.models.single_use_token import TOKEN_KINDS, SingleUseToken
from account_trust.models.user import User
from account_trust.models.user_session import RevokedSession, UserSession

__all__ = [
    "Base",
    "TimestampMixin",
    "TOKEN_KINDS",
    "User",
    "SingleUseToken",
    "RecoveryCode",
    "UserSession",
    "RevokedSession",
]
