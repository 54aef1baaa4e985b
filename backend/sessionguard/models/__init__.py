from sessionguard.models.user import User
from sessionguard.models.session import UserSession

__all__ = [
    "User",
    "UserSession",
]
