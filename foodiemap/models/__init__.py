from .user import AccountStatus, User
from .admin import Admin
from .verification_code import CodePurpose, VerificationCode
from .review import Review
from .favorite import Favorite

__all__ = [
    "AccountStatus",
    "User",
    "Admin",
    "CodePurpose",
    "VerificationCode",
    "Review",
    "Favorite",
]
