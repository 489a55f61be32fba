from app.models.user import User, UserRole
from app.models.course import Course
from app.models.plan import SubscriptionPlan
from app.models.subscription import Subscription, SubscriptionStatus, PaymentProvider, CURRENT_STATUSES
from app.models.enrollment import Enrollment, AccessType
from app.models.purchase import Purchase, PurchaseStatus
from app.models.subscription_history import SubscriptionHistory

__all__ = [
    "User", "UserRole", "Course", "SubscriptionPlan", "Subscription", "SubscriptionStatus",
    "PaymentProvider", "CURRENT_STATUSES", "Enrollment", "AccessType", "Purchase",
    "PurchaseStatus", "SubscriptionHistory",
]
