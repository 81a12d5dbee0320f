"""User accounts, subscription plans and operator tooling."""

from content_factory.accounts.admin import AdminService
from content_factory.accounts.subscriptions import SubscriptionService
from content_factory.accounts.users import UserDirectory

__all__ = ["AdminService", "SubscriptionService", "UserDirectory"]
