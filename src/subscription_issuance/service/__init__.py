"""Subscription service interface and adapters."""
from subscription_issuance.service.base import SubscriptionService
from subscription_issuance.service.graphql import GraphQLSubscriptionService
from subscription_issuance.service.memory import InMemorySubscriptionService

__all__ = [
    "SubscriptionService",
    "GraphQLSubscriptionService",
    "InMemorySubscriptionService",
]
