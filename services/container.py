"""Process-wide wiring. Clients are built once, on first use, and injected."""
import logging
from functools import lru_cache

from config import Settings, load_settings
from db import create_session_factory
from services.analytics import build_event_sink
from services.plans import PlanCatalog
from services.reconciler import SubscriptionReconciler
from services.stripe_service import StripeService

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def build_reconciler(settings: Settings) -> SubscriptionReconciler:
    return SubscriptionReconciler(
        session_factory=create_session_factory(settings),
        billing=StripeService(settings),
        events=build_event_sink(settings),
        plans=PlanCatalog.from_settings(settings),
        app_url=settings.app_url,
    )


@lru_cache(maxsize=1)
def get_reconciler() -> SubscriptionReconciler:
    logger.info("Building subscription reconciler")
    return build_reconciler(get_settings())
