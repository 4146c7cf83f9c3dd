import logging
from typing import Any, Dict, Optional

from posthog import Posthog

from config import Settings

logger = logging.getLogger(__name__)


class NullEventSink:
    """Used when no analytics key is configured."""

    def capture(self, distinct_id: str, event: str, properties: Optional[Dict[str, Any]] = None):
        logger.debug(f"Analytics disabled, dropping event {event}")


class PostHogEventSink:
    """Fire-and-forget product analytics. Never raises."""

    def __init__(self, api_key: str, host: str):
        self.client = Posthog(api_key, host=host)

    def capture(self, distinct_id: str, event: str, properties: Optional[Dict[str, Any]] = None):
        try:
            self.client.capture(distinct_id=distinct_id, event=event, properties=properties or {})
        except Exception as e:
            logger.warning(f"Failed to capture analytics event {event}: {e}")


def build_event_sink(settings: Settings):
    if not settings.posthog_api_key:
        logger.info("POSTHOG_API_KEY not set, analytics disabled")
        return NullEventSink()
    return PostHogEventSink(settings.posthog_api_key, settings.posthog_host)
