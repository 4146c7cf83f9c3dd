import azure.functions as func
import json
import logging
from services.container import get_reconciler
from services.exceptions import AuthenticationError, ValidationError
from services.reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)
bp = func.Blueprint()

SIGNATURE_HEADER = "stripe-signature"


def _reply(body: dict, status: int) -> func.HttpResponse:
    return func.HttpResponse(json.dumps(body), status_code=status, mimetype="application/json")


@bp.function_name(name="BillingWebhook")
@bp.route(route="webhooks/billing", methods=["POST"],
          auth_level=func.AuthLevel.ANONYMOUS)
def billing_webhook(req: func.HttpRequest) -> func.HttpResponse:
    return handle_billing_webhook(req, get_reconciler())


def handle_billing_webhook(req: func.HttpRequest, reconciler: SubscriptionReconciler) -> func.HttpResponse:
    """
    Handle signed billing provider webhooks.

    Any non-2xx answer makes the provider redeliver, so only a processing
    failure returns 500; bad signatures and malformed bodies are terminal.

    Raises:
        400: Malformed event body
        401: Missing or invalid signature
        500: Processing error
    """
    payload = req.get_body()
    signature = req.headers.get(SIGNATURE_HEADER)

    try:
        event = reconciler.handle_webhook(payload, signature)
    except AuthenticationError as e:
        logger.error(f"Webhook signature verification failed: {e.details}")
        return _reply({"error": e.message}, 401)
    except ValidationError as e:
        logger.error(f"Rejected malformed webhook: {e.details}")
        return _reply({"error": e.message, "details": e.details}, 400)
    except Exception as e:
        logger.exception(f"Error processing webhook: {e}")
        return _reply({"error": "Webhook processing failed"}, 500)

    return _reply({"received": True, "type": event.type}, 200)
