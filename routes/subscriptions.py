import azure.functions as func
import logging
from utils.cors import cors_response, json_response, error_response
from auth.deps import require_user
from config import Settings
from services.container import get_reconciler, get_settings
from services.exceptions import BillingError, InternalError, ValidationError
from services.plans import FEATURES
from services.reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)
bp = func.Blueprint()


@bp.function_name(name="SubscriptionLimits")
@bp.route(route="subscriptions/limits", methods=["GET", "OPTIONS"],
          auth_level=func.AuthLevel.ANONYMOUS)
def subscription_limits(req: func.HttpRequest) -> func.HttpResponse:
    return handle_subscription_limits(req, get_reconciler(), get_settings())


def handle_subscription_limits(req: func.HttpRequest, reconciler: SubscriptionReconciler,
                               settings: Settings) -> func.HttpResponse:
    """
    Get the user's tier limits, optionally checking access to one feature.

    Args:
        req: HTTP request with ``userId`` and optional ``feature`` query params

    Raises:
        400: Missing userId or unknown feature
        401: Unauthorized
        404: User not found
    """
    if req.method == "OPTIONS":
        return cors_response(status=204)

    try:
        user_id = req.params.get("userId")
        require_user(req, settings, user_id)
        if not user_id:
            raise ValidationError("Missing userId parameter")

        feature = req.params.get("feature")
        if feature and feature not in FEATURES:
            raise ValidationError("Invalid feature parameter", details=f"feature must be one of {', '.join(FEATURES)}")

        result = reconciler.get_limits(user_id, feature)
        return json_response({"success": True, **result})
    except BillingError as e:
        logger.warning(f"Limits request rejected: {e.message}")
        return error_response(e)
    except Exception as e:
        logger.exception("Failed to get subscription limits")
        return error_response(InternalError("Internal server error", details=str(e)))
