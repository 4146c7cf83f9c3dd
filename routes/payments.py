import azure.functions as func
import logging
from utils.cors import cors_response, json_response, error_response
from auth.deps import require_user
from config import Settings
from services.container import get_reconciler, get_settings
from services.exceptions import BillingError, InternalError, ValidationError
from services.reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)
bp = func.Blueprint()

MANAGE_ACTIONS = ("cancel", "change_plan", "reactivate")


def _json_body(req: func.HttpRequest) -> dict:
    try:
        data = req.get_json()
    except ValueError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON body")
    return data


def _as_bool(value, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes")


def _internal_error(description: str, e: Exception) -> func.HttpResponse:
    logger.exception(f"Failed to {description}")
    return error_response(InternalError("Internal server error", details=str(e)))


@bp.function_name(name="CreatePaymentLink")
@bp.route(route="payments/create", methods=["POST", "OPTIONS"],
          auth_level=func.AuthLevel.ANONYMOUS)
def create_payment_link(req: func.HttpRequest) -> func.HttpResponse:
    return handle_create_payment_link(req, get_reconciler(), get_settings())


def handle_create_payment_link(req: func.HttpRequest, reconciler: SubscriptionReconciler,
                               settings: Settings) -> func.HttpResponse:
    """
    Create a subscription payment link for a plan.

    The user is not marked as paid here; that only happens once the
    provider confirms the subscription through the webhook.

    Args:
        req: HTTP request containing JSON with plan, userId and userEmail

    Returns:
        HTTP response with payment_link, subscription_id, plan and amount

    Raises:
        400: Missing fields or invalid plan
        401: Unauthorized
        404: User not found
        409: User already has an active subscription
        502: Payment provider error
        500: Server error
    """
    if req.method == "OPTIONS":
        return cors_response(status=204)

    try:
        data = _json_body(req)
        user_id = data.get("userId")
        require_user(req, settings, user_id)

        plan = data.get("plan")
        user_email = (data.get("userEmail") or "").strip().lower()
        if not plan or not user_id or not user_email:
            raise ValidationError("Missing required fields: plan, userId, userEmail")

        link = reconciler.request_payment_link(plan, user_id, user_email)
        return json_response({
            "success": True,
            "payment_link": link["payment_link"],
            "subscription_id": link["subscription_id"],
            "plan": link["plan"],
            "amount": link["amount"],
            "message": f"Creating payment link for {plan} subscription",
        })
    except BillingError as e:
        logger.warning(f"Payment link request rejected: {e.message}")
        return error_response(e)
    except Exception as e:
        return _internal_error("create payment link", e)


@bp.function_name(name="CreateBillingPortal")
@bp.route(route="payments/portal", methods=["POST", "OPTIONS"],
          auth_level=func.AuthLevel.ANONYMOUS)
def create_billing_portal(req: func.HttpRequest) -> func.HttpResponse:
    return handle_create_billing_portal(req, get_reconciler(), get_settings())


def handle_create_billing_portal(req: func.HttpRequest, reconciler: SubscriptionReconciler,
                                 settings: Settings) -> func.HttpResponse:
    """
    Create a billing portal session for the user's billing account.

    Raises:
        400: Missing userId
        401: Unauthorized
        404: User or billing account not found
        502: Payment provider error
    """
    if req.method == "OPTIONS":
        return cors_response(status=204)

    try:
        data = _json_body(req)
        user_id = data.get("userId")
        require_user(req, settings, user_id)
        if not user_id:
            raise ValidationError("Missing userId")

        portal_url = reconciler.request_billing_portal(user_id, data.get("returnUrl"))
        return json_response({"portal_url": portal_url})
    except BillingError as e:
        logger.warning(f"Billing portal request rejected: {e.message}")
        return error_response(e)
    except Exception as e:
        return _internal_error("create billing portal session", e)


@bp.function_name(name="ManageSubscription")
@bp.route(route="payments/manage", methods=["GET", "POST", "OPTIONS"],
          auth_level=func.AuthLevel.ANONYMOUS)
def manage_subscription(req: func.HttpRequest) -> func.HttpResponse:
    return handle_manage_subscription(req, get_reconciler(), get_settings())


def handle_manage_subscription(req: func.HttpRequest, reconciler: SubscriptionReconciler,
                               settings: Settings) -> func.HttpResponse:
    """
    Read or change the user's subscription.

    GET returns the current subscription for ``?userId=``. POST takes
    ``{action, userId, newPlan?, cancelAtPeriodEnd?}`` where action is one of
    cancel, change_plan or reactivate.

    Raises:
        400: Missing fields, invalid action or plan
        401: Unauthorized
        404: User or active subscription not found
        409: Plan unchanged or subscription not scheduled to cancel
        502: Payment provider error
    """
    if req.method == "OPTIONS":
        return cors_response(status=204)

    try:
        if req.method == "GET":
            user_id = req.params.get("userId")
            require_user(req, settings, user_id)
            if not user_id:
                raise ValidationError("Missing userId parameter")
            return json_response(reconciler.get_subscription(user_id))

        data = _json_body(req)
        user_id = data.get("userId")
        require_user(req, settings, user_id)

        action = data.get("action")
        if not action or not user_id:
            raise ValidationError("Missing required fields: action, userId")
        if action not in MANAGE_ACTIONS:
            raise ValidationError("Invalid action", details=f"action must be one of {', '.join(MANAGE_ACTIONS)}")

        if action == "cancel":
            result = reconciler.cancel_subscription(user_id, _as_bool(data.get("cancelAtPeriodEnd"), True))
        elif action == "change_plan":
            new_plan = data.get("newPlan")
            if not new_plan:
                raise ValidationError("Missing newPlan")
            result = reconciler.change_plan(user_id, new_plan)
        else:
            result = reconciler.reactivate_subscription(user_id)

        return json_response({"success": True, "action": action, **result})
    except BillingError as e:
        logger.warning(f"Subscription management request rejected: {e.message}")
        return error_response(e)
    except Exception as e:
        return _internal_error("manage subscription", e)
