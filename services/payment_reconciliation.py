#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Settles orders against the payment provider.

Completing an order verifies the checkout's payment intent, or, for carts with
subscription items, turns the confirmed setup intent into a provider
subscription. Settlement happens at most once per order: a completion attempt
first claims the pending order with a conditional update and only the
claimant talks to the provider. A failure before the provider could have
charged the payer releases the claim; a failure after a subscription may have
been created puts the order on hold instead. Once the order is completed,
fulfillment and staff notification each run behind their own best-effort
boundary so that their failures never undo a settled payment.
"""

import datetime
import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import db
from enums import CheckoutStatus
from enums import IntentType
from enums import OrderStatus
from enums import PaymentErrorType
from exceptions import CustomerRequiredError
from exceptions import EmptyOrderError
from exceptions import InvalidRequestError
from exceptions import PaymentFailedError
from exceptions import PaymentGatewayError
from exceptions import PaymentGatewayTimeoutError
from services import charges
from services import payment_validation
from services.fulfillment_service import FulfillmentService
from services.notification_service import NotificationService
from services.payment_gateway import PaymentGateway
from services.payment_gateway import SubscriptionItem
from services.payment_gateway import SubscriptionRequest
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_TTL = datetime.timedelta(minutes=15)


async def run_best_effort(
    name: str, order_id: str, fn: Callable[[], Awaitable[Any]]
) -> bool:
  """Runs post-settlement work, logging and swallowing any failure.

  Returns:
    Whether `fn` completed without raising.
  """
  try:
    await fn()
  except Exception:  # pylint: disable=broad-exception-caught
    logger.exception("%s failed for completed order %s", name, order_id)
    return False
  return True


def subscription_idempotency_key(order_id: str) -> str:
  return f"order-{order_id}-subscription"


class SettlementOnHoldError(Exception):
  """A settlement failed after the provider may have charged the payer.

  Attributes:
    failure: The payer-facing failure.
    subscription_id: The provider subscription, when one is known to exist.
  """

  def __init__(
      self, failure: PaymentFailedError, subscription_id: Optional[str] = None
  ):
    super().__init__(failure.message)
    self.failure = failure
    self.subscription_id = subscription_id


class PaymentReconciliationService:
  """Completes orders once their payment is confirmed by the provider."""

  def __init__(
      self,
      catalog_session: AsyncSession,
      transactions_session: AsyncSession,
      gateway: PaymentGateway,
      fulfillment_service: FulfillmentService,
      notification_service: NotificationService,
      clock: Callable[[], datetime.datetime] = db.utcnow,
      claim_ttl: datetime.timedelta = DEFAULT_CLAIM_TTL,
  ):
    self.catalog_session = catalog_session
    self.transactions_session = transactions_session
    self.gateway = gateway
    self.fulfillment_service = fulfillment_service
    self.notification_service = notification_service
    self.clock = clock
    self.claim_ttl = claim_ttl

  async def complete_order(
      self,
      order: db.Order,
      checkout_session: db.CheckoutSession,
      confirmation_token: Optional[str] = None,
      actor_id: Optional[str] = None,
  ) -> db.Order:
    """Settles an order and marks it completed.

    Args:
      order: The pending order to settle.
      checkout_session: The checkout session the order was created from.
      confirmation_token: Optional payment confirmation token from the payer.
      actor_id: The actor recorded on automatically provisioned items.

    Returns:
      The order. Orders that are no longer pending, or that another attempt
      is settling, are returned unchanged without contacting the provider.

    Raises:
      CustomerRequiredError: If no customer is attached to the order or its
        checkout session.
      EmptyOrderError: If a subscription is requested for an order without
        items.
      PaymentFailedError: If the provider did not confirm the payment.
    """
    del confirmation_token  # Unused.
    if order.status != OrderStatus.PENDING.value:
      logger.warning(
          "Order %s is already %s (completed at %s); skipping settlement",
          order.id,
          order.status,
          order.completed_at,
      )
      return order

    customer = await self._resolve_customer(order, checkout_session)

    previous_claim = order.settlement_claimed_at
    now = self.clock()
    claimed = await db.claim_order_settlement(
        self.transactions_session,
        order.id,
        customer.id,
        now=now,
        stale_before=now - self.claim_ttl,
    )
    await self.transactions_session.commit()
    await self.transactions_session.refresh(order)
    if not claimed:
      logger.warning(
          "Order %s is %s with a settlement in progress; skipping",
          order.id,
          order.status,
      )
      return order
    if previous_claim is not None:
      logger.warning(
          "Taking over abandoned settlement of order %s claimed at %s",
          order.id,
          previous_claim,
      )

    order_id = order.id
    intent_type = checkout_session.intent_type
    try:
      subscription_id = await self._settle(order, checkout_session, customer)
    except SettlementOnHoldError as e:
      await self.transactions_session.rollback()
      await db.hold_order_settlement(
          self.transactions_session, order_id, e.subscription_id
      )
      checkout_session.status = CheckoutStatus.FAILED.value
      await self.transactions_session.commit()
      await self.transactions_session.refresh(order)
      logger.error(
          "Order %s put on hold after subscription creation failed: %s",
          order_id,
          e.failure.message,
      )
      raise e.failure from e
    except Exception as e:
      await self.transactions_session.rollback()
      await db.release_order_settlement(self.transactions_session, order_id)
      if (
          intent_type == IntentType.SETUP.value
          and isinstance(e, PaymentFailedError)
          and e.error_type != PaymentErrorType.GATEWAY_TIMEOUT.value
      ):
        checkout_session.status = CheckoutStatus.FAILED.value
      await self.transactions_session.commit()
      await self.transactions_session.refresh(order)
      raise e

    order.status = OrderStatus.COMPLETED.value
    order.completed_at = self.clock()
    order.gateway_subscription_id = subscription_id
    await self.transactions_session.commit()
    logger.info("Order %s completed", order.id)

    async def fulfill() -> None:
      await self.fulfillment_service.auto_fulfill_order(order, actor_id)

    async def notify() -> None:
      await self.notification_service.notify_order(order)

    # Fulfillment and notification fail independently of each other.
    for name, fn in (
        ("Order fulfillment", fulfill),
        ("Order notification", notify),
    ):
      if not await run_best_effort(name, order_id, fn):
        await self.transactions_session.rollback()
        await self.transactions_session.refresh(order)
    await self.transactions_session.refresh(order)
    return order

  async def _resolve_customer(
      self, order: db.Order, checkout_session: db.CheckoutSession
  ) -> db.Customer:
    customer_id = order.customer_id or checkout_session.customer_id
    customer = None
    if customer_id:
      customer = await db.get_customer(self.transactions_session, customer_id)
    if customer is None:
      raise CustomerRequiredError()
    return customer

  async def _settle(
      self,
      order: db.Order,
      checkout_session: db.CheckoutSession,
      customer: db.Customer,
  ) -> Optional[str]:
    """Settles the order and returns the subscription created, if any."""
    intent_type = checkout_session.intent_type
    if intent_type == IntentType.FREE.value:
      logger.info("Order %s requires no payment", order.id)
    elif intent_type == IntentType.PAYMENT.value:
      await self._verify_payment_intent(order, checkout_session)
    elif intent_type == IntentType.SETUP.value:
      return await self._create_subscription(
          order, checkout_session, customer
      )
    else:
      raise InvalidRequestError(f"Unsupported intent type: {intent_type}")
    return None

  async def _retrieve_intent(self, retrieve, intent_id: Optional[str]) -> Any:
    if not intent_id:
      raise InvalidRequestError("Checkout session has no payment intent")
    try:
      return await retrieve(intent_id)
    except PaymentGatewayTimeoutError as e:
      raise PaymentFailedError(
          payment_validation.user_message(PaymentErrorType.GATEWAY_TIMEOUT),
          error_type=PaymentErrorType.GATEWAY_TIMEOUT.value,
          provider_error={"message": e.message},
          retryable=True,
      ) from e

  async def _verify_payment_intent(
      self, order: db.Order, checkout_session: db.CheckoutSession
  ) -> None:
    intent = await self._retrieve_intent(
        self.gateway.retrieve_payment_intent, checkout_session.intent_id
    )
    if intent.status != "succeeded":
      logger.error(
          "Payment intent %s for order %s has status %s",
          checkout_session.intent_id,
          order.id,
          intent.status,
      )
      raise payment_validation.payment_failure(
          getattr(intent, "last_payment_error", None),
          f"Payment intent status {intent.status}",
      )

  async def _create_subscription(
      self,
      order: db.Order,
      checkout_session: db.CheckoutSession,
      customer: db.Customer,
  ) -> str:
    setup_intent = await self._retrieve_intent(
        self.gateway.retrieve_setup_intent, checkout_session.intent_id
    )
    if setup_intent.status != "succeeded":
      logger.error(
          "Setup intent %s for order %s has status %s",
          checkout_session.intent_id,
          order.id,
          setup_intent.status,
      )
      raise payment_validation.payment_failure(
          getattr(setup_intent, "last_setup_error", None),
          f"Setup intent status {setup_intent.status}",
      )

    items = await db.get_order_items(self.transactions_session, order.id)
    if not items:
      raise EmptyOrderError()
    prices = await db.get_prices(
        self.catalog_session, [item.price_id for item in items]
    )
    buckets = charges.group_by_charge_family(items, prices)

    request = SubscriptionRequest(
        customer=customer.reference_id or customer.id,
        default_payment_method=_payment_method_id(setup_intent),
        items=[
            SubscriptionItem(
                price=_gateway_price_id(prices, item), quantity=item.quantity
            )
            for item in buckets.recurring
        ],
        add_invoice_items=[
            SubscriptionItem(
                price=prices[item.price_id].gateway_price_id,
                quantity=item.quantity,
            )
            for item in buckets.one_time
            if item.price_id in prices
            and prices[item.price_id].gateway_price_id
        ],
    )

    promotion_code, coupon = await self._resolve_discount(
        checkout_session.discounts or []
    )
    if coupon:
      request.coupon = coupon
    elif promotion_code:
      request.promotion_code = promotion_code

    if buckets.recurring:
      request.cancel_at = charges.cancellation_timestamp(
          prices[buckets.recurring[0].price_id], self.clock()
      )

    try:
      subscription = await self.gateway.create_subscription(
          request, idempotency_key=subscription_idempotency_key(order.id)
      )
    except PaymentGatewayTimeoutError as e:
      # The provider may have created the subscription before timing out.
      raise SettlementOnHoldError(
          PaymentFailedError(
              payment_validation.user_message(
                  PaymentErrorType.GATEWAY_TIMEOUT
              ),
              error_type=PaymentErrorType.GATEWAY_TIMEOUT.value,
              provider_error={"message": e.message},
              retryable=False,
          )
      ) from e
    except PaymentGatewayError as e:
      error_type = payment_validation.classify_error(
          e.message, e.provider_code
      )
      raise PaymentFailedError(
          payment_validation.user_message(error_type),
          error_type=error_type.value,
          provider_error={"message": e.message, "code": e.provider_code},
      ) from e

    logger.info(
        "Created subscription %s for order %s", subscription.id, order.id
    )
    try:
      payment_validation.validate_subscription(subscription)
    except PaymentFailedError as e:
      raise SettlementOnHoldError(
          PaymentFailedError(
              e.message,
              error_type=e.error_type,
              provider_error=e.provider_error,
              retryable=False,
          ),
          subscription_id=subscription.id,
      ) from e
    return subscription.id

  async def _resolve_discount(
      self, discounts: List[dict]
  ) -> Tuple[Optional[str], Optional[str]]:
    """Resolves checkout discounts into a promotion code or a coupon.

    Returns:
      The first active promotion code and the first direct coupon found; a
      direct coupon stops the search.
    """
    promotion_codes = []
    for discount in discounts:
      discount_id = discount.get("id")
      if not discount_id:
        continue
      try:
        promotion_code = await self.gateway.find_active_promotion_code(
            discount_id
        )
        if promotion_code is not None:
          promotion_codes.append(promotion_code.id)
          continue
        coupon = await self.gateway.retrieve_coupon(discount_id)
        if coupon is not None:
          return None, coupon.id
      except Exception as e:  # pylint: disable=broad-exception-caught
        logger.warning("Skipping discount %s: %s", discount_id, e)
    return (promotion_codes[0] if promotion_codes else None), None


def _payment_method_id(setup_intent: Any) -> Optional[str]:
  payment_method = getattr(setup_intent, "payment_method", None)
  if payment_method is None or isinstance(payment_method, str):
    return payment_method
  return payment_method.id


def _gateway_price_id(prices: dict, item: db.OrderItem) -> str:
  price = prices[item.price_id]
  if not price.gateway_price_id:
    raise InvalidRequestError(
        f"Price {price.id} is not available at the payment provider"
    )
  return price.gateway_price_id
