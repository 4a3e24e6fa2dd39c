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

"""Payment gateway adapter.

The order pipeline only needs a handful of provider calls. `PaymentGateway`
describes them and `StripeGateway` implements them on top of the Stripe SDK,
translating SDK errors into the server's exception hierarchy.
"""

import abc
import logging
from typing import Any, List, Optional

from exceptions import PaymentGatewayError
from exceptions import PaymentGatewayTimeoutError
from pydantic import BaseModel
from pydantic import Field
import stripe

logger = logging.getLogger(__name__)


class SubscriptionItem(BaseModel):
  price: str
  quantity: int


class PaymentSettings(BaseModel):
  save_default_payment_method: str = "on_subscription"


class SubscriptionRequest(BaseModel):
  """Parameters of a provider subscription creation call."""

  customer: str
  default_payment_method: Optional[str] = None
  items: List[SubscriptionItem]
  add_invoice_items: List[SubscriptionItem] = Field(default_factory=list)
  payment_settings: PaymentSettings = Field(default_factory=PaymentSettings)
  expand: List[str] = Field(
      default_factory=lambda: ["latest_invoice.payment_intent"]
  )
  promotion_code: Optional[str] = None
  coupon: Optional[str] = None
  cancel_at: Optional[int] = None

  def to_params(self) -> dict[str, Any]:
    params = self.model_dump(exclude_none=True)
    if not params["add_invoice_items"]:
      del params["add_invoice_items"]
    return params


class PaymentGateway(abc.ABC):
  """Provider calls used while completing an order."""

  @abc.abstractmethod
  async def retrieve_payment_intent(self, intent_id: str) -> Any:
    """Returns the payment intent with the given ID."""

  @abc.abstractmethod
  async def retrieve_setup_intent(self, intent_id: str) -> Any:
    """Returns the setup intent with the given ID."""

  @abc.abstractmethod
  async def create_subscription(
      self, request: SubscriptionRequest, idempotency_key: Optional[str] = None
  ) -> Any:
    """Creates a subscription and returns it.

    Repeating a call with the same `idempotency_key` returns the subscription
    created by the first call instead of creating another one.
    """

  @abc.abstractmethod
  async def find_active_promotion_code(self, code: str) -> Optional[Any]:
    """Returns the active promotion code matching `code`, if any."""

  @abc.abstractmethod
  async def retrieve_coupon(self, coupon_id: str) -> Optional[Any]:
    """Returns the coupon with the given ID, or None if it does not exist."""


class StripeGateway(PaymentGateway):
  """PaymentGateway backed by the Stripe API.

  The SDK sends every request through `stripe.default_http_client`, so the
  server builds a single gateway through `manager` and closes it on shutdown.
  """

  def __init__(self, api_key: str, http_client: stripe.HTTPXClient):
    self._api_key = api_key
    self.http_client = http_client

  async def close(self) -> None:
    await self.http_client.close_async()

  async def _call(self, description: str, fn, *args, **kwargs) -> Any:
    try:
      return await fn(*args, api_key=self._api_key, **kwargs)
    except stripe.APIConnectionError as e:
      logger.warning("Stripe %s timed out: %s", description, e)
      raise PaymentGatewayTimeoutError(
          f"Payment provider did not respond to {description}"
      ) from e
    except stripe.StripeError as e:
      logger.error("Stripe %s failed: %s", description, e)
      raise PaymentGatewayError(
          getattr(e, "user_message", None) or str(e), provider_code=e.code
      ) from e

  async def retrieve_payment_intent(self, intent_id: str) -> Any:
    return await self._call(
        "payment intent retrieval",
        stripe.PaymentIntent.retrieve_async,
        intent_id,
    )

  async def retrieve_setup_intent(self, intent_id: str) -> Any:
    return await self._call(
        "setup intent retrieval", stripe.SetupIntent.retrieve_async, intent_id
    )

  async def create_subscription(
      self, request: SubscriptionRequest, idempotency_key: Optional[str] = None
  ) -> Any:
    params = request.to_params()
    if idempotency_key:
      params["idempotency_key"] = idempotency_key
    return await self._call(
        "subscription creation", stripe.Subscription.create_async, **params
    )

  async def find_active_promotion_code(self, code: str) -> Optional[Any]:
    codes = await self._call(
        "promotion code lookup",
        stripe.PromotionCode.list_async,
        code=code,
        active=True,
        limit=1,
    )
    return codes.data[0] if codes.data else None

  async def retrieve_coupon(self, coupon_id: str) -> Optional[Any]:
    try:
      return await self._call(
          "coupon retrieval", stripe.Coupon.retrieve_async, coupon_id
      )
    except PaymentGatewayError as e:
      if e.provider_code == "resource_missing":
        return None
      raise


class GatewayManager:
  """Owns the process-wide Stripe gateway and its HTTP client."""

  def __init__(self):
    self.gateway: Optional[StripeGateway] = None

  def get_gateway(self, api_key: str, timeout: float) -> StripeGateway:
    """Returns the shared gateway, building it on first use."""
    if self.gateway is None:
      http_client = stripe.HTTPXClient(timeout=timeout)
      stripe.default_http_client = http_client
      self.gateway = StripeGateway(api_key, http_client)
      logger.info("Stripe gateway ready (timeout %ss)", timeout)
    return self.gateway

  async def close(self) -> None:
    if self.gateway is not None:
      await self.gateway.close()
      self.gateway = None


manager = GatewayManager()
