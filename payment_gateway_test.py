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

"""Tests for the Stripe payment gateway adapter."""

import asyncio
import types
from unittest import mock

from absl.testing import absltest
from exceptions import PaymentGatewayError
from exceptions import PaymentGatewayTimeoutError
from services.payment_gateway import GatewayManager
from services.payment_gateway import StripeGateway
from services.payment_gateway import SubscriptionItem
from services.payment_gateway import SubscriptionRequest
import stripe


class StripeGatewayTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.gateway = StripeGateway("sk_test_123", mock.MagicMock())

  def test_create_subscription_sends_idempotency_key(self):
    request = SubscriptionRequest(
        customer="cus_123",
        items=[SubscriptionItem(price="price_monthly", quantity=1)],
    )
    create = mock.AsyncMock(return_value=types.SimpleNamespace(id="sub_1"))

    with mock.patch.object(stripe.Subscription, "create_async", create):
      subscription = asyncio.run(
          self.gateway.create_subscription(
              request, idempotency_key="order-o1-subscription"
          )
      )

    self.assertEqual(subscription.id, "sub_1")
    kwargs = create.await_args.kwargs
    self.assertEqual(kwargs["idempotency_key"], "order-o1-subscription")
    self.assertEqual(kwargs["api_key"], "sk_test_123")
    self.assertEqual(kwargs["customer"], "cus_123")
    self.assertEqual(
        kwargs["items"], [{"price": "price_monthly", "quantity": 1}]
    )
    self.assertNotIn("add_invoice_items", kwargs)

  def test_connection_error_is_a_timeout(self):
    retrieve = mock.AsyncMock(
        side_effect=stripe.APIConnectionError("connection reset")
    )

    with mock.patch.object(stripe.PaymentIntent, "retrieve_async", retrieve):
      with self.assertRaises(PaymentGatewayTimeoutError):
        asyncio.run(self.gateway.retrieve_payment_intent("pi_1"))

  def test_provider_error_keeps_its_code(self):
    retrieve = mock.AsyncMock(
        side_effect=stripe.InvalidRequestError(
            "No such setup intent", "intent", code="resource_missing"
        )
    )

    with mock.patch.object(stripe.SetupIntent, "retrieve_async", retrieve):
      with self.assertRaises(PaymentGatewayError) as ctx:
        asyncio.run(self.gateway.retrieve_setup_intent("seti_1"))

    self.assertEqual(ctx.exception.provider_code, "resource_missing")

  def test_missing_coupon_is_none(self):
    retrieve = mock.AsyncMock(
        side_effect=stripe.InvalidRequestError(
            "No such coupon", "id", code="resource_missing"
        )
    )

    with mock.patch.object(stripe.Coupon, "retrieve_async", retrieve):
      self.assertIsNone(asyncio.run(self.gateway.retrieve_coupon("VIP")))


class GatewayManagerTest(absltest.TestCase):

  def test_gateway_is_built_once_and_closed(self):
    with mock.patch.object(
        stripe, "HTTPXClient"
    ) as http_client_cls, mock.patch.object(
        stripe, "default_http_client", None
    ):
      http_client = http_client_cls.return_value
      http_client.close_async = mock.AsyncMock()
      manager = GatewayManager()

      first = manager.get_gateway("sk_test_123", timeout=3.0)
      second = manager.get_gateway("sk_test_123", timeout=3.0)

      self.assertIs(first, second)
      http_client_cls.assert_called_once_with(timeout=3.0)
      self.assertIs(stripe.default_http_client, http_client)

      asyncio.run(manager.close())

    http_client.close_async.assert_awaited_once()
    self.assertIsNone(manager.gateway)

  def test_close_without_gateway_is_a_no_op(self):
    asyncio.run(GatewayManager().close())


if __name__ == "__main__":
  absltest.main()
