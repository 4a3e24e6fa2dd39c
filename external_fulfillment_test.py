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

"""Tests for external fulfillment webhook reconciliation."""

import datetime

from absl.testing import absltest
from absl.testing import parameterized
import db
from enums import ExternalPlatform
from enums import FulfillmentStatus
from exceptions import InvalidRequestError
from exceptions import ResourceNotFoundError
from services import external_fulfillment
from services.external_fulfillment import ExternalFulfillmentService
from sqlalchemy import func
from sqlalchemy import select
import testing_utils

UTC = datetime.timezone.utc


def _extract(platform, payload):
  return external_fulfillment.EXTRACTORS[platform].extract(payload)


class StatusAndTimestampTest(parameterized.TestCase):

  @parameterized.parameters(
      ("fulfilled", FulfillmentStatus.FULFILLED),
      ("Shipped", FulfillmentStatus.FULFILLED),
      ("DELIVERED", FulfillmentStatus.FULFILLED),
      ("completed", FulfillmentStatus.FULFILLED),
      ("in_transit", FulfillmentStatus.PROCESSING),
      ("pending_fulfillment", FulfillmentStatus.PROCESSING),
      ("partial", FulfillmentStatus.PARTIALLY_FULFILLED),
      ("canceled", FulfillmentStatus.CANCELLED),
      ("error", FulfillmentStatus.FAILED),
      ("hold", FulfillmentStatus.ON_HOLD),
      ("mystery", FulfillmentStatus.PENDING),
      (None, FulfillmentStatus.PENDING),
  )
  def test_map_status(self, raw, expected):
    self.assertEqual(external_fulfillment.map_status(raw), expected)

  def test_parse_timestamp(self):
    self.assertEqual(
        external_fulfillment.parse_timestamp("2026-03-01T12:00:00Z"),
        datetime.datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
    )
    self.assertEqual(
        external_fulfillment.parse_timestamp("2026-03-01T14:00:00+02:00"),
        datetime.datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
    )
    self.assertEqual(
        external_fulfillment.parse_timestamp("March 1, 2026 12:00"),
        datetime.datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
    )
    self.assertEqual(
        external_fulfillment.parse_timestamp(1772366400),
        datetime.datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
    )

  @parameterized.parameters(None, "", "not a date", True)
  def test_unparseable_timestamps_are_none(self, value):
    self.assertIsNone(external_fulfillment.parse_timestamp(value))


class ExtractorTest(absltest.TestCase):

  def test_every_platform_has_an_extractor(self):
    self.assertCountEqual(
        external_fulfillment.EXTRACTORS, list(ExternalPlatform)
    )

  def test_shopify(self):
    extracted = _extract(ExternalPlatform.SHOPIFY, {
        "id": 1001,
        "order_number": 1,
        "total_price": "19.99",
        "currency": "USD",
        "fulfillment_status": "fulfilled",
        "customer": {"email": "jane@example.test"},
        "line_items": [{"sku": "A"}],
        "fulfillment": {"id": 77, "tracking_number": "1Z"},
    })

    self.assertEqual(extracted.order_id, "1001")
    self.assertEqual(extracted.status, FulfillmentStatus.FULFILLED)
    self.assertEqual(extracted.order_data["total_price"], "19.99")
    self.assertEqual(extracted.customer_data, {"email": "jane@example.test"})
    self.assertEqual(extracted.items_data, [{"sku": "A"}])
    self.assertEqual(extracted.tracking_number, "1Z")

  def test_etsy(self):
    extracted = _extract(ExternalPlatform.ETSY, {
        "receipt_id": 555,
        "grandtotal": 12,
        "currency_code": "EUR",
        "buyer_user_id": 9,
        "buyer_email": "buyer@example.test",
        "transactions": [{"listing_id": 3}],
        "status": "shipped",
    })

    self.assertEqual(extracted.order_id, "555")
    self.assertEqual(extracted.order_data["currency_code"], "EUR")
    self.assertNotIn("currency", extracted.order_data)
    self.assertEqual(
        extracted.customer_data,
        {"buyer_user_id": 9, "buyer_email": "buyer@example.test"},
    )
    self.assertEqual(extracted.items_data, [{"listing_id": 3}])
    self.assertEqual(extracted.status, FulfillmentStatus.FULFILLED)

  def test_clickfunnels(self):
    extracted = _extract(ExternalPlatform.CLICKFUNNELS, {
        "order": {"id": "cf_1", "total_amount": 50, "order_items": [{}]},
        "contact": {"email": "c@example.test"},
        "status": "processing",
    })

    self.assertEqual(extracted.order_id, "cf_1")
    self.assertEqual(extracted.order_data["total_amount"], 50)
    self.assertEqual(extracted.customer_data, {"email": "c@example.test"})
    self.assertEqual(extracted.items_data, [{}])
    self.assertEqual(extracted.status, FulfillmentStatus.PROCESSING)

  def test_amazon_and_woocommerce_order_ids(self):
    amazon = external_fulfillment.EXTRACTORS[ExternalPlatform.AMAZON]
    woocommerce = external_fulfillment.EXTRACTORS[ExternalPlatform.WOOCOMMERCE]

    self.assertEqual(
        amazon.extract({"AmazonOrderId": "114-1"}).order_id, "114-1"
    )
    self.assertEqual(woocommerce.extract({"id": 42}).order_id, "42")
    self.assertEqual(amazon.extract({"id": "ignored"}).order_id, "")

  def test_custom_reads_nested_tracking(self):
    extracted = _extract(ExternalPlatform.CUSTOM, {
        "order_id": "c-1",
        "tracking_info": {
            "tracking_number": "TRK",
            "tracking_url": "https://t.test/TRK",
        },
        "shipped_at": "2026-02-02T08:00:00Z",
        "delivery_date": "2026-02-04",
    })

    self.assertEqual(extracted.order_id, "c-1")
    self.assertEqual(extracted.tracking_number, "TRK")
    self.assertEqual(extracted.tracking_url, "https://t.test/TRK")
    self.assertEqual(
        extracted.fulfilled_at, datetime.datetime(2026, 2, 2, 8, tzinfo=UTC)
    )
    self.assertEqual(
        extracted.delivered_at, datetime.datetime(2026, 2, 4, tzinfo=UTC)
    )


class ExternalFulfillmentServiceTest(testing_utils.DatabaseTestCase):

  def setUp(self) -> None:
    super().setUp()

    async def seed() -> str:
      async with self.catalog_session_factory() as catalog:
        org = await testing_utils.seed_organization(catalog)
        return org.id

    self.organization_id = self.run_async(seed())

  def _reconcile(self, platform, payload, organization_id=None, **kwargs):
    async def run():
      async with self.catalog_session_factory() as catalog:
        async with self.transactions_session_factory() as session:
          return await ExternalFulfillmentService(
              catalog, session
          ).reconcile_webhook(
              organization_id or self.organization_id,
              platform,
              payload,
              **kwargs,
          )

    return self.run_async(run())

  def _count(self) -> int:
    async def count():
      async with self.transactions_session_factory() as session:
        return await session.scalar(
            select(func.count()).select_from(db.ExternalFulfillment)
        )

    return self.run_async(count())

  def test_redelivered_webhook_updates_one_record(self):
    payload = {"id": 1001, "fulfillment_status": "fulfilled"}

    first = self._reconcile(
        ExternalPlatform.SHOPIFY,
        payload,
        signature="sig",
        headers={"x-shopify-hmac-sha256": "sig"},
    )
    second = self._reconcile(ExternalPlatform.SHOPIFY, payload)

    self.assertEqual(self._count(), 1)
    self.assertEqual(first.id, second.id)
    self.assertEqual(second.external_order_id, "1001")
    self.assertEqual(second.platform, "shopify")
    self.assertEqual(second.status, "fulfilled")
    self.assertEqual(first.webhook_signature, "sig")

  def test_replay_keeps_values_it_does_not_carry(self):
    self._reconcile(
        ExternalPlatform.CUSTOM,
        {
            "order_id": "c-9",
            "status": "shipped",
            "tracking_number": "TRK-9",
            "tracking_url": "https://t.test/TRK-9",
            "fulfilled_at": "2026-02-02T08:00:00Z",
            "customer": {"email": "jane@example.test"},
            "fulfillment": {"id": "f-1"},
        },
    )

    record = self._reconcile(
        ExternalPlatform.CUSTOM,
        {"order_id": "c-9", "status": "delivered",
         "delivered_at": "2026-02-04T10:00:00Z"},
    )

    self.assertEqual(record.status, "fulfilled")
    self.assertEqual(record.tracking_number, "TRK-9")
    self.assertEqual(record.tracking_url, "https://t.test/TRK-9")
    self.assertEqual(record.external_fulfillment_id, "f-1")
    self.assertEqual(record.customer_data, {"email": "jane@example.test"})
    self.assertEqual(record.fulfillment_data, {"id": "f-1"})
    self.assertIsNotNone(record.external_fulfilled_at)
    self.assertIsNotNone(record.external_delivered_at)

  def test_status_always_follows_latest_delivery(self):
    self._reconcile(
        ExternalPlatform.WOOCOMMERCE, {"id": 5, "status": "completed"}
    )
    record = self._reconcile(
        ExternalPlatform.WOOCOMMERCE, {"id": 5, "status": "cancelled"}
    )

    self.assertEqual(record.status, "cancelled")

  def test_same_order_id_on_other_platform_is_a_separate_record(self):
    self._reconcile(ExternalPlatform.SHOPIFY, {"id": 7})
    self._reconcile(ExternalPlatform.WOOCOMMERCE, {"id": 7})

    self.assertEqual(self._count(), 2)

  def test_unknown_organization(self):
    with self.assertRaises(ResourceNotFoundError):
      self._reconcile(
          ExternalPlatform.SHOPIFY, {"id": 1}, organization_id="org_missing"
      )
    self.assertEqual(self._count(), 0)

  def test_payload_without_order_id_is_rejected(self):
    with self.assertRaises(InvalidRequestError):
      self._reconcile(ExternalPlatform.ETSY, {"status": "shipped"})
    self.assertEqual(self._count(), 0)


if __name__ == "__main__":
  absltest.main()
