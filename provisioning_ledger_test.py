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

"""Tests for the order item provisioning ledger."""

import datetime

from absl.testing import absltest
import db
from enums import FulfillmentStatus
from exceptions import ConcurrentUpdateError
from exceptions import FulfillmentQuantityError
from models import FulfillmentUpdate
from models import TrackingUpdate
from services.provisioning_ledger import fulfillment_summary
from services.provisioning_ledger import merge_fulfillment_data
from services.provisioning_ledger import ProvisioningLedger
import testing_utils


class ProvisioningLedgerTest(testing_utils.DatabaseTestCase):

  def setUp(self) -> None:
    super().setUp()

    async def seed() -> str:
      async with self.transactions_session_factory() as session:
        item = db.OrderItem(
            id="item_1",
            organization_id="org_1",
            order_id="order_1",
            price_id="price_1",
            quantity=2,
            quantity_fulfilled=0,
            quantity_remaining=2,
            fulfillment_status="pending",
            fulfillment_data={"source": "checkout"},
            item_metadata={},
        )
        session.add(item)
        await session.commit()
        return item.id

    self.item_id = self.run_async(seed())

  async def _load(self) -> db.OrderItem:
    async with self.transactions_session_factory() as session:
      return await db.get_order_item(session, self.item_id)

  async def _provision(self, update, actor_id=None) -> db.OrderItem:
    async with self.transactions_session_factory() as session:
      item = await db.get_order_item(session, self.item_id)
      return await ProvisioningLedger(session).provision_order_item(
          item, update, actor_id
      )

  def test_full_fulfillment_stamps_actor_and_time(self):
    item = self.run_async(
        self._provision(
            FulfillmentUpdate(
                status=FulfillmentStatus.FULFILLED,
                quantity_fulfilled=2,
                notes="Shipped",
                metadata={"carrier": "ups"},
                tracking_number="1Z999",
            ),
            actor_id="user_7",
        )
    )

    stored = self.run_async(self._load())
    for row in (item, stored):
      self.assertEqual(row.fulfillment_status, "fulfilled")
      self.assertEqual(row.quantity_fulfilled, 2)
      self.assertEqual(row.quantity_remaining, 0)
      self.assertEqual(row.fulfilled_by, "user_7")
      self.assertIsNotNone(row.fulfilled_at)
      self.assertEqual(row.fulfillment_notes, "Shipped")
      self.assertEqual(row.tracking_number, "1Z999")
    self.assertEqual(
        stored.fulfillment_data, {"source": "checkout", "carrier": "ups"}
    )

  def test_partial_fulfillment(self):
    self.run_async(
        self._provision(
            FulfillmentUpdate(
                status=FulfillmentStatus.PARTIALLY_FULFILLED,
                quantity_fulfilled=1,
            ),
            actor_id="user_7",
        )
    )

    stored = self.run_async(self._load())
    self.assertEqual(stored.quantity_fulfilled, 1)
    self.assertEqual(stored.quantity_remaining, 1)
    self.assertEqual(stored.fulfilled_by, "user_7")

  def test_quantity_defaults_to_current_value(self):
    self.run_async(
        self._provision(
            FulfillmentUpdate(
                status=FulfillmentStatus.PARTIALLY_FULFILLED,
                quantity_fulfilled=1,
            )
        )
    )
    self.run_async(
        self._provision(FulfillmentUpdate(status=FulfillmentStatus.ON_HOLD))
    )

    stored = self.run_async(self._load())
    self.assertEqual(stored.fulfillment_status, "on_hold")
    self.assertEqual(stored.quantity_fulfilled, 1)
    self.assertEqual(stored.quantity_remaining, 1)

  def test_over_fulfillment_is_rejected_without_writes(self):
    with self.assertRaises(FulfillmentQuantityError) as ctx:
      self.run_async(
          self._provision(
              FulfillmentUpdate(
                  status=FulfillmentStatus.FULFILLED, quantity_fulfilled=3
              )
          )
      )

    self.assertEqual(ctx.exception.status_code, 422)
    stored = self.run_async(self._load())
    self.assertEqual(stored.fulfillment_status, "pending")
    self.assertEqual(stored.quantity_fulfilled, 0)
    self.assertEqual(stored.quantity_remaining, 2)
    self.assertIsNone(stored.fulfilled_at)

  def test_negative_quantity_is_rejected(self):
    with self.assertRaises(FulfillmentQuantityError):
      self.run_async(
          self._provision(
              FulfillmentUpdate(
                  status=FulfillmentStatus.PENDING, quantity_fulfilled=-1
              )
          )
      )

  def test_stale_write_is_rejected(self):
    async def run():
      async with self.transactions_session_factory() as session:
        item = await db.get_order_item(session, self.item_id)
        ledger = ProvisioningLedger(session)
        await session.refresh(item)
        # Another writer bumps the row version after our re-read.
        async with self.transactions_session_factory() as other:
          other_item = await db.get_order_item(other, self.item_id)
          other_item.fulfillment_notes = "touched"
          await other.commit()
        item.fulfillment_status = "processing"
        with self.assertRaises(ConcurrentUpdateError) as ctx:
          await ledger._commit(item)
        # The session is usable again for the caller's re-read.
        await session.refresh(item)
        return ctx.exception, item

    error, item = self.run_async(run())

    self.assertEqual(error.status_code, 409)
    self.assertEqual(
        error.message, f"Order item {self.item_id} was modified concurrently"
    )
    self.assertEqual(item.fulfillment_notes, "touched")
    self.assertEqual(item.fulfillment_status, "pending")

  def test_mark_unprovisionable(self):
    async def run():
      async with self.transactions_session_factory() as session:
        item = await db.get_order_item(session, self.item_id)
        await ProvisioningLedger(session).mark_unprovisionable(
            item, "Out of licenses", notes="Vendor outage", actor_id="user_3"
        )

    self.run_async(run())

    stored = self.run_async(self._load())
    self.assertEqual(stored.fulfillment_status, "unprovisionable")
    self.assertEqual(stored.unprovisionable_reason, "Out of licenses")
    self.assertEqual(stored.fulfillment_notes, "Vendor outage")
    self.assertEqual(stored.fulfilled_by, "user_3")
    self.assertEqual(stored.quantity_fulfilled, 0)

  def test_update_tracking_leaves_status_and_quantities(self):
    delivered = datetime.datetime(2026, 5, 1, 9, 30)

    async def run():
      async with self.transactions_session_factory() as session:
        item = await db.get_order_item(session, self.item_id)
        await ProvisioningLedger(session).update_tracking(
            item,
            TrackingUpdate(
                tracking_number="TRK-1",
                tracking_url="https://track.test/TRK-1",
                delivered_at=delivered,
                notes="Left at door",
            ),
        )

    self.run_async(run())

    stored = self.run_async(self._load())
    self.assertEqual(stored.tracking_number, "TRK-1")
    self.assertEqual(stored.tracking_url, "https://track.test/TRK-1")
    self.assertEqual(stored.delivered_at, delivered)
    self.assertEqual(stored.fulfillment_notes, "Left at door")
    self.assertEqual(stored.fulfillment_status, "pending")
    self.assertEqual(stored.quantity_fulfilled, 0)
    self.assertEqual(stored.quantity_remaining, 2)

  def test_merge_fulfillment_data_keeps_existing_keys(self):
    self.assertEqual(
        merge_fulfillment_data({"a": 1, "b": 2}, {"b": 3, "c": 4}),
        {"a": 1, "b": 3, "c": 4},
    )
    self.assertEqual(merge_fulfillment_data(None, None), {})

  def test_fulfillment_summary(self):
    items = [
        db.OrderItem(fulfillment_status=status)
        for status in (
            "fulfilled",
            "pending",
            "partially_fulfilled",
            "unprovisionable",
            "processing",
        )
    ]

    summary = fulfillment_summary(items)

    self.assertEqual(summary.total_items, 5)
    self.assertEqual(summary.fulfilled_items, 1)
    self.assertEqual(summary.pending_items, 2)
    self.assertEqual(summary.unprovisionable_items, 1)


if __name__ == "__main__":
  absltest.main()
