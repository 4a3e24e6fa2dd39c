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

"""Tests for turning checkout sessions into orders."""

import asyncio

from absl.testing import absltest
import db
from services.order_materializer import OrderMaterializer
from sqlalchemy import func
from sqlalchemy import select
import testing_utils


class OrderMaterializerTest(testing_utils.DatabaseTestCase):

  def setUp(self) -> None:
    super().setUp()

    async def seed() -> db.CheckoutSession:
      async with self.transactions_session_factory() as session:
        return await testing_utils.seed_checkout_session(
            session,
            "org_1",
            [
                {"price_id": "price_a", "offer_item_id": "offer_a",
                 "quantity": 2},
                {"price_id": "price_b", "offer_item_id": "offer_b",
                 "quantity": 1},
            ],
            currency=None,
        )

    self.checkout_session = self.run_async(seed())

  async def _count(self, model) -> int:
    async with self.transactions_session_factory() as session:
      return await session.scalar(select(func.count()).select_from(model))

  def test_materialize_creates_pending_order_with_items(self):
    async def run():
      async with self.transactions_session_factory() as session:
        materializer = OrderMaterializer(session, default_currency="eur")
        return await materializer.materialize(self.checkout_session)

    order, items = self.run_async(run())

    self.assertEqual(order.status, "pending")
    self.assertEqual(order.total_amount, 0)
    self.assertEqual(order.currency, "eur")
    self.assertEqual(order.organization_id, "org_1")
    self.assertEqual(order.customer_id, self.checkout_session.customer_id)
    self.assertLen(items, 2)
    first = items[0]
    self.assertEqual(first.price_id, "price_a")
    self.assertEqual(first.offer_item_id, "offer_a")
    self.assertEqual(first.quantity, 2)
    self.assertEqual(first.quantity_fulfilled, 0)
    self.assertEqual(first.quantity_remaining, 2)
    self.assertEqual(first.fulfillment_status, "pending")
    self.assertEqual(first.item_metadata, {})

  def test_materialize_twice_returns_existing_order_unchanged(self):
    async def run():
      async with self.transactions_session_factory() as session:
        first, _ = await OrderMaterializer(session).materialize(
            self.checkout_session
        )
        first.status = "completed"
        first.total_amount = 4200
        await session.commit()
      async with self.transactions_session_factory() as session:
        second, items = await OrderMaterializer(session).materialize(
            self.checkout_session
        )
      return first, second, items

    first, second, items = self.run_async(run())

    self.assertEqual(second.id, first.id)
    self.assertEqual(second.status, "completed")
    self.assertEqual(second.total_amount, 4200)
    self.assertLen(items, 2)
    self.assertEqual(self.run_async(self._count(db.Order)), 1)
    self.assertEqual(self.run_async(self._count(db.OrderItem)), 2)

  def test_concurrent_materialization_creates_one_order(self):
    async def materialize_once():
      async with self.transactions_session_factory() as session:
        order, created = await OrderMaterializer(session).materialize_order(
            self.checkout_session
        )
        return order.id, created

    async def run():
      return await asyncio.gather(materialize_once(), materialize_once())

    results = self.run_async(run())

    self.assertEqual(results[0][0], results[1][0])
    self.assertCountEqual([created for _, created in results], [True, False])
    self.assertEqual(self.run_async(self._count(db.Order)), 1)

  def test_materialize_order_item_is_not_idempotent(self):
    async def run():
      async with self.transactions_session_factory() as session:
        materializer = OrderMaterializer(session)
        order, _ = await materializer.materialize_order(self.checkout_session)
        line_item = {"price_id": "price_a", "quantity": 1}
        await materializer.materialize_order_item(order, line_item)
        await materializer.materialize_order_item(order, line_item)

    self.run_async(run())

    self.assertEqual(self.run_async(self._count(db.OrderItem)), 2)


if __name__ == "__main__":
  absltest.main()
