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

"""Turns checkout sessions into durable orders.

One order exists per (organization, checkout session). Creation goes through
an insert that does nothing on conflict, so a double-submitted checkout finds
the order the first submission created instead of racing to create another.
"""

import logging
from typing import Any, Dict, List, Tuple
import uuid

import db
from enums import FulfillmentStatus
from enums import OrderStatus
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class OrderMaterializer:
  """Creates orders and order items for checkout sessions."""

  def __init__(
      self, transactions_session: AsyncSession, default_currency: str = "usd"
  ):
    self.transactions_session = transactions_session
    self.default_currency = default_currency

  async def materialize_order(
      self, checkout_session: db.CheckoutSession, commit: bool = True
  ) -> Tuple[db.Order, bool]:
    """Returns the order of a checkout session, creating it if needed.

    An existing order is returned exactly as stored.

    Args:
      checkout_session: The checkout session being converted.
      commit: Whether to commit the insert right away.

    Returns:
      The order and whether this call created it.
    """
    created = await db.insert_order_if_absent(
        self.transactions_session,
        {
            "id": str(uuid.uuid4()),
            "organization_id": checkout_session.organization_id,
            "checkout_session_id": checkout_session.id,
            "customer_id": checkout_session.customer_id,
            "status": OrderStatus.PENDING.value,
            "currency": checkout_session.currency or self.default_currency,
            "total_amount": 0,
            "fulfillment_notified": False,
        },
    )
    if commit:
      await self.transactions_session.commit()

    order = await db.get_order_by_checkout_session(
        self.transactions_session,
        checkout_session.organization_id,
        checkout_session.id,
    )
    if created:
      logger.info(
          "Created order %s for checkout session %s",
          order.id,
          checkout_session.id,
      )
    return order, created

  async def materialize_order_item(
      self, order: db.Order, line_item: Dict[str, Any], commit: bool = True
  ) -> db.OrderItem:
    """Creates one order item for a checkout line item.

    Every call creates a new row; callers invoke it once per line item.
    """
    quantity = int(line_item.get("quantity") or 1)
    item = db.OrderItem(
        id=str(uuid.uuid4()),
        organization_id=order.organization_id,
        order_id=order.id,
        price_id=line_item.get("price_id"),
        offer_item_id=line_item.get("offer_item_id"),
        quantity=quantity,
        quantity_fulfilled=0,
        quantity_remaining=quantity,
        fulfillment_status=FulfillmentStatus.PENDING.value,
        fulfillment_data={},
        item_metadata={},
    )
    self.transactions_session.add(item)
    if commit:
      await self.transactions_session.commit()
    return item

  async def materialize(
      self, checkout_session: db.CheckoutSession
  ) -> Tuple[db.Order, List[db.OrderItem]]:
    """Materializes a checkout session's order and its items.

    The order row and its items are written in one transaction, and items are
    only created by the call whose insert created the order.
    """
    try:
      order, created = await self.materialize_order(
          checkout_session, commit=False
      )
      if not created:
        await self.transactions_session.commit()
        return order, await db.get_order_items(
            self.transactions_session, order.id
        )

      items = []
      for line_item in checkout_session.line_items or []:
        items.append(
            await self.materialize_order_item(order, line_item, commit=False)
        )
      await self.transactions_session.commit()
    except Exception as e:
      await self.transactions_session.rollback()
      raise e
    return order, items
