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

"""Read side of orders and their fulfillment state."""

import math
from typing import List, Optional

import db
from exceptions import ResourceNotFoundError
from models import FulfillmentStatistics
from models import OrderItemResponse
from models import OrderListResponse
from models import OrderResponse
from models import PageMeta
from services.provisioning_ledger import fulfillment_summary
from sqlalchemy.ext.asyncio import AsyncSession

ORDERS_PER_PAGE = 20


class OrderService:
  """Service for reading orders."""

  def __init__(self, transactions_session: AsyncSession):
    self.transactions_session = transactions_session

  async def get_order_row(self, order_id: str) -> db.Order:
    order = await db.get_order(self.transactions_session, order_id)
    if not order:
      raise ResourceNotFoundError("Order not found")
    return order

  async def get_order_item_row(self, order_item_id: str) -> db.OrderItem:
    item = await db.get_order_item(self.transactions_session, order_item_id)
    if not item:
      raise ResourceNotFoundError("Order item not found")
    return item

  async def get_order(self, order_id: str) -> OrderResponse:
    """Retrieves an order with its items and fulfillment summary."""
    order = await self.get_order_row(order_id)
    items = await db.get_order_items(self.transactions_session, order.id)
    return order_response(order, items, with_summary=True)

  async def list_orders(
      self,
      organization_id: str,
      fulfillment_status: Optional[str] = None,
      fulfillment_method: Optional[str] = None,
      page: int = 1,
  ) -> OrderListResponse:
    """Lists an organization's orders, 20 per page."""
    orders, total = await db.list_orders(
        self.transactions_session,
        organization_id,
        fulfillment_status=fulfillment_status,
        fulfillment_method=fulfillment_method,
        page=page,
        per_page=ORDERS_PER_PAGE,
    )
    data = []
    for order in orders:
      items = await db.get_order_items(self.transactions_session, order.id)
      data.append(order_response(order, items))
    return OrderListResponse(
        data=data,
        meta=PageMeta(
            current_page=page,
            per_page=ORDERS_PER_PAGE,
            total=total,
            last_page=max(1, math.ceil(total / ORDERS_PER_PAGE)),
        ),
    )

  async def fulfillment_statistics(
      self, organization_id: str
  ) -> FulfillmentStatistics:
    """Aggregates fulfillment counters across an organization's orders."""
    return FulfillmentStatistics(
        **await db.get_fulfillment_statistics(
            self.transactions_session, organization_id
        )
    )


def order_response(
    order: db.Order, items: List[db.OrderItem], with_summary: bool = False
) -> OrderResponse:
  response = OrderResponse.model_validate(order)
  response.items = [OrderItemResponse.model_validate(item) for item in items]
  if with_summary:
    response.fulfillment_summary = fulfillment_summary(items)
  return response
