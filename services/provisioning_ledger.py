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

"""Write path for order item fulfillment state.

Every change to an order item's fulfillment status, quantities, tracking or
fulfillment data goes through `ProvisioningLedger`. Each write re-reads the
row, validates the requested quantities and commits in one transaction. Order
items carry a version counter, so a write based on a stale row fails instead
of silently overwriting a concurrent one.
"""

import logging
from typing import Any, Dict, Iterable, Optional

import db
from enums import FulfillmentStatus
from exceptions import ConcurrentUpdateError
from exceptions import FulfillmentQuantityError
from models import FulfillmentSummary
from models import FulfillmentUpdate
from models import TrackingUpdate
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)

_FULFILLED_STATUSES = (
    FulfillmentStatus.FULFILLED.value,
    FulfillmentStatus.PARTIALLY_FULFILLED.value,
)


def merge_fulfillment_data(
    current: Optional[Dict[str, Any]], additions: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
  """Merges new keys over existing fulfillment data without dropping any."""
  merged = dict(current or {})
  merged.update(additions or {})
  return merged


class ProvisioningLedger:
  """Transactional writer for order item fulfillment fields."""

  def __init__(self, transactions_session: AsyncSession):
    self.transactions_session = transactions_session

  async def provision_order_item(
      self,
      order_item: db.OrderItem,
      update: FulfillmentUpdate,
      actor_id: Optional[str] = None,
  ) -> db.OrderItem:
    """Applies a fulfillment update to an order item.

    Args:
      order_item: The item to update.
      update: The requested status, quantity and fulfillment details.
      actor_id: The user or system actor performing the change.

    Returns:
      The updated order item.

    Raises:
      FulfillmentQuantityError: If the fulfilled quantity would be negative or
        exceed the ordered quantity. Nothing is written in that case.
      ConcurrentUpdateError: If the item changed while being written.
    """
    await self.transactions_session.refresh(order_item)

    quantity_fulfilled = (
        order_item.quantity_fulfilled
        if update.quantity_fulfilled is None
        else update.quantity_fulfilled
    )
    if quantity_fulfilled < 0:
      raise FulfillmentQuantityError(
          f"Fulfilled quantity cannot be negative (got {quantity_fulfilled})"
      )
    if quantity_fulfilled > order_item.quantity:
      raise FulfillmentQuantityError(
          f"Cannot fulfill {quantity_fulfilled} units of order item"
          f" {order_item.id}; only {order_item.quantity} ordered"
      )

    status = update.status.value
    try:
      order_item.fulfillment_status = status
      order_item.quantity_fulfilled = quantity_fulfilled
      order_item.quantity_remaining = order_item.quantity - quantity_fulfilled
      if update.notes is not None:
        order_item.fulfillment_notes = update.notes
      if update.tracking_number is not None:
        order_item.tracking_number = update.tracking_number
      if update.tracking_url is not None:
        order_item.tracking_url = update.tracking_url
      if update.unprovisionable_reason is not None:
        order_item.unprovisionable_reason = update.unprovisionable_reason
      if update.delivery_assets is not None:
        order_item.delivery_assets = update.delivery_assets
      if update.metadata:
        order_item.fulfillment_data = merge_fulfillment_data(
            order_item.fulfillment_data, update.metadata
        )
      if status in _FULFILLED_STATUSES:
        order_item.fulfilled_at = db.utcnow()
        order_item.fulfilled_by = actor_id

      await self._commit(order_item)
    except Exception as e:
      await self.transactions_session.rollback()
      raise e

    logger.info(
        "Order item %s provisioned: status=%s quantity_fulfilled=%d/%d"
        " actor=%s",
        order_item.id,
        status,
        quantity_fulfilled,
        order_item.quantity,
        actor_id,
    )
    return order_item

  async def mark_unprovisionable(
      self,
      order_item: db.OrderItem,
      reason: str,
      notes: Optional[str] = None,
      actor_id: Optional[str] = None,
  ) -> db.OrderItem:
    """Marks an order item as impossible to provision."""
    await self.transactions_session.refresh(order_item)
    try:
      order_item.fulfillment_status = FulfillmentStatus.UNPROVISIONABLE.value
      order_item.unprovisionable_reason = reason
      order_item.fulfilled_by = actor_id
      if notes is not None:
        order_item.fulfillment_notes = notes
      await self._commit(order_item)
    except Exception as e:
      await self.transactions_session.rollback()
      raise e

    logger.info(
        "Order item %s marked unprovisionable by %s: %s",
        order_item.id,
        actor_id,
        reason,
    )
    return order_item

  async def update_tracking(
      self, order_item: db.OrderItem, fields: TrackingUpdate
  ) -> db.OrderItem:
    """Patches tracking fields; status and quantities are left alone."""
    await self.transactions_session.refresh(order_item)
    changes = fields.model_dump(exclude_unset=True)
    if "notes" in changes:
      changes["fulfillment_notes"] = changes.pop("notes")
    try:
      for name, value in changes.items():
        setattr(order_item, name, value)
      await self._commit(order_item)
    except Exception as e:
      await self.transactions_session.rollback()
      raise e

    logger.info(
        "Tracking updated for order item %s: %s", order_item.id, sorted(changes)
    )
    return order_item

  async def record_webhook_handoff(
      self, order_item: db.OrderItem, fulfillment_data: Dict[str, Any]
  ) -> db.OrderItem:
    """Marks an item as handed to an external webhook for confirmation.

    The item moves to processing; quantities are untouched until the
    webhook's confirmation is provisioned.
    """
    await self.transactions_session.refresh(order_item)
    try:
      order_item.fulfillment_status = FulfillmentStatus.PROCESSING.value
      order_item.fulfillment_data = merge_fulfillment_data(
          order_item.fulfillment_data, fulfillment_data
      )
      await self._commit(order_item)
    except Exception as e:
      await self.transactions_session.rollback()
      raise e
    return order_item

  async def _commit(self, order_item: db.OrderItem) -> None:
    # A failed flush expires the item, so read its id up front.
    order_item_id = order_item.id
    try:
      await self.transactions_session.commit()
    except StaleDataError as e:
      await self.transactions_session.rollback()
      raise ConcurrentUpdateError(
          f"Order item {order_item_id} was modified concurrently"
      ) from e


def fulfillment_summary(items: Iterable[db.OrderItem]) -> FulfillmentSummary:
  """Counts an order's items by fulfillment progress."""
  statuses = [item.fulfillment_status for item in items]
  return FulfillmentSummary(
      total_items=len(statuses),
      fulfilled_items=statuses.count(FulfillmentStatus.FULFILLED.value),
      pending_items=(
          statuses.count(FulfillmentStatus.PENDING.value)
          + statuses.count(FulfillmentStatus.PARTIALLY_FULFILLED.value)
      ),
      unprovisionable_items=statuses.count(
          FulfillmentStatus.UNPROVISIONABLE.value
      ),
  )

