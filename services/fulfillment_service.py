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

"""Fulfillment service for dispatching completed orders.

This module routes every item of a completed order to the fulfillment strategy
its organization configured: automation, API provisioning, an external webhook
hand-off, hybrid routing by offer item type, or manual handling.
"""

import logging
from typing import Any, Dict, Optional
import typing

import db
from enums import DeliveryMethod
from enums import FulfillmentMethod
from enums import FulfillmentStatus
from models import FulfillmentUpdate
from services.provisioning_ledger import ProvisioningLedger
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Delivery methods the automation strategy completes on the spot, with the
# extra fulfillment data and note each one records.
_AUTOMATED_DELIVERIES = {
    DeliveryMethod.INSTANT_ACCESS.value: (
        {},
        "Automatically fulfilled via automation",
    ),
    DeliveryMethod.EMAIL_DELIVERY.value: (
        {"email_sent": True},
        "Automatically fulfilled via email delivery",
    ),
}


class FulfillmentService:
  """Service for handling fulfillment dispatch."""

  def __init__(
      self,
      catalog_session: AsyncSession,
      transactions_session: AsyncSession,
      ledger: Optional[ProvisioningLedger] = None,
  ):
    self.catalog_session = catalog_session
    self.transactions_session = transactions_session
    self.ledger = ledger or ProvisioningLedger(transactions_session)

  async def auto_fulfill_order(
      self, order: db.Order, actor_id: Optional[str] = None
  ) -> None:
    """Dispatches every item of a completed order.

    Does nothing unless the organization enabled automatic fulfillment. Runs
    once per order; dispatching an order again re-provisions its items.

    Args:
      order: The completed order.
      actor_id: The actor recorded on provisioned items.
    """
    organization = await db.get_organization(
        self.catalog_session, order.organization_id
    )
    if organization is None or not organization.auto_fulfill_orders:
      return

    method = FulfillmentMethod(organization.fulfillment_method)
    config = organization.fulfillment_config or {}
    order.fulfillment_method = method.value
    order.fulfillment_config = config
    await self.transactions_session.commit()

    items = await db.get_order_items(self.transactions_session, order.id)
    offer_items = await db.get_offer_items(
        self.catalog_session, [item.offer_item_id for item in items]
    )

    for item in items:
      item.delivery_method = organization.default_delivery_method
      await self.transactions_session.commit()

      offer_item = offer_items.get(item.offer_item_id)
      await self._dispatch(
          method,
          item,
          config,
          offer_item.type if offer_item else None,
          actor_id,
      )

  async def _dispatch(
      self,
      method: FulfillmentMethod,
      item: db.OrderItem,
      config: Dict[str, Any],
      item_type: Optional[str],
      actor_id: Optional[str],
  ) -> None:
    if method is FulfillmentMethod.AUTOMATION:
      await self._fulfill_by_automation(item, actor_id)
    elif method is FulfillmentMethod.API:
      await self._fulfill_by_api(item, config, actor_id)
    elif method is FulfillmentMethod.EXTERNAL_WEBHOOK:
      await self._hand_off_to_webhook(item)
    elif method is FulfillmentMethod.HYBRID:
      await self._fulfill_hybrid(item, config, item_type, actor_id)
    elif method is FulfillmentMethod.MANUAL:
      logger.info("Order item %s left for manual fulfillment", item.id)
    else:
      typing.assert_never(method)

  async def _fulfill_by_automation(
      self, item: db.OrderItem, actor_id: Optional[str]
  ) -> None:
    automated = _AUTOMATED_DELIVERIES.get(item.delivery_method)
    if automated is None:
      logger.info(
          "Order item %s with delivery method %s left for manual fulfillment",
          item.id,
          item.delivery_method,
      )
      return

    extra_data, notes = automated
    await self.ledger.provision_order_item(
        item,
        FulfillmentUpdate(
            status=FulfillmentStatus.FULFILLED,
            quantity_fulfilled=item.quantity,
            notes=notes,
            metadata={
                "auto_fulfilled": True,
                "fulfillment_type": "automation",
                **extra_data,
            },
        ),
        actor_id,
    )

  async def _fulfill_by_api(
      self, item: db.OrderItem, config: Dict[str, Any], actor_id: Optional[str]
  ) -> None:
    # The provisioning call itself belongs to the organization's integration.
    await self.ledger.provision_order_item(
        item,
        FulfillmentUpdate(
            status=FulfillmentStatus.FULFILLED,
            quantity_fulfilled=item.quantity,
            notes="Automatically fulfilled via API",
            metadata={
                "auto_fulfilled": True,
                "fulfillment_type": "api",
                "api_config": config,
            },
        ),
        actor_id,
    )

  async def _hand_off_to_webhook(self, item: db.OrderItem) -> None:
    await self.ledger.record_webhook_handoff(
        item,
        {
            "auto_fulfilled": True,
            "fulfillment_type": "webhook",
            "webhook_sent": True,
        },
    )
    logger.info(
        "Order item %s handed off for webhook fulfillment", item.id
    )

  async def _fulfill_hybrid(
      self,
      item: db.OrderItem,
      config: Dict[str, Any],
      item_type: Optional[str],
      actor_id: Optional[str],
  ) -> None:
    auto_types = config.get("auto_fulfill_item_types") or []
    if item_type is not None and item_type in auto_types:
      await self._fulfill_by_automation(item, actor_id)
      return
    logger.info(
        "Order item %s (type %s) left for manual fulfillment",
        item.id,
        item_type,
    )
