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

"""Order notifications for organization staff.

Each completed order produces one notification per recipient, at most once
per order. Recipients are the organization's configured notification address,
else its admins, else all of its members.
"""

import abc
import logging
from typing import Any, Dict, List

import db
from enums import MemberRole
from exceptions import NotificationDeliveryError
import httpx
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

ORDER_NOTIFICATION_TEMPLATE = "order_notification"


class NotificationSender(abc.ABC):
  """Delivers a rendered notification to one recipient."""

  @abc.abstractmethod
  async def send(
      self, recipient: str, template_id: str, payload: Dict[str, Any]
  ) -> None:
    """Sends a notification; raises NotificationDeliveryError on failure."""


class HttpNotificationSender(NotificationSender):
  """Hands notifications to a mail relay over HTTP."""

  def __init__(self, relay_url: str, timeout: float = 5.0):
    self.relay_url = relay_url
    self.timeout = timeout

  async def send(
      self, recipient: str, template_id: str, payload: Dict[str, Any]
  ) -> None:
    body = {"to": recipient, "template": template_id, "data": payload}
    try:
      async with httpx.AsyncClient() as client:
        response = await client.post(
            self.relay_url, json=body, timeout=self.timeout
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
      raise NotificationDeliveryError(
          f"Failed to deliver {template_id} to {recipient}: {e}"
      ) from e


class NotificationService:
  """Sends the one-time staff notification for an order."""

  def __init__(
      self,
      catalog_session: AsyncSession,
      transactions_session: AsyncSession,
      sender: NotificationSender,
  ):
    self.catalog_session = catalog_session
    self.transactions_session = transactions_session
    self.sender = sender

  async def resolve_recipients(self, organization_id: str) -> List[str]:
    """Resolves who should hear about an organization's orders."""
    organization = await db.get_organization(
        self.catalog_session, organization_id
    )
    if organization and organization.fulfillment_notification_email:
      candidates = [organization.fulfillment_notification_email]
    else:
      candidates = await db.get_organization_member_emails(
          self.catalog_session, organization_id, role=MemberRole.ADMIN.value
      )
      if not candidates:
        candidates = await db.get_organization_member_emails(
            self.catalog_session, organization_id
        )
    return list(dict.fromkeys(candidates))

  async def notify_order(self, order: db.Order) -> None:
    """Notifies the organization about an order, once.

    Args:
      order: The completed order.

    Raises:
      NotificationDeliveryError: If any recipient could not be notified. The
        order is not flagged as notified in that case.
    """
    if order.fulfillment_notified:
      return

    recipients = await self.resolve_recipients(order.organization_id)
    if not recipients:
      logger.warning(
          "No notification recipients for organization %s (order %s)",
          order.organization_id,
          order.id,
      )
      return

    payload = await self._build_payload(order)
    for recipient in recipients:
      try:
        await self.sender.send(recipient, ORDER_NOTIFICATION_TEMPLATE, payload)
      except Exception as e:
        logger.error(
            "Failed to send order notification for order %s to %s: %s",
            order.id,
            recipient,
            e,
        )
        raise

    order.fulfillment_notified = True
    order.fulfillment_notified_at = db.utcnow()
    await self.transactions_session.commit()
    logger.info(
        "Order notification for order %s sent to %d recipient(s)",
        order.id,
        len(recipients),
    )

  async def resend_notification(self, order: db.Order) -> None:
    """Clears the notified flag and notifies again."""
    order.fulfillment_notified = False
    order.fulfillment_notified_at = None
    await self.transactions_session.commit()
    await self.notify_order(order)

  async def _build_payload(self, order: db.Order) -> Dict[str, Any]:
    items = await db.get_order_items(self.transactions_session, order.id)
    return {
        "order_id": order.id,
        "organization_id": order.organization_id,
        "customer_id": order.customer_id,
        "currency": order.currency,
        "total_amount": order.total_amount,
        "completed_at": (
            order.completed_at.isoformat() if order.completed_at else None
        ),
        "items": [
            {
                "id": item.id,
                "price_id": item.price_id,
                "quantity": item.quantity,
                "fulfillment_status": item.fulfillment_status,
            }
            for item in items
        ],
    }
