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

"""Checkout completion.

`CheckoutService` is the entry point of the order pipeline: it converts a
checkout session into an order, has the order settled, and closes the
session.
"""

import logging
from typing import Optional

import db
from enums import CheckoutStatus
from enums import OrderStatus
from exceptions import ResourceNotFoundError
from models import OrderResponse
from services.order_materializer import OrderMaterializer
from services.order_service import OrderService
from services.payment_reconciliation import PaymentReconciliationService
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class CheckoutService:
  """Service for completing checkout sessions."""

  def __init__(
      self,
      materializer: OrderMaterializer,
      reconciliation: PaymentReconciliationService,
      transactions_session: AsyncSession,
  ):
    self.materializer = materializer
    self.reconciliation = reconciliation
    self.transactions_session = transactions_session

  async def complete_checkout(
      self,
      checkout_session_id: str,
      confirmation_token: Optional[str] = None,
      actor_id: Optional[str] = None,
  ) -> OrderResponse:
    """Completes a checkout session and returns its order.

    Completing the same checkout session again returns the existing order
    without charging the payer twice.

    Args:
      checkout_session_id: The checkout session to complete.
      confirmation_token: Optional payment confirmation token from the payer.
      actor_id: The actor recorded on automatically provisioned items.

    Returns:
      The order with its items and fulfillment summary.
    """
    logger.info("Completing checkout session %s", checkout_session_id)
    checkout_session = await db.get_checkout_session(
        self.transactions_session, checkout_session_id
    )
    if not checkout_session:
      raise ResourceNotFoundError("Checkout session not found")

    order, _ = await self.materializer.materialize(checkout_session)
    order = await self.reconciliation.complete_order(
        order, checkout_session, confirmation_token, actor_id
    )

    if (
        order.status == OrderStatus.COMPLETED.value
        and checkout_session.status != CheckoutStatus.CLOSED.value
    ):
      checkout_session.status = CheckoutStatus.CLOSED.value
      await self.transactions_session.commit()

    return await OrderService(self.transactions_session).get_order(order.id)
