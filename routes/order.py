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

"""Order and fulfillment management routes."""

from typing import Optional

import dependencies
from enums import FulfillmentMethod
from enums import FulfillmentStatus
from exceptions import InvalidRequestError
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from fastapi import Query
from models import FulfillmentStatistics
from models import FulfillmentUpdate
from models import OPERATOR_FULFILLMENT_STATUSES
from models import OrderItemResponse
from models import OrderListResponse
from models import OrderResponse
from models import TrackingUpdate
from models import UnprovisionableRequest
from services.notification_service import NotificationService
from services.order_service import OrderService
from services.provisioning_ledger import ProvisioningLedger

router = APIRouter()


@router.get(
    "/orders/{id}",
    response_model=OrderResponse,
    operation_id="get_order",
)
async def get_order(
    order_id: str = Path(..., alias="id"),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderResponse:
  """Get an order with its items and fulfillment summary."""
  return await order_service.get_order(order_id)


@router.get(
    "/organizations/{id}/orders",
    response_model=OrderListResponse,
    operation_id="list_orders",
)
async def list_orders(
    organization_id: str = Path(..., alias="id"),
    status: Optional[FulfillmentStatus] = Query(None),
    fulfillment_method: Optional[FulfillmentMethod] = Query(None),
    page: int = Query(1, ge=1),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderListResponse:
  """List an organization's orders, filtered by item status or method."""
  return await order_service.list_orders(
      organization_id,
      fulfillment_status=status.value if status else None,
      fulfillment_method=(
          fulfillment_method.value if fulfillment_method else None
      ),
      page=page,
  )


@router.get(
    "/organizations/{id}/fulfillment/statistics",
    response_model=FulfillmentStatistics,
    operation_id="get_fulfillment_statistics",
)
async def get_fulfillment_statistics(
    organization_id: str = Path(..., alias="id"),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> FulfillmentStatistics:
  """Get fulfillment counters for an organization."""
  return await order_service.fulfillment_statistics(organization_id)


@router.post(
    "/orders/{id}/notifications/resend",
    response_model=OrderResponse,
    operation_id="resend_order_notification",
)
async def resend_order_notification(
    order_id: str = Path(..., alias="id"),
    order_service: OrderService = Depends(dependencies.get_order_service),
    notification_service: NotificationService = Depends(
        dependencies.get_notification_service
    ),
) -> OrderResponse:
  """Send the order notification again."""
  order = await order_service.get_order_row(order_id)
  await notification_service.resend_notification(order)
  return await order_service.get_order(order_id)


@router.put(
    "/order-items/{id}/fulfillment",
    response_model=OrderItemResponse,
    operation_id="update_order_item_fulfillment",
)
async def update_order_item_fulfillment(
    order_item_id: str = Path(..., alias="id"),
    update: FulfillmentUpdate = Body(...),
    actor_id: Optional[str] = Depends(dependencies.actor_id),
    order_service: OrderService = Depends(dependencies.get_order_service),
    ledger: ProvisioningLedger = Depends(dependencies.get_provisioning_ledger),
) -> OrderItemResponse:
  """Record fulfillment progress for an order item."""
  if update.status not in OPERATOR_FULFILLMENT_STATUSES:
    raise InvalidRequestError(
        f"Status '{update.status.value}' cannot be set manually"
    )
  item = await order_service.get_order_item_row(order_item_id)
  item = await ledger.provision_order_item(item, update, actor_id)
  return OrderItemResponse.model_validate(item)


@router.post(
    "/order-items/{id}/unprovisionable",
    response_model=OrderItemResponse,
    operation_id="mark_order_item_unprovisionable",
)
async def mark_order_item_unprovisionable(
    order_item_id: str = Path(..., alias="id"),
    request: UnprovisionableRequest = Body(...),
    actor_id: Optional[str] = Depends(dependencies.actor_id),
    order_service: OrderService = Depends(dependencies.get_order_service),
    ledger: ProvisioningLedger = Depends(dependencies.get_provisioning_ledger),
) -> OrderItemResponse:
  """Mark an order item as impossible to provision."""
  item = await order_service.get_order_item_row(order_item_id)
  item = await ledger.mark_unprovisionable(
      item, request.reason, request.notes, actor_id
  )
  return OrderItemResponse.model_validate(item)


@router.put(
    "/order-items/{id}/tracking",
    response_model=OrderItemResponse,
    operation_id="update_order_item_tracking",
)
async def update_order_item_tracking(
    order_item_id: str = Path(..., alias="id"),
    tracking: TrackingUpdate = Body(...),
    order_service: OrderService = Depends(dependencies.get_order_service),
    ledger: ProvisioningLedger = Depends(dependencies.get_provisioning_ledger),
) -> OrderItemResponse:
  """Update shipment tracking details of an order item."""
  item = await order_service.get_order_item_row(order_item_id)
  item = await ledger.update_tracking(item, tracking)
  return OrderItemResponse.model_validate(item)
