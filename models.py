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

"""Request and response models for the fulfillment server.

Requests are validated by these models before they reach the services, and
responses are built from the database rows with `from_attributes`.
"""

import datetime
from typing import Any, Dict, List, Optional

from enums import FulfillmentStatus
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field


class CompleteCheckoutRequest(BaseModel):
  confirmation_token: Optional[str] = None


class FulfillmentUpdate(BaseModel):
  """A change to an order item's fulfillment state.

  `quantity_fulfilled` defaults to the item's current value and `metadata` is
  merged key by key into the item's fulfillment data.
  """

  status: FulfillmentStatus
  quantity_fulfilled: Optional[int] = None
  notes: Optional[str] = None
  metadata: Optional[Dict[str, Any]] = None
  tracking_number: Optional[str] = None
  tracking_url: Optional[str] = None
  unprovisionable_reason: Optional[str] = None
  delivery_assets: Optional[Any] = None


# Statuses an operator may set through the fulfillment endpoint.
OPERATOR_FULFILLMENT_STATUSES = frozenset({
    FulfillmentStatus.PENDING,
    FulfillmentStatus.PARTIALLY_FULFILLED,
    FulfillmentStatus.FULFILLED,
    FulfillmentStatus.UNPROVISIONABLE,
})


class UnprovisionableRequest(BaseModel):
  reason: str = Field(..., min_length=1, max_length=1000)
  notes: Optional[str] = Field(None, max_length=1000)


class TrackingUpdate(BaseModel):
  tracking_number: Optional[str] = Field(None, max_length=255)
  tracking_url: Optional[str] = None
  expected_delivery_date: Optional[datetime.datetime] = None
  delivered_at: Optional[datetime.datetime] = None
  notes: Optional[str] = Field(None, max_length=1000)


class FulfillmentSummary(BaseModel):
  total_items: int
  fulfilled_items: int
  pending_items: int
  unprovisionable_items: int


class FulfillmentStatistics(BaseModel):
  total_orders: int
  pending_fulfillment: int
  fulfilled_items: int
  unprovisionable_items: int


class OrderItemResponse(BaseModel):
  """An order item as returned by the API."""

  model_config = ConfigDict(from_attributes=True)

  id: str
  order_id: str
  price_id: Optional[str] = None
  offer_item_id: Optional[str] = None
  quantity: int
  quantity_fulfilled: int
  quantity_remaining: int
  delivery_method: Optional[str] = None
  fulfillment_status: str
  fulfillment_notes: Optional[str] = None
  fulfillment_data: Optional[Dict[str, Any]] = None
  tracking_number: Optional[str] = None
  tracking_url: Optional[str] = None
  expected_delivery_date: Optional[datetime.datetime] = None
  delivered_at: Optional[datetime.datetime] = None
  unprovisionable_reason: Optional[str] = None
  delivery_assets: Optional[Any] = None
  metadata: Optional[Dict[str, Any]] = Field(
      None, validation_alias="item_metadata"
  )
  fulfilled_at: Optional[datetime.datetime] = None
  fulfilled_by: Optional[str] = None


class OrderResponse(BaseModel):
  """An order with its items as returned by the API."""

  model_config = ConfigDict(from_attributes=True)

  id: str
  organization_id: str
  checkout_session_id: str
  customer_id: Optional[str] = None
  status: str
  currency: Optional[str] = None
  total_amount: int
  completed_at: Optional[datetime.datetime] = None
  fulfillment_method: Optional[str] = None
  fulfillment_config: Optional[Dict[str, Any]] = None
  fulfillment_notified: bool
  fulfillment_notified_at: Optional[datetime.datetime] = None
  gateway_subscription_id: Optional[str] = None
  items: List[OrderItemResponse] = Field(default_factory=list)
  fulfillment_summary: Optional[FulfillmentSummary] = None


class PageMeta(BaseModel):
  current_page: int
  per_page: int
  total: int
  last_page: int


class OrderListResponse(BaseModel):
  data: List[OrderResponse]
  meta: PageMeta


class WebhookResponse(BaseModel):
  status: str
  message: str
  external_fulfillment_id: Optional[str] = None
