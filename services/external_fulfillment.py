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

"""Reconciliation of fulfillment webhooks from external storefronts.

Each platform shapes its payloads differently. A `FulfillmentExtractor` per
platform normalizes a payload into an `ExtractedFulfillment`, which is then
upserted on (organization, platform, external order id). Redelivered webhooks
update the same record. When a redelivery omits tracking details, timestamps
or sub-objects, the values recorded earlier are kept.
"""

import datetime
import logging
from typing import Any, Dict, Optional
import uuid

from dateutil import parser as date_parser
import db
from enums import ExternalPlatform
from enums import FulfillmentStatus
from exceptions import InvalidRequestError
from exceptions import ResourceNotFoundError
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "fulfilled": FulfillmentStatus.FULFILLED,
    "completed": FulfillmentStatus.FULFILLED,
    "shipped": FulfillmentStatus.FULFILLED,
    "delivered": FulfillmentStatus.FULFILLED,
    "processing": FulfillmentStatus.PROCESSING,
    "in_transit": FulfillmentStatus.PROCESSING,
    "pending_fulfillment": FulfillmentStatus.PROCESSING,
    "partially_fulfilled": FulfillmentStatus.PARTIALLY_FULFILLED,
    "partial": FulfillmentStatus.PARTIALLY_FULFILLED,
    "cancelled": FulfillmentStatus.CANCELLED,
    "canceled": FulfillmentStatus.CANCELLED,
    "failed": FulfillmentStatus.FAILED,
    "error": FulfillmentStatus.FAILED,
    "on_hold": FulfillmentStatus.ON_HOLD,
    "hold": FulfillmentStatus.ON_HOLD,
}

# Columns that keep their stored value when a redelivery does not carry them.
PRESERVED_COLUMNS = (
    "external_fulfillment_id",
    "fulfillment_data",
    "customer_data",
    "items_data",
    "tracking_number",
    "tracking_url",
    "external_order_created_at",
    "external_fulfilled_at",
    "external_delivered_at",
)


def map_status(raw_status: Any) -> FulfillmentStatus:
  """Maps a platform status onto a FulfillmentStatus, case-insensitively."""
  if raw_status is None:
    return FulfillmentStatus.PENDING
  return _STATUS_MAP.get(str(raw_status).lower(), FulfillmentStatus.PENDING)


def parse_timestamp(value: Any) -> Optional[datetime.datetime]:
  """Parses ISO strings, common date strings and Unix epochs.

  Naive values are taken as UTC. Anything unparseable yields None.
  """
  if value is None or value == "" or isinstance(value, bool):
    return None
  try:
    if isinstance(value, (int, float)):
      return datetime.datetime.fromtimestamp(value, tz=datetime.timezone.utc)
    parsed = date_parser.parse(str(value))
  except (ValueError, OverflowError, OSError):
    return None
  if parsed.tzinfo is None:
    return parsed.replace(tzinfo=datetime.timezone.utc)
  return parsed.astimezone(datetime.timezone.utc)


def dig(payload: Any, path: str) -> Any:
  """Reads a dotted path from nested dicts, returning None when absent."""
  current = payload
  for key in path.split("."):
    if not isinstance(current, dict):
      return None
    current = current.get(key)
  return current


def first_present(payload: Any, *paths: str) -> Any:
  """Returns the value of the first path that is present and not null."""
  for path in paths:
    value = dig(payload, path)
    if value is not None:
      return value
  return None


class ExtractedFulfillment(BaseModel):
  """A webhook payload normalized across platforms."""

  order_id: str
  status: FulfillmentStatus
  order_data: Optional[Any] = None
  fulfillment_data: Optional[Any] = None
  customer_data: Optional[Any] = None
  items_data: Optional[Any] = None
  tracking_number: Optional[str] = None
  tracking_url: Optional[str] = None
  order_created_at: Optional[datetime.datetime] = None
  fulfilled_at: Optional[datetime.datetime] = None
  delivered_at: Optional[datetime.datetime] = None


class FulfillmentExtractor:
  """Extracts fulfillment fields from a platform's webhook payload.

  The base class reads the generic payload shape; platform subclasses
  override the fields their payloads name differently.
  """

  order_id_paths = ("order_id", "id")

  def extract(self, payload: Dict[str, Any]) -> ExtractedFulfillment:
    return ExtractedFulfillment(
        order_id=self.order_id(payload),
        status=map_status(
            first_present(payload, "status", "fulfillment_status")
        ),
        order_data=self.order_data(payload),
        fulfillment_data=first_present(payload, "fulfillment", "fulfillments"),
        customer_data=self.customer_data(payload),
        items_data=self.items_data(payload),
        tracking_number=_optional_str(
            first_present(
                payload,
                "tracking_number",
                "fulfillment.tracking_number",
                "tracking_info.tracking_number",
            )
        ),
        tracking_url=_optional_str(
            first_present(
                payload,
                "tracking_url",
                "fulfillment.tracking_url",
                "tracking_info.tracking_url",
            )
        ),
        order_created_at=parse_timestamp(
            first_present(payload, "created_at", "order_date")
        ),
        fulfilled_at=parse_timestamp(
            first_present(
                payload,
                "fulfilled_at",
                "fulfillment.created_at",
                "shipped_at",
            )
        ),
        delivered_at=parse_timestamp(
            first_present(payload, "delivered_at", "delivery_date")
        ),
    )

  def order_id(self, payload: Dict[str, Any]) -> str:
    value = first_present(payload, *self.order_id_paths)
    return "" if value is None else str(value)

  def order_data(self, payload: Dict[str, Any]) -> Any:
    return payload

  def customer_data(self, payload: Dict[str, Any]) -> Any:
    return payload.get("customer")

  def items_data(self, payload: Dict[str, Any]) -> Any:
    return first_present(payload, "items", "line_items")


class ShopifyExtractor(FulfillmentExtractor):
  order_id_paths = ("id", "order_id")

  def order_data(self, payload):
    return {
        "order_number": payload.get("order_number"),
        "total_price": payload.get("total_price"),
        "currency": payload.get("currency"),
        "financial_status": payload.get("financial_status"),
        "fulfillment_status": payload.get("fulfillment_status"),
    }

  def items_data(self, payload):
    return payload.get("line_items")


class EtsyExtractor(FulfillmentExtractor):
  order_id_paths = ("receipt_id",)

  def order_data(self, payload):
    return {
        "receipt_id": payload.get("receipt_id"),
        "total_price": payload.get("grandtotal"),
        "currency_code": payload.get("currency_code"),
        "payment_method": payload.get("payment_method"),
    }

  def customer_data(self, payload):
    return {
        "buyer_user_id": payload.get("buyer_user_id"),
        "buyer_email": payload.get("buyer_email"),
    }

  def items_data(self, payload):
    return payload.get("transactions")


class ClickFunnelsExtractor(FulfillmentExtractor):
  order_id_paths = ("order.id",)

  def order_data(self, payload):
    return {
        "order_id": dig(payload, "order.id"),
        "total_amount": dig(payload, "order.total_amount"),
        "currency": dig(payload, "order.currency"),
        "status": dig(payload, "order.status"),
    }

  def customer_data(self, payload):
    return payload.get("contact")

  def items_data(self, payload):
    return dig(payload, "order.order_items")


class WooCommerceExtractor(FulfillmentExtractor):
  order_id_paths = ("id",)


class AmazonExtractor(FulfillmentExtractor):
  order_id_paths = ("AmazonOrderId",)


class CustomExtractor(FulfillmentExtractor):
  """Generic payload shape for self-built storefronts."""


EXTRACTORS: Dict[ExternalPlatform, FulfillmentExtractor] = {
    ExternalPlatform.SHOPIFY: ShopifyExtractor(),
    ExternalPlatform.ETSY: EtsyExtractor(),
    ExternalPlatform.CLICKFUNNELS: ClickFunnelsExtractor(),
    ExternalPlatform.WOOCOMMERCE: WooCommerceExtractor(),
    ExternalPlatform.AMAZON: AmazonExtractor(),
    ExternalPlatform.CUSTOM: CustomExtractor(),
}


def _optional_str(value: Any) -> Optional[str]:
  return None if value is None else str(value)


class ExternalFulfillmentService:
  """Records fulfillment updates reported by external platforms."""

  def __init__(
      self, catalog_session: AsyncSession, transactions_session: AsyncSession
  ):
    self.catalog_session = catalog_session
    self.transactions_session = transactions_session

  async def reconcile_webhook(
      self,
      organization_id: str,
      platform: ExternalPlatform,
      payload: Dict[str, Any],
      signature: Optional[str] = None,
      headers: Optional[Dict[str, Any]] = None,
  ) -> db.ExternalFulfillment:
    """Upserts the external fulfillment described by a webhook payload.

    Args:
      organization_id: The organization the webhook was addressed to.
      platform: The platform that sent it.
      payload: The decoded JSON body.
      signature: The platform's signature header, stored for auditing.
      headers: All request headers, stored for auditing.

    Returns:
      The created or updated external fulfillment.

    Raises:
      ResourceNotFoundError: If the organization does not exist.
      InvalidRequestError: If no order id can be found in the payload.
    """
    organization = await db.get_organization(
        self.catalog_session, organization_id
    )
    if organization is None:
      raise ResourceNotFoundError("Organization not found")

    extracted = EXTRACTORS[platform].extract(payload)
    if not extracted.order_id:
      raise InvalidRequestError(
          f"No order id found in {platform.value} webhook payload"
      )

    now = db.utcnow()
    fulfillment_id = dig(extracted.fulfillment_data, "id")
    try:
      await db.upsert_external_fulfillment(
          self.transactions_session,
          {
              "id": str(uuid.uuid4()),
              "organization_id": organization_id,
              "platform": platform.value,
              "external_order_id": extracted.order_id,
              "external_fulfillment_id": _optional_str(fulfillment_id),
              "status": extracted.status.value,
              "order_data": extracted.order_data,
              "fulfillment_data": extracted.fulfillment_data,
              "customer_data": extracted.customer_data,
              "items_data": extracted.items_data,
              "tracking_number": extracted.tracking_number,
              "tracking_url": extracted.tracking_url,
              "external_order_created_at": extracted.order_created_at,
              "external_fulfilled_at": extracted.fulfilled_at,
              "external_delivered_at": extracted.delivered_at,
              "webhook_signature": signature,
              "webhook_headers": headers,
              "created_at": now,
              "updated_at": now,
          },
          preserved_columns=PRESERVED_COLUMNS,
      )
      await self.transactions_session.commit()
    except Exception as e:
      await self.transactions_session.rollback()
      raise e

    record = await db.get_external_fulfillment(
        self.transactions_session,
        organization_id,
        platform.value,
        extracted.order_id,
    )
    logger.info(
        "Processed %s webhook for organization %s: order %s is %s",
        platform.value,
        organization_id,
        extracted.order_id,
        extracted.status.value,
    )
    return record
