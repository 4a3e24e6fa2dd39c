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

"""Schema and data access for the fulfillment server.

Two SQLite databases are used through aiosqlite: the catalog (organizations,
members, offer items, prices) and the transactions database (customers,
checkout sessions, orders, order items, external fulfillments). Both run in WAL
mode so checkout completion and webhook deliveries can write concurrently.

Idempotency lives in the schema: orders are unique per (organization,
checkout session) and external fulfillments per (organization, platform,
external order id). The helpers below insert and upsert against those keys and
claim orders with conditional updates rather than read-then-write checks.
"""

import datetime
import logging
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Tuple

from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import distinct
from sqlalchemy import ForeignKey
from sqlalchemy import func
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import text
from sqlalchemy import UniqueConstraint
from sqlalchemy import update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

CatalogBase = declarative_base()
TransactionBase = declarative_base()


def utcnow() -> datetime.datetime:
  return datetime.datetime.now(datetime.timezone.utc)


class DatabaseManager:
  """Manages database engines and sessions without using global variables."""

  def __init__(self) -> None:
    self.catalog_engine: Optional[AsyncEngine] = None
    self.transactions_engine: Optional[AsyncEngine] = None
    self.catalog_session_factory: Optional[sessionmaker] = None
    self.transactions_session_factory: Optional[sessionmaker] = None

  async def init_dbs(self, catalog_path: str, transactions_path: str) -> None:
    """Initializes database engines and creates tables."""
    self.catalog_engine, self.catalog_session_factory = await _init_db(
        catalog_path, CatalogBase
    )
    self.transactions_engine, self.transactions_session_factory = (
        await _init_db(transactions_path, TransactionBase)
    )

  async def close(self) -> None:
    """Closes all database engines."""
    if self.catalog_engine:
      await self.catalog_engine.dispose()
    if self.transactions_engine:
      await self.transactions_engine.dispose()


async def _init_db(path: str, base: Any) -> Tuple[AsyncEngine, sessionmaker]:
  engine = create_async_engine(f"sqlite+aiosqlite:///{path}", echo=False)

  # Enable WAL mode
  async with engine.connect() as conn:
    await conn.execute(text("PRAGMA journal_mode=WAL"))

  session_factory = sessionmaker(
      engine, expire_on_commit=False, class_=AsyncSession
  )

  async with engine.begin() as conn:
    await conn.run_sync(base.metadata.create_all)
  logger.info("Opened database %s", path)
  return engine, session_factory


# Global manager instance (to be initialized via lifespan)
manager = DatabaseManager()


# --- Catalog DB ---


class Organization(CatalogBase):
  __tablename__ = "organizations"

  id = Column(String, primary_key=True)
  name = Column(String)
  auto_fulfill_orders = Column(Boolean, default=False, nullable=False)
  fulfillment_method = Column(String, default="manual", nullable=False)
  # e.g. {"auto_fulfill_item_types": ["digital"]}
  fulfillment_config = Column(JSON, nullable=True)
  default_delivery_method = Column(String, nullable=True)
  fulfillment_notification_email = Column(String, nullable=True)


class OrganizationMember(CatalogBase):
  __tablename__ = "organization_members"

  id = Column(String, primary_key=True)
  organization_id = Column(String, ForeignKey("organizations.id"), index=True)
  email = Column(String)
  name = Column(String, nullable=True)
  role = Column(String, default="member")


class OfferItem(CatalogBase):
  __tablename__ = "offer_items"

  id = Column(String, primary_key=True)
  organization_id = Column(String, ForeignKey("organizations.id"), index=True)
  name = Column(String)
  type = Column(String)  # e.g., 'digital', 'physical'


class Price(CatalogBase):
  __tablename__ = "prices"

  id = Column(String, primary_key=True)
  organization_id = Column(String, ForeignKey("organizations.id"), index=True)
  offer_item_id = Column(String, ForeignKey("offer_items.id"), nullable=True)
  type = Column(String, default="one_time")
  amount = Column(Integer, default=0)  # In cents
  currency = Column(String, nullable=True)
  renew_interval = Column(String, nullable=True)
  cancel_after_cycles = Column(Integer, nullable=True)
  gateway_price_id = Column(String, nullable=True)


# --- Transactions DB ---


class Customer(TransactionBase):
  __tablename__ = "customers"

  id = Column(String, primary_key=True)
  name = Column(String)
  email = Column(String, index=True)
  # Customer id at the payment provider
  reference_id = Column(String, nullable=True)


class CheckoutSession(TransactionBase):
  __tablename__ = "checkout_sessions"

  id = Column(String, primary_key=True)
  organization_id = Column(String, index=True)
  customer_id = Column(String, ForeignKey("customers.id"), nullable=True)
  status = Column(String, default="started")
  intent_type = Column(String, default="payment")
  intent_id = Column(String, nullable=True)
  currency = Column(String, nullable=True)
  # [{"id": "SAVE10"}]
  discounts = Column(JSON, nullable=True)
  # [{"price_id": ..., "offer_item_id": ..., "quantity": ...}]
  line_items = Column(JSON, nullable=True)
  created_at = Column(DateTime(timezone=True), default=utcnow)


class Order(TransactionBase):
  __tablename__ = "orders"
  __table_args__ = (
      UniqueConstraint(
          "organization_id",
          "checkout_session_id",
          name="uq_orders_organization_checkout_session",
      ),
  )

  id = Column(String, primary_key=True)
  organization_id = Column(String, nullable=False, index=True)
  checkout_session_id = Column(String, nullable=False)
  customer_id = Column(String, nullable=True)
  status = Column(String, default="pending", nullable=False)
  currency = Column(String)
  total_amount = Column(Integer, default=0)  # In cents
  completed_at = Column(DateTime(timezone=True), nullable=True)
  fulfillment_method = Column(String, nullable=True)
  fulfillment_config = Column(JSON, nullable=True)
  fulfillment_notified = Column(Boolean, default=False, nullable=False)
  fulfillment_notified_at = Column(DateTime(timezone=True), nullable=True)
  # Set while one completion attempt owns the pending order
  settlement_claimed_at = Column(DateTime(timezone=True), nullable=True)
  # Provider subscription created while settling a setup intent
  gateway_subscription_id = Column(String, nullable=True)
  created_at = Column(DateTime(timezone=True), default=utcnow)


class OrderItem(TransactionBase):
  __tablename__ = "order_items"

  id = Column(String, primary_key=True)
  organization_id = Column(String, nullable=False, index=True)
  order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
  price_id = Column(String)
  offer_item_id = Column(String, nullable=True)
  quantity = Column(Integer, default=1, nullable=False)
  quantity_fulfilled = Column(Integer, default=0, nullable=False)
  quantity_remaining = Column(Integer, default=0, nullable=False)
  delivery_method = Column(String, nullable=True)
  fulfillment_status = Column(String, default="pending", nullable=False)
  fulfillment_notes = Column(String, nullable=True)
  fulfillment_data = Column(JSON, nullable=True)
  tracking_number = Column(String, nullable=True)
  tracking_url = Column(String, nullable=True)
  expected_delivery_date = Column(DateTime(timezone=True), nullable=True)
  delivered_at = Column(DateTime(timezone=True), nullable=True)
  unprovisionable_reason = Column(String, nullable=True)
  delivery_assets = Column(JSON, nullable=True)
  item_metadata = Column("metadata", JSON, nullable=True)
  fulfilled_at = Column(DateTime(timezone=True), nullable=True)
  fulfilled_by = Column(String, nullable=True)
  version_id = Column(Integer, nullable=False)

  __mapper_args__ = {"version_id_col": version_id}


class ExternalFulfillment(TransactionBase):
  __tablename__ = "external_fulfillments"
  __table_args__ = (
      UniqueConstraint(
          "organization_id",
          "platform",
          "external_order_id",
          name="uq_external_fulfillments_natural_key",
      ),
  )

  id = Column(String, primary_key=True)
  organization_id = Column(String, nullable=False, index=True)
  platform = Column(String, nullable=False)
  external_order_id = Column(String, nullable=False)
  external_fulfillment_id = Column(String, nullable=True)
  status = Column(String, default="pending", nullable=False)
  # SQL NULL (not JSON null) so replays can fall back to stored values
  order_data = Column(JSON(none_as_null=True), nullable=True)
  fulfillment_data = Column(JSON(none_as_null=True), nullable=True)
  customer_data = Column(JSON(none_as_null=True), nullable=True)
  items_data = Column(JSON(none_as_null=True), nullable=True)
  tracking_number = Column(String, nullable=True)
  tracking_url = Column(String, nullable=True)
  external_order_created_at = Column(DateTime(timezone=True), nullable=True)
  external_fulfilled_at = Column(DateTime(timezone=True), nullable=True)
  external_delivered_at = Column(DateTime(timezone=True), nullable=True)
  webhook_signature = Column(String, nullable=True)
  webhook_headers = Column(JSON(none_as_null=True), nullable=True)
  notes = Column(String, nullable=True)
  created_at = Column(DateTime(timezone=True), default=utcnow)
  updated_at = Column(DateTime(timezone=True), default=utcnow)


# --- Data Access Helpers ---


async def get_organization(
    session: AsyncSession, organization_id: str
) -> Optional[Organization]:
  """Retrieves an organization by ID."""
  return await session.get(Organization, organization_id)


async def get_organization_member_emails(
    session: AsyncSession, organization_id: str, role: Optional[str] = None
) -> List[str]:
  """Retrieves member emails of an organization, optionally by role.

  Args:
    session: The catalog database session to use.
    organization_id: The organization whose members to list.
    role: If set, only members holding this role are returned.

  Returns:
    The non-empty member emails, in membership creation order.
  """
  stmt = select(OrganizationMember.email).where(
      OrganizationMember.organization_id == organization_id
  )
  if role is not None:
    stmt = stmt.where(OrganizationMember.role == role)
  result = await session.execute(stmt.order_by(OrganizationMember.id))
  return [email for email in result.scalars().all() if email]


async def get_prices(
    session: AsyncSession, price_ids: Iterable[str]
) -> Dict[str, Price]:
  """Retrieves prices keyed by ID in a single query."""
  ids = list({price_id for price_id in price_ids if price_id})
  if not ids:
    return {}
  result = await session.execute(select(Price).where(Price.id.in_(ids)))
  return {price.id: price for price in result.scalars().all()}


async def get_offer_items(
    session: AsyncSession, offer_item_ids: Iterable[str]
) -> Dict[str, OfferItem]:
  """Retrieves offer items keyed by ID in a single query."""
  ids = list({item_id for item_id in offer_item_ids if item_id})
  if not ids:
    return {}
  result = await session.execute(select(OfferItem).where(OfferItem.id.in_(ids)))
  return {item.id: item for item in result.scalars().all()}


async def get_customer(
    session: AsyncSession, customer_id: str
) -> Optional[Customer]:
  """Retrieves a customer by ID."""
  return await session.get(Customer, customer_id)


async def get_checkout_session(
    session: AsyncSession, checkout_session_id: str
) -> Optional[CheckoutSession]:
  """Retrieves a checkout session by ID."""
  return await session.get(CheckoutSession, checkout_session_id)


async def insert_order_if_absent(
    session: AsyncSession, values: Dict[str, Any]
) -> bool:
  """Inserts an order unless one exists for its checkout session.

  Args:
    session: The transactions database session to use.
    values: Column values of the new order; must include organization_id and
      checkout_session_id.

  Returns:
    True if a new row was inserted, False if the checkout session already had
    an order.
  """
  stmt = (
      sqlite_insert(Order)
      .values(**values)
      .on_conflict_do_nothing(
          index_elements=["organization_id", "checkout_session_id"]
      )
  )
  result = await session.execute(stmt)
  return result.rowcount == 1


async def get_order(session: AsyncSession, order_id: str) -> Optional[Order]:
  """Retrieves an order by ID."""
  return await session.get(Order, order_id)


async def get_order_by_checkout_session(
    session: AsyncSession, organization_id: str, checkout_session_id: str
) -> Optional[Order]:
  """Retrieves the order created for a checkout session."""
  result = await session.execute(
      select(Order).where(
          Order.organization_id == organization_id,
          Order.checkout_session_id == checkout_session_id,
      )
  )
  return result.scalar_one_or_none()


async def get_order_items(
    session: AsyncSession, order_id: str
) -> List[OrderItem]:
  """Retrieves the items of an order in a stable order."""
  result = await session.execute(
      select(OrderItem)
      .where(OrderItem.order_id == order_id)
      .order_by(OrderItem.id)
  )
  return list(result.scalars().all())


async def get_order_item(
    session: AsyncSession, order_item_id: str
) -> Optional[OrderItem]:
  """Retrieves an order item by ID."""
  return await session.get(OrderItem, order_item_id)


async def claim_order_settlement(
    session: AsyncSession,
    order_id: str,
    customer_id: str,
    now: datetime.datetime,
    stale_before: datetime.datetime,
) -> bool:
  """Atomically claims a pending order for a single completion attempt.

  The claim is a conditional update that only succeeds while the order is
  pending and unclaimed, so at most one concurrent caller proceeds to charge.
  A claim older than `stale_before` belongs to an attempt that never finished
  and may be taken over.

  Args:
    session: The transactions database session to use.
    order_id: The order to claim.
    customer_id: The customer to attach to the order with the claim.
    now: The time recorded on the claim.
    stale_before: Claims made before this time are considered abandoned.

  Returns:
    True if this caller now owns the settlement, False otherwise.
  """
  stmt = (
      update(Order)
      .where(Order.id == order_id)
      .where(Order.status == "pending")
      .where(
          or_(
              Order.settlement_claimed_at.is_(None),
              Order.settlement_claimed_at < stale_before,
          )
      )
      .values(settlement_claimed_at=now, customer_id=customer_id)
      .execution_options(synchronize_session=False)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def release_order_settlement(
    session: AsyncSession, order_id: str
) -> None:
  """Releases a settlement claim so the payer can retry."""
  await session.execute(
      update(Order)
      .where(Order.id == order_id)
      .where(Order.status == "pending")
      .values(settlement_claimed_at=None)
      .execution_options(synchronize_session=False)
  )


async def hold_order_settlement(
    session: AsyncSession, order_id: str, subscription_id: Optional[str]
) -> None:
  """Parks a claimed order whose provider outcome needs manual review.

  The claim is kept and the order leaves the pending state, so neither a
  retry nor a stale-claim takeover can charge the payer again.
  """
  await session.execute(
      update(Order)
      .where(Order.id == order_id)
      .where(Order.status == "pending")
      .values(status="on_hold", gateway_subscription_id=subscription_id)
      .execution_options(synchronize_session=False)
  )


async def list_orders(
    session: AsyncSession,
    organization_id: str,
    fulfillment_status: Optional[str] = None,
    fulfillment_method: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
) -> Tuple[List[Order], int]:
  """Lists an organization's orders, newest first.

  Args:
    session: The transactions database session to use.
    organization_id: The organization whose orders to list.
    fulfillment_status: Only orders with at least one item in this status.
    fulfillment_method: Only orders dispatched with this method.
    page: 1-based page number.
    per_page: Page size.

  Returns:
    The orders of the requested page and the total number of matches.
  """
  stmt = select(Order).where(Order.organization_id == organization_id)
  if fulfillment_status:
    stmt = stmt.where(
        Order.id.in_(
            select(OrderItem.order_id).where(
                OrderItem.fulfillment_status == fulfillment_status
            )
        )
    )
  if fulfillment_method:
    stmt = stmt.where(Order.fulfillment_method == fulfillment_method)

  total = await session.scalar(
      select(func.count()).select_from(stmt.subquery())
  )
  result = await session.execute(
      stmt.order_by(Order.created_at.desc(), Order.id)
      .offset((page - 1) * per_page)
      .limit(per_page)
  )
  return list(result.scalars().all()), total or 0


async def get_fulfillment_statistics(
    session: AsyncSession, organization_id: str
) -> Dict[str, int]:
  """Aggregates fulfillment counters for an organization."""

  async def count_items(*statuses: str) -> int:
    return (
        await session.scalar(
            select(func.count(OrderItem.id)).where(
                OrderItem.organization_id == organization_id,
                OrderItem.fulfillment_status.in_(statuses),
            )
        )
        or 0
    )

  total_orders = await session.scalar(
      select(func.count(Order.id)).where(
          Order.organization_id == organization_id
      )
  )
  pending_fulfillment = await session.scalar(
      select(func.count(distinct(OrderItem.order_id))).where(
          OrderItem.organization_id == organization_id,
          OrderItem.fulfillment_status.in_(
              ["pending", "partially_fulfilled"]
          ),
      )
  )
  return {
      "total_orders": total_orders or 0,
      "pending_fulfillment": pending_fulfillment or 0,
      "fulfilled_items": await count_items("fulfilled"),
      "unprovisionable_items": await count_items("unprovisionable"),
  }


async def upsert_external_fulfillment(
    session: AsyncSession,
    values: Dict[str, Any],
    preserved_columns: Iterable[str] = (),
) -> None:
  """Inserts or updates an external fulfillment by its natural key.

  Args:
    session: The transactions database session to use.
    values: Column values extracted from the webhook. Must include
      organization_id, platform and external_order_id.
    preserved_columns: Columns that keep their stored value when the incoming
      value is NULL.
  """
  stmt = sqlite_insert(ExternalFulfillment).values(**values)
  table = ExternalFulfillment.__table__
  preserved = set(preserved_columns)
  set_ = {}
  for name in values:
    if name in ("id", "organization_id", "platform", "external_order_id",
                "created_at"):
      continue
    if name in preserved:
      set_[name] = func.coalesce(stmt.excluded[name], table.c[name])
    else:
      set_[name] = stmt.excluded[name]
  stmt = stmt.on_conflict_do_update(
      index_elements=["organization_id", "platform", "external_order_id"],
      set_=set_,
  )
  await session.execute(stmt)


async def get_external_fulfillment(
    session: AsyncSession,
    organization_id: str,
    platform: str,
    external_order_id: str,
) -> Optional[ExternalFulfillment]:
  """Retrieves an external fulfillment by its natural key."""
  result = await session.execute(
      select(ExternalFulfillment)
      .where(
          ExternalFulfillment.organization_id == organization_id,
          ExternalFulfillment.platform == platform,
          ExternalFulfillment.external_order_id == external_order_id,
      )
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()
