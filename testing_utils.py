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

"""Shared fixtures for the fulfillment server tests."""

import asyncio
import os
import shutil
import tempfile
import types
from typing import Any, Dict, List, Optional
import uuid

from absl.testing import absltest
import db
from services.notification_service import NotificationSender
from services.payment_gateway import PaymentGateway
from services.payment_gateway import SubscriptionRequest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool


class DatabaseTestCase(absltest.TestCase):
  """Test case with temporary catalog and transactions databases."""

  def setUp(self) -> None:
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.loop = asyncio.new_event_loop()

    self.catalog_engine = create_async_engine(
        f"sqlite+aiosqlite:///{os.path.join(self.test_dir, 'catalog.db')}",
        poolclass=NullPool,
    )
    self.transactions_engine = create_async_engine(
        "sqlite+aiosqlite:///"
        f"{os.path.join(self.test_dir, 'transactions.db')}",
        poolclass=NullPool,
    )
    self.catalog_session_factory = sessionmaker(
        self.catalog_engine, expire_on_commit=False, class_=AsyncSession
    )
    self.transactions_session_factory = sessionmaker(
        self.transactions_engine, expire_on_commit=False, class_=AsyncSession
    )

    async def init_schemas() -> None:
      async with self.catalog_engine.begin() as conn:
        await conn.run_sync(db.CatalogBase.metadata.create_all)
      async with self.transactions_engine.connect() as conn:
        await conn.execute(text("PRAGMA journal_mode=WAL"))
      async with self.transactions_engine.begin() as conn:
        await conn.run_sync(db.TransactionBase.metadata.create_all)

    self.run_async(init_schemas())

  def tearDown(self) -> None:
    async def dispose_engines() -> None:
      await self.catalog_engine.dispose()
      await self.transactions_engine.dispose()

    self.run_async(dispose_engines())
    self.loop.close()
    shutil.rmtree(self.test_dir)
    super().tearDown()

  def run_async(self, coro):
    return self.loop.run_until_complete(coro)


class FakeGateway(PaymentGateway):
  """In-memory PaymentGateway that records every call."""

  def __init__(
      self,
      payment_intent_status: str = "succeeded",
      setup_intent_status: str = "succeeded",
      last_error: Optional[Dict[str, Any]] = None,
      promotion_codes: Optional[Dict[str, str]] = None,
      coupons: Optional[List[str]] = None,
      subscription_status: str = "active",
      failing_lookups: Optional[List[str]] = None,
      retrieve_error: Optional[Exception] = None,
      create_error: Optional[Exception] = None,
  ):
    self.payment_intent_status = payment_intent_status
    self.setup_intent_status = setup_intent_status
    self.last_error = last_error
    self.promotion_codes = promotion_codes or {}
    self.coupons = coupons or []
    self.subscription_status = subscription_status
    self.failing_lookups = failing_lookups or []
    self.retrieve_error = retrieve_error
    self.create_error = create_error
    self.calls: List[str] = []
    self.subscription_requests: List[SubscriptionRequest] = []
    self.idempotency_keys: List[Optional[str]] = []

  @property
  def settlement_calls(self) -> List[str]:
    """Calls that verify or create a charge."""
    return [
        call
        for call in self.calls
        if call in (
            "retrieve_payment_intent",
            "retrieve_setup_intent",
            "create_subscription",
        )
    ]

  def _error(self):
    if self.last_error is None:
      return None
    return types.SimpleNamespace(**self.last_error)

  async def retrieve_payment_intent(self, intent_id: str) -> Any:
    self.calls.append("retrieve_payment_intent")
    await asyncio.sleep(0.05)
    if self.retrieve_error:
      raise self.retrieve_error
    return types.SimpleNamespace(
        id=intent_id,
        status=self.payment_intent_status,
        last_payment_error=self._error(),
    )

  async def retrieve_setup_intent(self, intent_id: str) -> Any:
    self.calls.append("retrieve_setup_intent")
    await asyncio.sleep(0.05)
    if self.retrieve_error:
      raise self.retrieve_error
    return types.SimpleNamespace(
        id=intent_id,
        status=self.setup_intent_status,
        payment_method="pm_card_visa",
        last_setup_error=self._error(),
    )

  async def create_subscription(
      self, request: SubscriptionRequest, idempotency_key: Optional[str] = None
  ) -> Any:
    self.calls.append("create_subscription")
    self.subscription_requests.append(request)
    self.idempotency_keys.append(idempotency_key)
    if self.create_error:
      raise self.create_error
    return types.SimpleNamespace(
        id="sub_123",
        status=self.subscription_status,
        latest_invoice=types.SimpleNamespace(
            payment_intent=types.SimpleNamespace(
                status="succeeded", last_payment_error=None
            )
        ),
    )

  async def find_active_promotion_code(self, code: str) -> Optional[Any]:
    self.calls.append("find_active_promotion_code")
    if code in self.failing_lookups:
      raise RuntimeError(f"lookup of {code} failed")
    if code in self.promotion_codes:
      return types.SimpleNamespace(id=self.promotion_codes[code])
    return None

  async def retrieve_coupon(self, coupon_id: str) -> Optional[Any]:
    self.calls.append("retrieve_coupon")
    if coupon_id in self.coupons:
      return types.SimpleNamespace(id=coupon_id)
    return None


class FakeSender(NotificationSender):
  """NotificationSender that records deliveries instead of sending them."""

  def __init__(self, fail: bool = False):
    self.fail = fail
    self.sent: List[Dict[str, Any]] = []

  async def send(
      self, recipient: str, template_id: str, payload: Dict[str, Any]
  ) -> None:
    if self.fail:
      raise RuntimeError("relay unavailable")
    self.sent.append(
        {"recipient": recipient, "template": template_id, "payload": payload}
    )


# --- Seed helpers ---


async def seed_organization(
    session: AsyncSession, **overrides: Any
) -> db.Organization:
  values = {
      "id": str(uuid.uuid4()),
      "name": "Acme",
      "auto_fulfill_orders": True,
      "fulfillment_method": "automation",
      "fulfillment_config": {},
      "default_delivery_method": "instant_access",
      "fulfillment_notification_email": "orders@acme.test",
  }
  values.update(overrides)
  organization = db.Organization(**values)
  session.add(organization)
  await session.commit()
  return organization


async def seed_member(
    session: AsyncSession, organization_id: str, email: str, role: str
) -> db.OrganizationMember:
  member = db.OrganizationMember(
      id=str(uuid.uuid4()),
      organization_id=organization_id,
      email=email,
      role=role,
  )
  session.add(member)
  await session.commit()
  return member


async def seed_offer_item(
    session: AsyncSession, organization_id: str, item_type: str = "digital"
) -> db.OfferItem:
  offer_item = db.OfferItem(
      id=str(uuid.uuid4()),
      organization_id=organization_id,
      name=f"{item_type} item",
      type=item_type,
  )
  session.add(offer_item)
  await session.commit()
  return offer_item


async def seed_price(
    session: AsyncSession, organization_id: str, **overrides: Any
) -> db.Price:
  values = {
      "id": str(uuid.uuid4()),
      "organization_id": organization_id,
      "type": "one_time",
      "amount": 1000,
      "currency": "usd",
      "gateway_price_id": f"price_{uuid.uuid4().hex[:8]}",
  }
  values.update(overrides)
  price = db.Price(**values)
  session.add(price)
  await session.commit()
  return price


async def seed_checkout_session(
    session: AsyncSession,
    organization_id: str,
    line_items: List[Dict[str, Any]],
    with_customer: bool = True,
    **overrides: Any,
) -> db.CheckoutSession:
  customer_id = None
  if with_customer:
    customer = db.Customer(
        id=str(uuid.uuid4()),
        name="Jane Doe",
        email="jane@example.test",
        reference_id="cus_123",
    )
    session.add(customer)
    customer_id = customer.id
  values = {
      "id": str(uuid.uuid4()),
      "organization_id": organization_id,
      "customer_id": customer_id,
      "status": "started",
      "intent_type": "payment",
      "intent_id": "pi_123",
      "currency": "usd",
      "discounts": [],
      "line_items": line_items,
  }
  values.update(overrides)
  checkout_session = db.CheckoutSession(**values)
  session.add(checkout_session)
  await session.commit()
  return checkout_session
