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

"""Charge type families and renewal arithmetic for prices.

A price is either charged once or belongs to the recurring family (flat
recurring and the usage-based tiered/volume/graduated/package schemes). The
family decides whether an order item becomes a subscription item or a one-off
invoice item, and recurring prices may carry a number of renewal cycles after
which the subscription cancels itself.
"""

import dataclasses
import datetime
from typing import Dict, List, Optional

from dateutil.relativedelta import relativedelta
import db
from enums import ChargeType
from enums import RenewInterval

RECURRING_CHARGE_TYPES = frozenset({
    ChargeType.RECURRING.value,
    ChargeType.TIERED.value,
    ChargeType.VOLUME.value,
    ChargeType.GRADUATED.value,
    ChargeType.PACKAGE.value,
})

_INTERVAL_DELTAS = {
    RenewInterval.DAY.value: lambda n: relativedelta(days=n),
    RenewInterval.WEEK.value: lambda n: relativedelta(weeks=n),
    RenewInterval.MONTH.value: lambda n: relativedelta(months=n),
    RenewInterval.YEAR.value: lambda n: relativedelta(years=n),
}


def is_recurring(charge_type: Optional[str]) -> bool:
  """Whether a price type belongs to the recurring family."""
  return charge_type in RECURRING_CHARGE_TYPES


def add_intervals(
    start: datetime.datetime, interval: str, count: int
) -> datetime.datetime:
  """Adds `count` renewal intervals to `start`.

  Month and year steps clamp to the last day of the target month, so
  January 31st plus one month is the last day of February.

  Args:
    start: The moment to count from.
    interval: One of the RenewInterval values.
    count: Number of intervals to add.

  Returns:
    The shifted moment.

  Raises:
    ValueError: If the interval is unknown.
  """
  try:
    delta = _INTERVAL_DELTAS[interval]
  except KeyError:
    raise ValueError(f"Unknown renew interval: {interval}") from None
  return start + delta(count)


def cancellation_timestamp(
    price: db.Price, now: Optional[datetime.datetime] = None
) -> Optional[int]:
  """Computes the Unix timestamp at which a subscription should cancel.

  Args:
    price: The price driving the subscription.
    now: The moment the subscription starts; defaults to the current time.

  Returns:
    The epoch second after `cancel_after_cycles` renewals, or None when the
    price is one-time or has no cycle limit.
  """
  if not is_recurring(price.type) or not price.cancel_after_cycles:
    return None
  if not price.renew_interval:
    return None
  now = now or datetime.datetime.now(datetime.timezone.utc)
  cancel_at = add_intervals(
      now, price.renew_interval, price.cancel_after_cycles
  )
  return int(cancel_at.timestamp())


@dataclasses.dataclass
class ChargeBuckets:
  """Order items split by the charge family of their price."""

  recurring: List[db.OrderItem] = dataclasses.field(default_factory=list)
  one_time: List[db.OrderItem] = dataclasses.field(default_factory=list)


def group_by_charge_family(
    items: List[db.OrderItem], prices: Dict[str, db.Price]
) -> ChargeBuckets:
  """Groups order items into recurring and one-time buckets.

  Items whose price cannot be found are treated as one-time.
  """
  buckets = ChargeBuckets()
  for item in items:
    price = prices.get(item.price_id)
    if price is not None and is_recurring(price.type):
      buckets.recurring.append(item)
    else:
      buckets.one_time.append(item)
  return buckets
