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

"""Shared configuration and startup logic for the fulfillment server."""

import contextlib
from typing import Any

from absl import flags
import db
from fastapi import FastAPI
from services import payment_gateway

FLAGS = flags.FLAGS

SERVER_VERSION = "2026-01-15"

# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string("catalog_db_path", None, "Path to catalog DB")
  flags.DEFINE_string("transactions_db_path", None, "Path to transactions DB")
  flags.DEFINE_integer("port", None, "Port to run the server on")
  flags.DEFINE_string(
      "stripe_api_key", None, "Secret key used for the Stripe API"
  )
  flags.DEFINE_float(
      "gateway_timeout_seconds",
      10.0,
      "Timeout applied to every payment gateway request",
  )
  flags.DEFINE_integer(
      "settlement_claim_ttl_seconds",
      900,
      "Age after which an unfinished settlement claim may be taken over",
  )
  flags.DEFINE_string(
      "notification_relay_url",
      None,
      "URL of the mail relay that delivers order notifications",
  )
  flags.DEFINE_float(
      "notification_timeout_seconds",
      5.0,
      "Timeout applied to every notification relay request",
  )
  flags.DEFINE_string(
      "default_currency", "usd", "Currency used when a checkout has none"
  )
except flags.DuplicateFlagError:
  pass


def get_flag(name: str) -> Any:
  """Returns a flag value, falling back to its default before parsing."""
  if not FLAGS.is_parsed():
    return FLAGS[name].default
  return FLAGS[name].value


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
  """Shared lifespan manager for databases and the payment gateway."""
  del app  # Unused.
  # In tests or if flags aren't set, these might be None, handled by caller
  catalog_path = get_flag("catalog_db_path")
  transactions_path = get_flag("transactions_db_path")
  if catalog_path and transactions_path:
    await db.manager.init_dbs(catalog_path, transactions_path)
  yield
  await payment_gateway.manager.close()
  await db.manager.close()
