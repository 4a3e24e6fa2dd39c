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

"""Order Fulfillment Server (Python/FastAPI)."""

import logging
import sys
from typing import Sequence

from absl import app as absl_app
import config
from exceptions import ServiceError
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from routes.checkout import router as checkout_router
from routes.order import router as order_router
from routes.webhooks import router as webhooks_router
import uvicorn

# --- App Setup ---

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Order Fulfillment Service",
    version=config.SERVER_VERSION,
    description=(
        "Order processing and fulfillment dispatch for multi-tenant checkouts"
    ),
    lifespan=config.lifespan,
)


@app.exception_handler(ServiceError)
async def service_exception_handler(request: Request, exc: ServiceError):
  """Handles service exceptions and converts them to JSON responses."""
  del request  # Unused.
  content = {"detail": exc.message, "code": exc.code}
  if exc.details:
    content["details"] = exc.details
  return JSONResponse(status_code=exc.status_code, content=content)


app.include_router(checkout_router)
app.include_router(order_router)
app.include_router(webhooks_router)


def main(argv: Sequence[str]) -> None:
  """Main entry point for the Order Fulfillment Server."""
  del argv  # Unused.

  if (
      config.FLAGS.catalog_db_path is None
      or config.FLAGS.transactions_db_path is None
      or config.FLAGS.port is None
  ):
    logger.error(
        "--catalog_db_path, --transactions_db_path and --port must all be"
        " provided."
    )
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  if config.FLAGS.stripe_api_key is None:
    logger.warning("--stripe_api_key is not set; checkouts cannot complete.")
  if config.FLAGS.notification_relay_url is None:
    logger.warning(
        "--notification_relay_url is not set; checkouts cannot complete."
    )

  uvicorn.run(app, host="0.0.0.0", port=config.FLAGS.port)


if __name__ == "__main__":
  absl_app.run(main)
