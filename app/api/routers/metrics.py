from fastapi import APIRouter
from ...observability.metrics import metrics_app

# prometheus scrape target; kept out of the OpenAPI schema
router = APIRouter(tags=["metrics"])
router.add_api_route("/metrics", metrics_app(), methods=["GET"], include_in_schema=False)
