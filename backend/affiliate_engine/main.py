# Bootstraps the FastAPI app: middlewares for logging and metrics, the
# domain error handler, and the affiliate routers.

import os

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

import affiliate_engine.models  # noqa: F401
from affiliate_engine.api.admin_affiliates import router as admin_affiliates_router
from affiliate_engine.api.affiliates import router as affiliates_router
from affiliate_engine.api.payouts import router as payouts_router
from affiliate_engine.api.promo_codes import router as promo_codes_router
from affiliate_engine.core.db import Base, engine
from affiliate_engine.core.errors import AffiliateError
from affiliate_engine.core.logging import APILoggingMiddleware, configure_logging
from affiliate_engine.core.metrics import MetricsMiddleware


configure_logging()

# Tests and local runs without Alembic get the schema created directly.
if os.getenv("SKIP_MIGRATIONS") != "1":
    Base.metadata.create_all(bind=engine)

app = FastAPI(title="Affiliate Engine")


@app.exception_handler(AffiliateError)
def handle_affiliate_error(_request, exc: AffiliateError):
    response = JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    response.headers["X-Error-Code"] = exc.code
    return response


app.add_middleware(APILoggingMiddleware)
app.add_middleware(MetricsMiddleware)

app.include_router(affiliates_router)
app.include_router(admin_affiliates_router)
app.include_router(promo_codes_router)
app.include_router(payouts_router)


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/ping")
def ping():
    return {"message": "pong"}
