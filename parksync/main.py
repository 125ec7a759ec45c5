from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from parksync.api.erp_connections import router as erp_connections_router
from parksync.api.integrations import router as integrations_router
from parksync.api.sync_runs import router as sync_runs_router
from parksync.logging import configure_logging
from parksync.telemetry import setup_otel

configure_logging()

app = FastAPI(title="parksync")
app.include_router(erp_connections_router)
app.include_router(integrations_router)
app.include_router(sync_runs_router)
setup_otel(app)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
