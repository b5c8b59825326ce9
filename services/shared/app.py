"""
Shared - the pieces every service app is built from

error handlers, request logging, Prometheus metrics, /health and /ready.
/health runs the Health Aggregator stored on app.state.health; /ready only
says the lifespan has finished starting up.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .log import install_request_logging
from .metrics import ServiceMetrics, install_metrics
from .responses import install_error_handlers


def build_service_app(title: str, service: str, lifespan, metrics: ServiceMetrics) -> FastAPI:
    app = FastAPI(title=title, lifespan=lifespan)
    app.state.started = False
    app.state.metrics = metrics
    install_error_handlers(app)
    install_request_logging(app, service)
    install_metrics(app, metrics)

    @app.get("/health")
    async def health(request: Request):
        report = await request.app.state.health.check()
        return JSONResponse(status_code=report.http_status, content=report.to_dict())

    @app.get("/ready")
    async def ready(request: Request):
        if not request.app.state.started:
            return JSONResponse(status_code=503, content={"status": "starting"})
        return {"status": "ready", "service": service}

    return app
