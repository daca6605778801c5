import logging
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from subtrack.app.billing import BillingError
from subtrack.app.routes.billing import router as billing_router
from subtrack.app.schemas.billing import error_envelope
from subtrack.app.services.billing import (
    BillingComponents,
    build_billing_components,
    start_consumers,
    stop_consumers,
)
from subtrack.config import BillingConfig, load_billing_config

logger = logging.getLogger("billing")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def create_app(
    config: Optional[BillingConfig] = None,
    components: Optional[BillingComponents] = None,
) -> FastAPI:
    """Build the billing API.

    ``components`` lets tests inject an engine wired to fakes; otherwise the
    store, gateway and bus are built from ``config``.
    """

    if components is None:
        config = config or load_billing_config()
        components = build_billing_components(config)
    config = components.config

    app = FastAPI(title="SubTrack Billing Service")
    app.state.billing = components

    @app.exception_handler(BillingError)
    async def handle_billing_error(request: Request, exc: BillingError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Billing request failed: %s", exc.message, extra={"code": exc.code})
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": dict(exc.payload)})

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_envelope("VALIDATION_ERROR", str(message)),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_envelope("INTERNAL_ERROR", "Internal server error"),
        )

    app.include_router(billing_router)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "service": config.service_name}

    @app.on_event("startup")
    def _start_consumers() -> None:
        start_consumers(components)

    @app.on_event("shutdown")
    def _stop_consumers() -> None:
        stop_consumers(components)

    return app


def main() -> None:  # pragma: no cover - process entry point
    load_dotenv()
    config = load_billing_config()
    configure_logging(config.log_level)
    uvicorn.run(create_app(config), host="0.0.0.0", port=8003)


if __name__ == "__main__":  # pragma: no cover
    main()
