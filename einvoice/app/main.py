import sys
import logging
import httpx

from contextlib import asynccontextmanager
from importlib.metadata import version, PackageNotFoundError
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from einvoice.app.api.routes import router as submission_router
from einvoice.app.core.config import get_settings
from einvoice.app.core.wiring import SubmissionServices, build_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

logger = logging.getLogger("einvoice.main")


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the declared version when running from source.
    """
    try:
        return version("einvoice")
    except PackageNotFoundError:
        return "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Guarantees:
    - Fail-fast startup if configuration is invalid
    - One shared HTTP transport and one CredentialManager per process
    - Optional credential self-test before accepting traffic
    """
    if getattr(app.state, "services", None) is not None:
        # Pre-built services (tests) are owned by the caller
        yield
        return

    logger.info(
        "einvoice_startup_begin",
        extra={"service": "einvoice", "version": get_app_version()},
    )

    # ------------------------------------------------------------------
    # Load and validate configuration (FAIL FAST)
    # ------------------------------------------------------------------
    try:
        settings = get_settings()
    except Exception:
        logger.exception("invalid_einvoice_configuration")
        raise

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=settings.request_timeout_seconds,
            connect=10.0,
        ),
        limits=httpx.Limits(
            max_keepalive_connections=20,
            max_connections=50,
        ),
        headers={"User-Agent": f"einvoice/{get_app_version()}"},
    )

    try:
        services = build_services(settings, http_client)
    except Exception:
        logger.exception("submission_services_wiring_failed")
        await http_client.aclose()
        raise

    app.state.services = services

    # ------------------------------------------------------------------
    # Credential self-test
    # ------------------------------------------------------------------
    if settings.verify_credentials_on_startup:
        try:
            probe = await services.credentials.probe()
        except Exception:
            logger.exception(
                "intake_authentication_failed",
                extra={"token_url": settings.token_url},
            )
            await http_client.aclose()
            raise

        logger.info(
            "intake_authentication_verified",
            extra={"token_url": probe.endpoint, "expires_in": probe.expires_in},
        )

    try:
        yield
    finally:
        logger.info("einvoice_shutdown_begin")
        await services.aclose()
        await http_client.aclose()
        app.state.services = None


def create_app(services: Optional[SubmissionServices] = None) -> FastAPI:
    """
    Application factory for the e-Invoice submission service.

    Passing `services` skips settings loading and transport creation.
    """
    app = FastAPI(
        title="e-Invoice Submission Service",
        description=(
            "Submits finalized invoices to the document intake service "
            "and reports one outcome per invoice."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.services = services

    app.include_router(submission_router)

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness and readiness probe",
    )
    async def health_check():
        """
        Verifies that the runtime is alive and initialized.

        Does NOT call the intake service.
        """
        current = app.state.services
        return ORJSONResponse(
            content={
                "status": "ok",
                "service": "einvoice",
                "version": app.version,
                "runtime": f"python {sys.version.split()[0]}",
                "credential_expires_at": (
                    current.credentials.expires_at if current else None
                ),
            }
        )

    return app


app = create_app()
