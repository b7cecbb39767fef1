"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi

from app.core.config import settings
from app.core.database import async_session_maker, init_db
from app.core.logging import setup_logging
from app.core.middleware import CorrelationIdMiddleware, RequestLoggingMiddleware
from app.modules.billing import router as billing_router
from app.modules.billing.plans import PlanCatalog


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Local development creates the schema; deployments run Alembic
    if settings.DEBUG:
        await init_db()
        async with async_session_maker() as session:
            await PlanCatalog(session).seed_plans()
    yield


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Subscription & Usage Metering API

Plans, usage limits and Stripe subscription state for the productivity app.

### Authentication

All endpoints except `/health`, `/billing/plans` and `/billing/webhook`
require the bearer token issued by the auth provider.

```
Authorization: Bearer <access_token>
```
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "health",
            "description": "Health check endpoints",
        },
        {
            "name": "billing",
            "description": "Plans, usage limits, checkout and Stripe webhooks",
        },
    ],
)

# Set up logging with correlation IDs
setup_logging(
    level="INFO" if not settings.DEBUG else "DEBUG",
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware, log_request_body=False)
app.add_middleware(CorrelationIdMiddleware)


def custom_openapi() -> dict:
    """Generate custom OpenAPI schema."""
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
        tags=app.openapi_tags,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "BearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "Access token from the auth provider",
        },
    }

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(billing_router, prefix=settings.API_V1_PREFIX)
