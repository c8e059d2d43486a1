from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from hierarchy_auth import __version__
from hierarchy_auth.core import config
from hierarchy_auth.core.database.engine import AsyncSessionLocal, engine, init_db
from hierarchy_auth.core.exceptions import (
    CircularDependencyError,
    ConcurrencyConflictError,
    HasChildrenError,
    HierarchyError,
    NotFoundError,
    RetryableError,
    ValidationError,
)
from hierarchy_auth.features.audit.sink import DatabaseAuditSink
from hierarchy_auth.features.hierarchy.routes import router as hierarchy_router
from hierarchy_auth.features.hierarchy.service import HierarchyService
from hierarchy_auth.features.hierarchy.store import SqlAlchemyHierarchyStore
from hierarchy_auth.features.permissions.cache import PermissionCache
from hierarchy_auth.features.permissions.dependencies import get_authorization_header
from hierarchy_auth.features.permissions.routes import router as permission_router
from hierarchy_auth.features.permissions.service import AuthorizationService
from hierarchy_auth.features.permissions.store import SqlAlchemyRoleStore
from hierarchy_auth.utils import get_logger


log = get_logger(__name__)


async def setup_services(
    app: FastAPI,
    bind: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Create tables, wire stores and services onto ``app.state`` and start the cache."""
    warn_on_default_secret()
    log.info("Initializing database...")
    await init_db(bind)
    log.info("Database initialized successfully")

    hierarchy_store = SqlAlchemyHierarchyStore(session_factory)
    role_store = SqlAlchemyRoleStore(session_factory)
    cache = PermissionCache(
        role_store,
        ttl=config.PERMISSION_CACHE_TTL_SECONDS,
        sweep_interval=config.PERMISSION_CACHE_SWEEP_SECONDS,
        maxsize=config.PERMISSION_CACHE_MAX_ENTRIES,
    )
    await cache.start()

    app.state.permission_cache = cache
    app.state.authorization_service = AuthorizationService(cache, hierarchy_store)
    app.state.hierarchy_service = HierarchyService(
        hierarchy_store,
        role_store,
        cache=cache,
        audit_sink=DatabaseAuditSink(session_factory),
    )


def warn_on_default_secret() -> bool:
    """Log a warning when tokens are signed with the built-in secret."""
    if config.JWT_SECRET == config.DEFAULT_JWT_SECRET:
        log.warning("JWT_SECRET is not set; bearer tokens use the insecure default secret")
        return True
    return False


async def teardown_services(app: FastAPI) -> None:
    cache = getattr(app.state, "permission_cache", None)
    if cache is not None:
        await cache.stop()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await setup_services(app, engine, AsyncSessionLocal)
    yield
    await teardown_services(app)
    await engine.dispose()


log.info("Initializing server")
app = FastAPI(
    title="Hierarchy Auth",
    description="Hierarchical path-based authorization for a five-level organization tree",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
limiter = Limiter(key_func=get_authorization_header)
app.state.limiter = limiter


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.hierarchy_auth.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


def status_for(exc: HierarchyError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (CircularDependencyError, HasChildrenError, ConcurrencyConflictError)):
        return 409
    if isinstance(exc, RetryableError):
        return 503
    return 400


@app.exception_handler(HierarchyError)
async def hierarchy_exception_handler(_request: Request, exc: HierarchyError):
    code = status_for(exc)
    log.info("Hierarchy error %s: %s", type(exc).__name__, exc.message)
    return JSONResponse(status_code=code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Hierarchy Auth API",
        "version": __version__,
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "protected_endpoints": ["/permissions/*", "/hierarchy/*"],
            "public_endpoints": ["/", "/health"]
        },
        "features": {
            "hierarchy": "Five-level organization tree with materialized paths and subtree moves",
            "permissions": "Scope-qualified RBAC resolved against hierarchy paths, with a TTL cache",
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Hierarchy routes
app.include_router(hierarchy_router, prefix="/hierarchy", tags=["hierarchy"])

# Permission routes
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
