import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.middleware.base import BaseHTTPMiddleware

from authcore.api.v1 import auth
from authcore.config import Settings, load_settings
from authcore.core.errors import AuthError
from authcore.core.rate_limit import CounterBackend, RateLimitGuard, create_counter_backend, get_client_ip
from authcore.db.session import create_session_maker, init_db
from authcore.services.auth import AuthService
from authcore.services.crypto import EncryptionEngine
from authcore.services.email import EmailService
from authcore.services.tokens import TokenService

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("authcore").setLevel(logging.INFO if settings.is_production else logging.DEBUG)


def _error_body(status_code: int, message: str, stack: str | None = None) -> dict:
    body = {"error": True, "code": status_code, "message": message}
    if stack is not None:
        body["stack"] = stack
    return body


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        status_code, message = exc.status_code, exc.message
        if not exc.is_operational:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
            if settings.is_production:
                status_code, message = 500, "Internal Server Error"
        else:
            logger.info("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.kind.value)
        return JSONResponse(status_code=status_code, content=_error_body(status_code, message), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg', 'Invalid input')}" if field else "Invalid input"
        return JSONResponse(status_code=422, content=_error_body(422, message))

    @app.exception_handler(IntegrityError)
    async def handle_integrity_error(request: Request, exc: IntegrityError):
        logger.warning("IntegrityError on %s %s: %s", request.method, request.url.path, exc.orig)
        return JSONResponse(status_code=409, content=_error_body(409, "A record with this value already exists."))

    @app.exception_handler(RateLimitExceeded)
    def handle_api_rate_limit(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content=_error_body(429, "Too many requests, please try again later."),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        if settings.is_production:
            return JSONResponse(status_code=500, content=_error_body(500, "Internal Server Error"))
        return JSONResponse(
            status_code=500,
            content=_error_body(500, f"{type(exc).__name__}: {exc}", stack=repr(exc)),
        )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, enable_hsts: bool = False):
        super().__init__(app)
        self.enable_hsts = enable_hsts

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if self.enable_hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class TrustedProxyMiddleware(BaseHTTPMiddleware):
    """
    Resolve request.state.client_ip. X-Forwarded-For is honoured only when the peer is a
    trusted proxy (nearest untrusted hop wins); otherwise the socket peer is the client.
    """

    def __init__(self, app, trusted: set[str]):
        super().__init__(app)
        self.trusted = trusted

    async def dispatch(self, request, call_next):
        peer = request.client.host if request.client else None
        client_ip = peer
        if peer in self.trusted:
            hops = [h.strip() for h in request.headers.get("x-forwarded-for", "").split(",") if h.strip()]
            for hop in reversed(hops):
                if hop not in self.trusted:
                    client_ip = hop
                    break
        if client_ip:
            request.state.client_ip = client_ip
        return await call_next(request)


def create_app(
    settings: Settings | None = None,
    *,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    counter_backend: CounterBackend | None = None,
    email_service: EmailService | None = None,
) -> FastAPI:
    """
    Build the application with explicitly constructed collaborators.
    Missing or invalid configuration raises ConfigError here, before anything serves.
    """
    settings = settings or load_settings()
    configure_logging(settings)
    session_maker = session_maker or create_session_maker(settings)
    backend = counter_backend or create_counter_backend(settings)

    tokens = TokenService(settings, EncryptionEngine(settings.encryption_master_key, settings.encryption_kdf_iterations))
    auth_service = AuthService(settings, session_maker, tokens, email_service or EmailService(settings))
    guard = RateLimitGuard(backend, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(session_maker.kw["bind"])
        logger.info("Auth service started (env=%s)", settings.app_env)
        yield
        await guard.close()
        await session_maker.kw["bind"].dispose()

    app = FastAPI(
        title="PulseBoard Auth API",
        description="Signup, login, email verification, password reset and token rotation",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_maker = session_maker
    app.state.token_service = tokens
    app.state.auth_service = auth_service
    app.state.rate_limit_guard = guard

    limiter = Limiter(
        key_func=get_client_ip,
        default_limits=[settings.rate_limit_api_default],
        enabled=settings.rate_limit_api_enabled,
    )
    app.state.limiter = limiter
    register_exception_handlers(app, settings)
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.enable_hsts)
    app.add_middleware(TrustedProxyMiddleware, trusted=settings.trusted_proxies)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(auth.router, prefix="/api/v1")
    app.mount("/metrics", make_asgi_app())

    @app.get("/health")
    @limiter.exempt
    def health(request: Request):
        return {"status": "ok"}

    return app
