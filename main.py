# 📦 main.py

from fastapi import FastAPI
from prometheus_client import start_http_server
import structlog
import uvicorn

from api.handlers import router as api_router
from api.handlers import register_error_handlers
from config import Settings, get_settings
from engine.geocoder import CredentialTokenProvider, Geocoder, StaticTokenProvider
from engine.pairing import PairingEngine
from services.geocoding_service import GeocodingService
from services.pairing_service import PairingService
from utils.memory_store import EntityStore, InMemoryStore

log = structlog.get_logger()


# ─────────────────────────────
# Wiring

def build_store(settings: Settings) -> EntityStore:
    if settings.store_backend == "supabase":
        from supabase_client import get_supabase
        from utils.supabase_utils import SupabaseStore

        return SupabaseStore(
            get_supabase(),
            tables={"therapist": settings.therapists_table, "client": settings.clients_table},
        )
    if settings.store_backend != "memory":
        raise ValueError(f"Unknown store backend: {settings.store_backend}")
    log.warning("Using in-memory entity store; data is lost on restart")
    return InMemoryStore()


def build_geocoder(settings: Settings, credential=None) -> Geocoder:
    """credential: any object with get_token(scope), e.g. an azure-identity credential."""
    if credential is not None:
        token_provider = CredentialTokenProvider(credential, scopes=settings.geocode_scopes)
    else:
        token_provider = StaticTokenProvider(settings.maps_token or "")

    log.info(
        "Geocoder configuration",
        maps_client_id="set" if settings.maps_client_id else "missing",
        token_source="credential" if credential is not None else "static",
    )
    return Geocoder(
        token_provider,
        settings.maps_client_id,
        endpoint=settings.geocode_endpoint,
        api_version=settings.geocode_api_version,
        country=settings.geocode_country,
        timeout_s=settings.geocode_timeout_s,
        max_retries=settings.geocode_max_retries,
        base_delay_ms=settings.geocode_base_delay_ms,
        jitter_ms=settings.geocode_jitter_ms,
    )


def create_app(
    settings: Settings | None = None,
    store: EntityStore | None = None,
    geocoder: Geocoder | None = None,
    credential=None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store or build_store(settings)
    geocoder = geocoder or build_geocoder(settings, credential)

    geocoding_service = GeocodingService(geocoder, fallback_to_mock=settings.geocode_fallback_to_mock)
    engine = PairingEngine(
        store,
        geocoding_service,
        default_limit=settings.default_nearest_limit,
        max_limit=settings.max_nearest_limit,
    )

    app = FastAPI(title=settings.app_name, version=settings.version)
    app.state.settings = settings
    app.state.geocoding_service = geocoding_service
    app.state.pairing_service = PairingService(engine, geocoding_service, geocode_on_create=settings.geocode_on_create)
    app.include_router(api_router)
    register_error_handlers(app)

    # ─────────────────────────────
    # Startup event
    @app.on_event("startup")
    async def startup_event():
        if settings.prometheus_port:
            start_http_server(settings.prometheus_port)
            log.info("Prometheus metrics server started", port=settings.prometheus_port)
        if settings.geocode_fallback_to_mock:
            log.warning("Geocoding mock fallback is enabled; failed lookups return fabricated coordinates")

    return app


app = create_app()

# ─────────────────────────────
# Main entrypoint
if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
    )
