from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
import structlog

from engine.errors import (
    ConflictError,
    GeocodingError,
    NotFoundError,
    TransientInfrastructureError,
    ValidationError,
)
from schemas.schemas import (
    ClientCreate,
    ClientListResponse,
    ClientResponse,
    ClientUpdate,
    ConsistencyResponse,
    Coordinates,
    ErrorResponse,
    GeocodeCacheStats,
    GeocodeRequest,
    HealthCheckResponse,
    NearestResponse,
    PairingResponse,
    PairRequest,
    TherapistCreate,
    TherapistListResponse,
    TherapistResponse,
    TherapistUpdate,
    UnpairRequest,
)
from services.geocoding_service import GeocodingService
from services.pairing_service import PairingService

log = structlog.get_logger()

router = APIRouter()

ERROR_RESPONSES = {
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}

GEOCODING_STATUS = {
    GeocodingError.NOT_FOUND: 404,
    GeocodingError.AUTH_FAILED: 503,
    GeocodingError.RATE_LIMITED: 429,
    GeocodingError.BAD_REQUEST: 400,
}


def get_pairing_service(request: Request) -> PairingService:
    return request.app.state.pairing_service


def get_geocoding_service(request: Request) -> GeocodingService:
    return request.app.state.geocoding_service


def error_response(status_code: int, message: str, info=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(status="error", message=message, info=info).model_dump(),
    )


# ─────────────────────────────
# Error mapping

def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return error_response(404, exc.message, {"entity": exc.entity, "id": exc.entity_id})

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return error_response(409, exc.message, exc.to_info())

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return error_response(422, exc.message)

    @app.exception_handler(GeocodingError)
    async def geocoding_handler(request: Request, exc: GeocodingError):
        status_code = GEOCODING_STATUS.get(exc.reason, 502)
        log.warning("Geocoding error returned to caller", reason=exc.reason, status_code=status_code)
        return error_response(status_code, exc.message, exc.to_info())

    @app.exception_handler(TransientInfrastructureError)
    async def infrastructure_handler(request: Request, exc: TransientInfrastructureError):
        log.error("Store unavailable", error=exc.message)
        return error_response(503, "Service temporarily unavailable", exc.message)


# ─────────────────────────────
# Health

@router.get("/", response_model=HealthCheckResponse)
async def healthcheck(request: Request):
    return HealthCheckResponse(
        status="ok",
        message="OpenFielder pairing service live",
        version=request.app.version,
    )


# ─────────────────────────────
# Therapists

@router.get("/therapists", response_model=TherapistListResponse)
async def list_therapists(service: PairingService = Depends(get_pairing_service)):
    return TherapistListResponse(status="success", data=await service.list_therapists())


@router.post("/therapists", response_model=TherapistResponse, status_code=201, responses=ERROR_RESPONSES)
async def create_therapist(body: TherapistCreate, service: PairingService = Depends(get_pairing_service)):
    return TherapistResponse(status="success", data=await service.create_therapist(body))


@router.get("/therapists/{therapist_id}", response_model=TherapistResponse, responses=ERROR_RESPONSES)
async def get_therapist(therapist_id: str, service: PairingService = Depends(get_pairing_service)):
    return TherapistResponse(status="success", data=await service.get_therapist(therapist_id))


@router.patch("/therapists/{therapist_id}", response_model=TherapistResponse, responses=ERROR_RESPONSES)
async def update_therapist(therapist_id: str, body: TherapistUpdate, service: PairingService = Depends(get_pairing_service)):
    return TherapistResponse(status="success", data=await service.update_therapist(therapist_id, body))


@router.delete("/therapists/{therapist_id}", status_code=204, responses=ERROR_RESPONSES)
async def delete_therapist(therapist_id: str, service: PairingService = Depends(get_pairing_service)):
    await service.delete_therapist(therapist_id)


# ─────────────────────────────
# Clients

@router.get("/clients", response_model=ClientListResponse)
async def list_clients(service: PairingService = Depends(get_pairing_service)):
    return ClientListResponse(status="success", data=await service.list_clients())


@router.post("/clients", response_model=ClientResponse, status_code=201, responses=ERROR_RESPONSES)
async def create_client(body: ClientCreate, service: PairingService = Depends(get_pairing_service)):
    return ClientResponse(status="success", data=await service.create_client(body))


@router.get("/clients/{client_id}", response_model=ClientResponse, responses=ERROR_RESPONSES)
async def get_client(client_id: str, service: PairingService = Depends(get_pairing_service)):
    return ClientResponse(status="success", data=await service.get_client(client_id))


@router.patch("/clients/{client_id}", response_model=ClientResponse, responses=ERROR_RESPONSES)
async def update_client(client_id: str, body: ClientUpdate, service: PairingService = Depends(get_pairing_service)):
    return ClientResponse(status="success", data=await service.update_client(client_id, body))


@router.delete("/clients/{client_id}", status_code=204, responses=ERROR_RESPONSES)
async def delete_client(client_id: str, service: PairingService = Depends(get_pairing_service)):
    await service.delete_client(client_id)


# ─────────────────────────────
# Pairing

@router.get("/pairing/nearest/{client_id}", response_model=NearestResponse, responses=ERROR_RESPONSES)
async def nearest_therapists(
    client_id: str,
    limit: int | None = Query(None, ge=1),
    service: PairingService = Depends(get_pairing_service),
):
    matches = await service.find_nearest(client_id, limit)
    log.info("Nearest therapists served", client_id=client_id, count=len(matches))
    return NearestResponse(status="success", data=matches)


@router.post("/pairing/pair", response_model=PairingResponse, responses=ERROR_RESPONSES)
async def pair(body: PairRequest, service: PairingService = Depends(get_pairing_service)):
    await service.pair(body.therapist_id, body.client_id)
    return PairingResponse(
        status="success",
        message="Successfully paired therapist with client",
        therapist_id=body.therapist_id,
        client_id=body.client_id,
    )


@router.post("/pairing/unpair", response_model=PairingResponse, responses=ERROR_RESPONSES)
async def unpair(body: UnpairRequest, service: PairingService = Depends(get_pairing_service)):
    await service.unpair(therapist_id=body.therapist_id, client_id=body.client_id)
    return PairingResponse(
        status="success",
        message="Successfully unpaired",
        therapist_id=body.therapist_id,
        client_id=body.client_id,
    )


@router.get("/pairing/consistency/{therapist_id}", response_model=ConsistencyResponse, responses=ERROR_RESPONSES)
async def pairing_consistency(therapist_id: str, service: PairingService = Depends(get_pairing_service)):
    violations = await service.consistency(therapist_id)
    return ConsistencyResponse(
        status="ok" if not violations else "inconsistent",
        therapist_id=therapist_id,
        violations=violations,
    )


# ─────────────────────────────
# Geocoding

@router.post("/geocode", response_model=Coordinates, responses={**ERROR_RESPONSES, 400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}})
async def geocode(body: GeocodeRequest, service: GeocodingService = Depends(get_geocoding_service)):
    try:
        _, coordinates = await service.geocode_any(body.address)
    # A malformed address string is a bad request here (400), not the global 422
    except ValidationError as e:
        return error_response(400, e.message)
    return coordinates


@router.get("/geocode/cache", response_model=GeocodeCacheStats)
async def geocode_cache_stats(service: GeocodingService = Depends(get_geocoding_service)):
    return GeocodeCacheStats(**service.cache_stats())


@router.delete("/geocode/cache", status_code=204)
async def clear_geocode_cache(service: GeocodingService = Depends(get_geocoding_service)):
    service.clear_cache()
