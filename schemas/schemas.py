# 📦 /schemas/schemas.py

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────
# Location

class Address(BaseModel):
    street1: str = Field(min_length=1)
    street2: Optional[str] = None
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    zip_code: str = Field(min_length=1, alias="zipCode")

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    def street_line(self) -> str:
        """Street lines joined the way the upstream provider expects them."""
        return " ".join(p for p in (self.street1, self.street2) if p and p.strip())

    def query_string(self) -> str:
        parts = [self.street1, self.street2, self.city, self.state, self.zip_code]
        return ", ".join(p.strip() for p in parts if p and p.strip())


class Coordinates(BaseModel):
    latitude: float = Field(ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(ge=-180, le=180, allow_inf_nan=False)


# ─────────────────────────────
# Entities

class Priority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class ClientStatus(str, Enum):
    active = "active"
    paired = "paired"
    inactive = "inactive"


class Therapist(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Address
    availability: str = ""
    notes: Optional[str] = None
    specializations: List[str] = []
    is_paired: bool = False
    client_id: Optional[str] = None
    date_created: datetime = Field(default_factory=utcnow)
    date_modified: datetime = Field(default_factory=utcnow)


class Client(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Address
    needs_assessment: Optional[str] = None
    priority: Priority = Priority.medium
    status: ClientStatus = ClientStatus.active
    therapist_id: Optional[str] = None
    date_created: datetime = Field(default_factory=utcnow)
    date_modified: datetime = Field(default_factory=utcnow)


class TherapistCreate(BaseModel):
    name: str = Field(min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Address
    availability: str = ""
    notes: Optional[str] = None
    specializations: List[str] = []


class ClientCreate(BaseModel):
    name: str = Field(min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Address
    needs_assessment: Optional[str] = None
    priority: Priority = Priority.medium


class TherapistUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    availability: Optional[str] = None
    notes: Optional[str] = None
    specializations: Optional[List[str]] = None


class ClientUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    needs_assessment: Optional[str] = None
    priority: Optional[Priority] = None
    status: Optional[ClientStatus] = None


# ─────────────────────────────
# Pairing

class NearestTherapist(BaseModel):
    therapist_id: str
    distance_km: float
    therapist_name: str
    client_name: str


class NearestResponse(BaseModel):
    status: str
    data: List[NearestTherapist]


class PairRequest(BaseModel):
    therapist_id: str = Field(alias="therapistId")
    client_id: str = Field(alias="clientId")

    model_config = ConfigDict(populate_by_name=True)


class UnpairRequest(BaseModel):
    therapist_id: Optional[str] = Field(None, alias="therapistId")
    client_id: Optional[str] = Field(None, alias="clientId")

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def one_side_required(self):
        if not self.therapist_id and not self.client_id:
            raise ValueError("therapistId or clientId is required")
        return self


class PairingResponse(BaseModel):
    status: str
    message: str
    therapist_id: Optional[str] = None
    client_id: Optional[str] = None


class ConsistencyResponse(BaseModel):
    status: str
    therapist_id: str
    violations: List[str]


# ─────────────────────────────
# Geocoding

class GeocodeRequest(BaseModel):
    address: Union[Address, str]


class GeocodeCacheStats(BaseModel):
    size: int
    keys: List[str]


# ─────────────────────────────
# Generic responses

class TherapistResponse(BaseModel):
    status: str
    data: Therapist


class TherapistListResponse(BaseModel):
    status: str
    data: List[Therapist]


class ClientResponse(BaseModel):
    status: str
    data: Client


class ClientListResponse(BaseModel):
    status: str
    data: List[Client]


class HealthCheckResponse(BaseModel):
    status: str
    message: str
    version: str


class ErrorResponse(BaseModel):
    status: str
    message: str
    info: Optional[str | dict] = None
