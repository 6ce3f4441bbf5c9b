from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class CheckoutIn(BaseModel):
    purchase_type: Optional[str] = Field(default=None, description="wallet_topup|pass|ticket")
    amount: Optional[int] = None
    route_id: Optional[str] = None
    station_id: Optional[str] = None
    bus_id: Optional[str] = None


class CheckoutOut(BaseModel):
    payment_id: str
    checkout_url: str
    session_id: str
    status: str
    reused: bool


class PaymentOut(BaseModel):
    id: str
    purchase_type: str
    amount: int
    status: str
    checkout_url: str
    external_session_id: str
    route_id: Optional[str] = None
    station_id: Optional[str] = None
    bus_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    settled_at: Optional[datetime] = None


class PaymentsListOut(BaseModel):
    payments: List[PaymentOut]


class WalletEntryOut(BaseModel):
    id: str
    direction: str
    amount: int
    amount_signed: int
    reason: str
    related_id: Optional[str] = None
    balance_after: int
    created_at: datetime


class WalletOut(BaseModel):
    balance: int
    entries: List[WalletEntryOut]


class FareBreakdownOut(BaseModel):
    original_fare: int
    discount_amount: int
    discount_percentage: int
    final_fare: int
    concession_type: str


class DistanceEstimateOut(BaseModel):
    distance_km: float
    duration_min: int
    method: str


class FareQuoteOut(BaseModel):
    distance_km: float
    fare: FareBreakdownOut
    estimate: Optional[DistanceEstimateOut] = None


class RideStartIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    route_id: Optional[str] = None
    bus_id: Optional[str] = None
    start_station: Optional[str] = Field(default=None, max_length=128)


class RideEndIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    end_station: Optional[str] = Field(default=None, max_length=128)


class RideOut(BaseModel):
    id: str
    kind: str
    status: str
    route_id: Optional[str] = None
    bus_id: Optional[str] = None
    start_station: Optional[str] = None
    end_station: Optional[str] = None
    start_lat: float
    start_lng: float
    end_lat: Optional[float] = None
    end_lng: Optional[float] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    distance_km: Optional[float] = None
    duration_min: Optional[int] = None
    calculation_method: Optional[str] = None
    concession_type: Optional[str] = None
    original_fare: Optional[int] = None
    discount_amount: Optional[int] = None
    discount_percentage: Optional[int] = None
    final_fare: Optional[int] = None
    payment_status: str


class DeductionOut(BaseModel):
    status: str  # success|insufficient_funds|error
    message: str


class RideEndOut(BaseModel):
    ride: RideOut
    deduction: DeductionOut


class RidesListOut(BaseModel):
    rides: List[RideOut]
    total: int
    page: int
    total_pages: int


class TicketOut(BaseModel):
    id: str
    route_id: str
    bus_id: str
    start_station: str
    end_station: str
    price: int
    status: str
    usage_count: int
    max_usage: int
    expiry_date: datetime
    last_used: Optional[datetime] = None
    payment_status: str
    is_valid: bool


class TicketsListOut(BaseModel):
    tickets: List[TicketOut]


class PassOut(BaseModel):
    id: str
    route_id: str
    fare: int
    purchase_date: datetime
    expiry_date: datetime
    is_valid: bool


class PassesListOut(BaseModel):
    passes: List[PassOut]


class PassUsageIn(BaseModel):
    pass_id: str
    location: Optional[str] = Field(default=None, max_length=256)


class PassUsageOut(BaseModel):
    id: str
    pass_id: str
    location: Optional[str] = None
    scanned_at: datetime


class RouteIn(BaseModel):
    start: str = Field(min_length=1, max_length=128)
    end: str = Field(min_length=1, max_length=128)


class RouteOut(BaseModel):
    id: str
    start: str
    end: str


class BusIn(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    route_id: str
    capacity: int = Field(default=40, ge=1)


class BusOut(BaseModel):
    id: str
    name: str
    route_id: str
    capacity: int


class StationIn(BaseModel):
    route_id: str
    bus_id: str
    name: str = Field(min_length=1, max_length=128)
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    fare: int = Field(ge=0)


class StationOut(BaseModel):
    id: str
    route_id: str
    bus_id: str
    name: str
    lat: float
    lon: float
    fare: int


class ConcessionIn(BaseModel):
    concession_type: str
