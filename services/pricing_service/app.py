# CREATE FILE: services/pricing_service/app.py

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
import os

from services.order_service.identifiers import generate_tracking_number
from services.routing_service.route_estimator import estimate_route, get_store_coordinates
from services.tax_service.tax import TaxAddress
from .pricing import FareComposer, FareRequest, BoxSize

app = FastAPI(title="Pricing Service", version="1.0.0")

# Initialize fare composer (tax oracle picked from USE_REAL_STRIPE)
fare_composer = FareComposer()


class AddressModel(BaseModel):
    line1: str
    line2: Optional[str] = None
    city: str
    state: str = Field(..., min_length=2, max_length=2)
    postal_code: str
    country: str = "US"


class RouteRequest(BaseModel):
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    store_lat: Optional[float] = Field(None, ge=-90, le=90)
    store_lng: Optional[float] = Field(None, ge=-180, le=180)
    retailer: Optional[str] = Field(None, description="Store name used when store coordinates are omitted")


class RouteResponse(BaseModel):
    distance_miles: float
    estimated_minutes: int
    time_cap_minutes: int


class QuoteRequest(BaseModel):
    address: AddressModel
    route: Optional[RouteRequest] = None
    distance_miles: Optional[float] = Field(None, ge=0, description="Known distance, skips route estimation")
    billable_minutes: Optional[float] = Field(None, ge=0, description="Defaults to the route estimate")
    box_size: str = Field("M", description="S, M, L or XL")
    number_of_boxes: int = Field(1, ge=1)
    tip: float = Field(0.0, ge=0)
    is_donation: bool = False
    is_rush: bool = False
    requested_at: Optional[datetime] = None


class QuoteResponse(BaseModel):
    route: Optional[RouteResponse]
    driver_earnings: Dict[str, float]
    company_revenue: Dict[str, float]
    customer_payment: Dict[str, float]
    tax: Dict[str, Any]
    metadata: Dict[str, Any]


def _request_time() -> datetime:
    return datetime.now()


def _route_estimate(route: RouteRequest):
    if route.store_lat is not None and route.store_lng is not None:
        store_lat, store_lng = route.store_lat, route.store_lng
    else:
        store_lat, store_lng = get_store_coordinates(route.retailer or "")

    return estimate_route(route.pickup_lat, route.pickup_lng, store_lat, store_lng)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"ok": True}


@app.post("/route_estimate", response_model=RouteResponse)
async def route_estimate(request: RouteRequest):
    """Estimate road distance, time and time cap between pickup and store"""
    return RouteResponse(**_route_estimate(request).to_dict())


@app.post("/quote", response_model=QuoteResponse)
async def quote(request: QuoteRequest):
    """
    Quote a pickup.

    Returns the three-way ledger:
    - Driver earnings (base, distance, time, size bonus, tip)
    - Company revenue (service, distance and time fees)
    - Customer payment (subtotal, tax, tip)
    """
    try:
        route = _route_estimate(request.route) if request.route else None

        if request.distance_miles is not None:
            distance_miles = request.distance_miles
        elif route is not None:
            distance_miles = route.distance_miles
        else:
            raise HTTPException(status_code=400, detail="Either route or distance_miles is required")

        if request.billable_minutes is not None:
            billable_minutes = request.billable_minutes
        elif route is not None:
            billable_minutes = route.estimated_minutes
        else:
            raise HTTPException(status_code=400, detail="billable_minutes is required without a route")

        fare_request = FareRequest(
            distance_miles=distance_miles,
            billable_minutes=billable_minutes,
            box_size=BoxSize.parse(request.box_size),
            tip=request.tip,
            is_donation=request.is_donation,
            is_rush=request.is_rush,
            number_of_boxes=request.number_of_boxes,
            # Quotes without a booking time are priced for the moment they are requested
            requested_at=request.requested_at or _request_time()
        )
        address = TaxAddress(**request.address.model_dump())

        ledger = await fare_composer.compose(fare_request, address)

        return QuoteResponse(
            route=RouteResponse(**route.to_dict()) if route else None,
            **ledger.to_dict()
        )

    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid input: {str(e)}")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Quote calculation failed: {str(e)}")


@app.post("/tracking_number")
async def tracking_number():
    """Generate a tracking number (uniqueness is checked when the label is stored)"""
    return {"tracking_number": generate_tracking_number()}


@app.get("/config")
async def get_pricing_config():
    """Get current rate table"""
    return fare_composer.config


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8001"))
    uvicorn.run(app, host="0.0.0.0", port=port)
