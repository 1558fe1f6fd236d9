from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from typing import Any, Dict, List, Optional

from sector_agent.models.schemas import (
    ClassifyRequest,
    ClassifyResponse,
    CollectionStats,
    Coordinates,
    GeocodeRequest,
    RecordCreateRequest,
    ResolveReport,
    ResolvedTicket,
)
from sector_agent.services import dashboard_stats
from sector_agent.services.document_store import status_field_for
from sector_agent.services.registry import Services
from sector_agent.utils.helpers import filter_records, format_date_for_display, group_by_field, parse_french_date

router = APIRouter(prefix="/api/v1", tags=["Sector Agent"])

GROUPABLE_FIELDS = {"raisonSociale", "nomClient"}


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Services are not initialized.")
    return services


def _public_record(item: ResolvedTicket) -> Dict[str, Any]:
    record = item.record
    return {
        **record.data,
        "id": record.id,
        "collection": record.collection,
        status_field_for(record.collection): record.status_text,
        "coordinates": item.coordinates.model_dump() if item.coordinates else None,
        "zone": item.zone_name,
        "location_state": item.location_state.value,
        "date_display": format_date_for_display(parse_french_date(record.data.get("date"))),
    }


# --- Geocoding ---

@router.post("/geocode", response_model=ResolveReport)
async def geocode_addresses(request: GeocodeRequest, services: Services = Depends(get_services)):
    """Resolves a batch of addresses (cache first, provider on a miss)."""
    return await services.resolver.resolve_all(request.addresses)


# --- Zones ---

@router.get("/zones", response_model=List[str])
async def list_zones(services: Services = Depends(get_services)):
    """Lists sector zone names in matching order."""
    return services.zone_index.zone_names


@router.post("/zones/classify", response_model=ClassifyResponse)
async def classify_point(request: ClassifyRequest, services: Services = Depends(get_services)):
    if (request.latitude is None) != (request.longitude is None):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                            detail="Provide both latitude and longitude, or neither.")
    coordinates = None
    if request.latitude is not None:
        coordinates = Coordinates(latitude=request.latitude, longitude=request.longitude)
    return ClassifyResponse(zone_name=services.zone_index.classify(coordinates))


# --- Collections ---

@router.get("/collections/{collection}/records")
async def list_records(
    collection: str,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    sector: Optional[str] = None,
    search: Optional[str] = Query(default=None, description="Raison sociale substring"),
    code_client: Optional[str] = None,
    numero_sap: Optional[str] = None,
    group_by: Optional[str] = None,
    services: Services = Depends(get_services),
):
    """Enriched records of a collection; unresolved addresses are listed with location_state 'not_located'."""
    if group_by and group_by not in GROUPABLE_FIELDS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"group_by must be one of {sorted(GROUPABLE_FIELDS)}.")
    snapshot = await services.pipeline.current(collection)
    records = filter_records(snapshot.records, status=status_filter, sector=sector, raison_sociale=search,
                             code_client=code_client, numero_sap=numero_sap)
    warnings = [w.value for w in snapshot.warnings]
    if group_by:
        groups = group_by_field(records, group_by)
        return {
            "collection": collection,
            "groups": {key: [_public_record(item) for item in items] for key, items in groups.items()},
            "warnings": warnings,
        }
    return {"collection": collection, "records": [_public_record(item) for item in records], "warnings": warnings}


@router.get("/collections/{collection}/stats", response_model=CollectionStats)
async def collection_stats(collection: str, services: Services = Depends(get_services)):
    snapshot = await services.pipeline.current(collection)
    return CollectionStats(
        collection=collection,
        status_counts=dashboard_stats.status_counts(snapshot.records),
        zone_counts=dashboard_stats.zone_counts(snapshot.records, services.zone_index.zone_names),
    )


@router.get("/stats/sectors", response_model=Dict[str, int])
async def sector_stats(services: Services = Depends(get_services)):
    """Ticket counts per business sector across every ticket collection."""
    records = []
    for collection in sorted(services.pipeline.ticket_collections):
        records.extend((await services.pipeline.current(collection)).records)
    return dashboard_stats.sector_counts(records)


@router.post("/collections/{collection}/records", status_code=status.HTTP_201_CREATED)
async def create_record(collection: str, request: RecordCreateRequest, services: Services = Depends(get_services)):
    doc_id = await services.store.add_document(collection, request.data)
    return {"id": doc_id, "collection": collection}
