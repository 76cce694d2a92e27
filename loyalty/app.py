from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from loyalty import services
from loyalty.config import get_settings
from loyalty.db import get_session, init_db
from loyalty.errors import MaintenanceBusy, NotFound, OperationFailed, ValidationError
from loyalty.gateway import SqlEntityStore
from loyalty.metadata import MetadataFetchError, fetch_metadata
from loyalty.schemas import (
    AggregatedScoreOut,
    ClaimCreate,
    ClaimOut,
    ClaimRespond,
    DiagnosisOut,
    MetadataOut,
    MetricOut,
    MigrationOut,
    MigrationPreviewOut,
    RatingOut,
    RatingSubmit,
    RepairOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Loyalty",
    version="0.1.0",
    description=(
        "Rating aggregation and referential-integrity maintenance for Loyalty groups. "
        "Diagnose, migrate and repair legacy rating targets, and compute per-object scores."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Maintenance", "description": "Diagnose, migrate and repair rating targets."},
        {"name": "Scores", "description": "Aggregated scores and applicable metrics."},
        {"name": "Ratings", "description": "Submit or update a rating."},
        {"name": "Claims", "description": "Claim workflow for user-type objects."},
        {"name": "Metadata", "description": "Link preview metadata for link objects."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & error envelopes
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def entity_store(session: Session = Depends(db_session)) -> SqlEntityStore:
    return SqlEntityStore(session)


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse({"error": "Invalid request", "details": str(exc)}, status_code=400)


@app.exception_handler(NotFound)
async def _not_found(request: Request, exc: NotFound):
    return JSONResponse({"error": f"{exc.label} not found", "details": str(exc)}, status_code=404)


@app.exception_handler(MaintenanceBusy)
async def _busy(request: Request, exc: MaintenanceBusy):
    return JSONResponse({"error": "Maintenance in progress", "details": str(exc)}, status_code=409)


@app.exception_handler(OperationFailed)
async def _operation_failed(request: Request, exc: OperationFailed):
    log.error("%s: %s", exc.label, exc)
    return JSONResponse(services.failure_payload(exc), status_code=500)


# ---------------------------------------------------------------------------
# Routes: Maintenance
# ---------------------------------------------------------------------------


@app.get("/api/diagnose-ratings", response_model=DiagnosisOut,
         tags=["Maintenance"], summary="Classify ratings as valid, orphaned or placeholder-bound")
async def diagnose_ratings(
    group_id: str | None = Query(None, alias="groupId", description="Limit the report to one group"),
    store: SqlEntityStore = Depends(entity_store),
):
    return services.diagnose(store, group_id)


@app.get("/api/migrate-objects", response_model=MigrationPreviewOut,
         tags=["Maintenance"], summary="Preview which placeholder members a migration would convert")
async def preview_migrate_objects(store: SqlEntityStore = Depends(entity_store)):
    return services.migration_preview(store)


@app.post("/api/migrate-objects", response_model=MigrationOut,
          tags=["Maintenance"], summary="Convert placeholder members into objects (not idempotent)")
async def migrate_objects(store: SqlEntityStore = Depends(entity_store)):
    return services.run_migration(store)


@app.get("/api/fix-ratings", tags=["Maintenance"], summary="Usage for the repair endpoint")
async def fix_ratings_usage():
    return {"message": services.FIX_RATINGS_USAGE}


@app.post("/api/fix-ratings", response_model=RepairOut,
          tags=["Maintenance"], summary="Re-target ratings by matching placeholder names to objects")
async def fix_ratings(store: SqlEntityStore = Depends(entity_store)):
    return services.run_repair(store)


# ---------------------------------------------------------------------------
# Routes: Scores
# ---------------------------------------------------------------------------


@app.get("/api/groups/{group_id}/scores", response_model=list[AggregatedScoreOut],
         tags=["Scores"], summary="Aggregated score per (object, metric) with at least one rating")
async def get_group_scores(
    group_id: str,
    captain_id: str | None = Query(None, alias="captainId", description="The group captain's identity"),
    store: SqlEntityStore = Depends(entity_store),
):
    return services.group_scores(store, group_id, captain_id)


@app.get("/api/groups/{group_id}/objects/{object_id}/metrics", response_model=list[MetricOut],
         tags=["Scores"], summary="Metrics that apply to an object")
async def get_object_metrics(group_id: str, object_id: str, store: SqlEntityStore = Depends(entity_store)):
    return services.applicable_metrics(store, group_id, object_id)


# ---------------------------------------------------------------------------
# Routes: Ratings & Claims
# ---------------------------------------------------------------------------


@app.post("/api/ratings", response_model=RatingOut,
          tags=["Ratings"], summary="Submit a rating, or update the rater's existing one")
async def post_rating(body: RatingSubmit, store: SqlEntityStore = Depends(entity_store)):
    return services.submit_rating(
        store, group_id=body.group_id, metric_id=body.metric_id, rater_id=body.rater_id,
        target_object_id=body.target_object_id, value=body.value,
    )


@app.post("/api/objects/{object_id}/claims", response_model=ClaimOut, status_code=201,
          tags=["Claims"], summary="Request to claim a user-type object")
async def create_claim(object_id: str, body: ClaimCreate, store: SqlEntityStore = Depends(entity_store)):
    return services.request_claim(store, object_id, body.claimant_id)


@app.post("/api/claims/{request_id}/respond", response_model=ClaimOut,
          tags=["Claims"], summary="Approve or reject a pending claim request")
async def respond_claim(request_id: str, body: ClaimRespond, store: SqlEntityStore = Depends(entity_store)):
    return services.respond_to_claim(
        store, request_id, approve=body.approve,
        claimant_name=body.claimant_name, claimant_image_url=body.claimant_image_url,
    )


# ---------------------------------------------------------------------------
# Routes: Metadata
# ---------------------------------------------------------------------------


@app.get("/api/fetch-metadata", response_model=MetadataOut,
         tags=["Metadata"], summary="Fetch title, description and image for a URL")
async def get_metadata(url: str | None = Query(None)):
    try:
        return await fetch_metadata(url)
    except MetadataFetchError as exc:
        return JSONResponse({"error": "Failed to fetch URL", "details": str(exc)}, status_code=400)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    settings = get_settings()
    uvicorn.run("loyalty.app:app", host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
