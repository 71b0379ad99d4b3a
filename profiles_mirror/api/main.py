#!/usr/bin/env python3
"""
Profiles Mirror API

Read, pin and search profiles. Payloads are resolved through the configured
content store; indexed records come from the profile table.
"""
import asyncio
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager

from fastapi import Body, Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
import psycopg2
import structlog

from profiles_mirror.indexer.cid import is_valid_content_id
from profiles_mirror.indexer.config import config
from profiles_mirror.indexer.errors import FetchError, PayloadValidationError, PinError
from profiles_mirror.indexer.resolver import OriginResolver, create_resolver
from profiles_mirror.indexer.store import ProfileRecord, ProfileStore

# Logging
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
    ]
)
log = structlog.get_logger()

store: Optional[ProfileStore] = None
resolver: Optional[OriginResolver] = None


def get_store() -> ProfileStore:
    """Get the shared profile store."""
    global store
    if store is None:
        store = ProfileStore(config.db_dsn, config.db_pool_size, config.search_max_results)
        store.connect()
    return store


def get_resolver() -> OriginResolver:
    """Get the content store resolver."""
    global resolver
    if resolver is None:
        resolver = create_resolver(config.validate())
    return resolver


# ============================================================================
# Pydantic Models
# ============================================================================

class ProfileOut(BaseModel):
    address: str
    content_id: str
    last_updated_at: int
    name: str
    description: str
    registered_name: str

    @classmethod
    def from_record(cls, record: ProfileRecord) -> "ProfileOut":
        return cls(**record.to_dict())


class PinResponse(BaseModel):
    cid: str


class HealthCheck(BaseModel):
    status: str
    storage: str
    db: str
    last_processed_block: int


# ============================================================================
# Application Setup
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    log.info("api_starting")
    yield
    log.info("api_stopping")
    if store is not None:
        store.close()


app = FastAPI(
    title="Profiles Mirror API",
    description="Profile payloads and indexed profile records",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.cors_origin],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/api/health", response_model=HealthCheck)
async def health_check(db: ProfileStore = Depends(get_store),
                       origin: OriginResolver = Depends(get_resolver)):
    """Health check endpoint."""
    try:
        height = db.get_last_processed_block()
        db_status = "ok"
    except psycopg2.Error as e:
        log.error("health_db_failed", error=str(e))
        db_status = "error"
        height = -1

    storage_status = "ok" if await origin.is_healthy() else "error"

    return HealthCheck(
        status="ok" if db_status == "ok" and storage_status == "ok" else "degraded",
        storage=storage_status,
        db=db_status,
        last_processed_block=height
    )


@app.get("/api/get")
async def get_profile(cid: Optional[str] = Query(default=None),
                      origin: OriginResolver = Depends(get_resolver)) -> Dict[str, Any]:
    """Resolve one profile payload by CID."""
    if not is_valid_content_id(cid):
        raise HTTPException(status_code=400, detail="CID is required")
    if origin.is_blacklisted(cid):
        raise HTTPException(status_code=400, detail="CID is blacklisted because it failed validation previously")

    try:
        profile = await origin.get_cached_profile(cid, config.default_timeout_ms - 30)
    except FetchError as e:
        log.error("profile_retrieve_failed", cid=cid, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
    return profile.to_json()


@app.get("/api/getBatch")
async def get_profiles_batch(cids: Optional[str] = Query(default=None),
                             origin: OriginResolver = Depends(get_resolver)) -> List[Optional[Dict[str, Any]]]:
    """Resolve several payloads; failed entries come back as null."""
    cid_list = [c for c in cids.split(",") if c] if cids else []
    if not cid_list:
        raise HTTPException(status_code=400, detail="CIDs are required and must be an array")
    if len(cid_list) > config.max_batch_size:
        raise HTTPException(status_code=400, detail=f"Maximum batch size is {config.max_batch_size}")

    async def fetch(cid: str):
        if not is_valid_content_id(cid) or origin.is_blacklisted(cid):
            return None
        try:
            profile = await origin.get_cached_profile(cid, config.fetch_timeout_ms)
        except FetchError as e:
            log.info("batch_profile_failed", cid=cid, error=str(e))
            return None
        return profile.to_json()

    return await asyncio.gather(*(fetch(cid) for cid in cid_list))


@app.post("/api/pin", response_model=PinResponse)
async def pin_profile(payload: Dict[str, Any] = Body(...),
                      origin: OriginResolver = Depends(get_resolver)):
    """Validate and pin a new profile payload."""
    try:
        cid = await origin.pin(payload)
    except PayloadValidationError as e:
        log.info("pin_rejected", errors=e.errors)
        raise HTTPException(status_code=400, detail={"errors": e.errors})
    except PinError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return PinResponse(cid=cid)


@app.get("/api/search", response_model=List[ProfileOut])
async def search(
    q: Optional[str] = Query(default=None, max_length=200),
    address: Optional[str] = Query(default=None),
    cid: Optional[str] = Query(default=None),
    registered_name: Optional[str] = Query(default=None, alias="registeredName"),
    limit: Optional[int] = Query(default=None, ge=1),
    db: ProfileStore = Depends(get_store)
):
    """Full-text search over name and description, with optional exact filters."""
    if not (q and q.strip()) and not (address or cid or registered_name):
        raise HTTPException(status_code=400, detail="Query parameter is required")

    records = db.search(q or "", address=address, content_id=cid,
                        registered_name=registered_name, limit=limit)
    return [ProfileOut.from_record(r) for r in records]


@app.get("/api/profile/{address}", response_model=ProfileOut)
async def get_indexed_profile(address: str, db: ProfileStore = Depends(get_store)):
    """Get the indexed record for an address."""
    record = db.get(address)
    if record is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return ProfileOut.from_record(record)


# ============================================================================
# Run
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.api_port)
