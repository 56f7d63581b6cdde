import logging
import re
from contextlib import asynccontextmanager
from typing import Optional, Union

import httpx
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from . import config, extractor, relay
from .errors import MediaServiceError, ValidationError
from .formats import parse_quality
from .metadata import DownloadTarget, RankedResponse, build_download_target, build_ranked_response

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# -------------------------
# App Setup
# -------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    timeout = httpx.Timeout(config.RELAY_READ_TIMEOUT, connect=config.RELAY_CONNECT_TIMEOUT)
    async with httpx.AsyncClient(timeout=timeout) as client:
        app.state.http_client = client
        logger.info("CORS enabled for: %s", ", ".join(config.ALLOWED_ORIGINS))
        yield


limiter = Limiter(key_func=get_remote_address, enabled=config.RATE_LIMIT_ENABLED)
app = FastAPI(title="X Media Service", lifespan=lifespan)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Range"],
    expose_headers=["Content-Length", "Content-Range", "Accept-Ranges", "Content-Disposition"],
)

router = APIRouter(prefix="/api")

POST_URL_PATTERNS = (
    re.compile(r"^https?://(www\.)?(twitter|x)\.com/[^/]+/status/\d+"),
    re.compile(r"^https?://(www\.)?twitter\.com/i/web/status/\d+"),
)

# -------------------------
# Models
# -------------------------

class ExtractRequest(BaseModel):
    url: Optional[str] = None


class DownloadRequest(BaseModel):
    url: Optional[str] = None
    quality: Optional[Union[str, int]] = None

# -------------------------
# Error handlers
# -------------------------

@app.exception_handler(MediaServiceError)
async def media_service_error_handler(request: Request, exc: MediaServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.details)
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": str(exc.errors())},
    )

# -------------------------
# Helpers
# -------------------------

def is_valid_post_url(url: Optional[str]) -> bool:
    if not url:
        return False
    return any(pattern.match(url.strip()) for pattern in POST_URL_PATTERNS)


def validate_post_url(url: Optional[str]) -> str:
    if not is_valid_post_url(url):
        raise ValidationError("Invalid Twitter/X URL. Provide a valid tweet URL.")
    return url.strip()


def get_extractor():
    return extractor.extract_info


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client

# -------------------------
# Extract Endpoint
# -------------------------

@router.post("/extract", response_model=RankedResponse)
@limiter.limit(config.RATE_LIMIT)
async def extract(request: Request, body: ExtractRequest, extract_info=Depends(get_extractor)):
    url = validate_post_url(body.url)
    info = await extract_info(url)
    return build_ranked_response(info)

# -------------------------
# Download Endpoint
# -------------------------

@router.post("/download", response_model=DownloadTarget)
@limiter.limit(config.RATE_LIMIT)
async def download(request: Request, body: DownloadRequest, extract_info=Depends(get_extractor)):
    url = validate_post_url(body.url)
    max_height = parse_quality(None if body.quality is None else str(body.quality))
    info = await extract_info(url)
    return build_download_target(info, max_height)

# -------------------------
# Stream Endpoint
# -------------------------

@router.get("/stream")
@limiter.limit(config.RATE_LIMIT)
async def stream(
    request: Request,
    remote_url: Optional[str] = Query(None, alias="remoteUrl"),
    h: Optional[str] = None,
    filename: Optional[str] = None,
    client: httpx.AsyncClient = Depends(get_http_client),
):
    """
    Relay a media URL, mirroring status and headers, streaming the body.
    """
    return await relay.relay(client, remote_url, request.headers, h, filename)

# -------------------------
# Health & Dependencies
# -------------------------

@router.get("/health")
async def health():
    return {"status": "ok", "message": "running"}


@router.get("/check-dependencies")
async def check_dependencies():
    return await extractor.check_dependencies()


app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)
