from fastapi import FastAPI, UploadFile, File, HTTPException, Form, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from typing import List, Optional
import uvicorn
import os
import sys
import logging
import json
import asyncio
import contextlib
import time
from pathlib import Path
from dotenv import load_dotenv

# Add current directory to path to find services module
sys.path.insert(0, str(Path(__file__).parent))

from services import config
from services.errors import StylistError, ValidationError
from services.image_normalize import normalize_to_still_image
from services.sessions import SessionStore, StylingSession
from services.still_image import StillImage
from services.stylist import ProcessStep, RunResult, Stylist

load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Virtual Stylist API")

# Configure CORS
# Format: comma-separated list, e.g., "https://app.example.com,https://www.example.com"
allowed_origins_str = os.getenv("ALLOWED_ORIGINS", "")
if allowed_origins_str:
    allowed_origins = [origin.strip() for origin in allowed_origins_str.split(",") if origin.strip()]
else:
    allowed_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp", "image/heic", "image/heif"}
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".heic", ".heif"}

sessions = SessionStore()

_rate_buckets: dict[str, tuple[int, float]] = {}


def check_rate_limit(key: str, limit: int, window_seconds: int) -> bool:
    """
    Simple best-effort in-memory rate limiter (per-instance).
    Returns True if allowed, False if rate-limited.
    """
    now = time.time()
    count, expires_at = _rate_buckets.get(key, (0, 0.0))
    if expires_at <= now:
        _rate_buckets[key] = (1, now + window_seconds)
        return True
    if count >= limit:
        return False
    _rate_buckets[key] = (count + 1, expires_at)
    return True


def get_client_ip(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip() or "unknown"
    return request.headers.get("x-real-ip") or (request.client.host if request.client else "unknown")


def validate_image_file(file: UploadFile) -> tuple[bool, str]:
    """Validate that uploaded file is a valid image"""
    if not file.content_type or file.content_type.lower() not in ALLOWED_IMAGE_TYPES:
        return False, f"Invalid file type. Allowed types: {', '.join(sorted(ALLOWED_IMAGE_TYPES))}"

    if not file.filename:
        return False, "Filename is required"

    file_ext = Path(file.filename).suffix.lower()
    if file_ext not in ALLOWED_EXTENSIONS:
        return False, f"Invalid file extension. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"

    return True, ""


async def read_upload(file: Optional[UploadFile], label: str) -> Optional[StillImage]:
    """Validate an upload and normalize it into a StillImage (None when not provided)."""
    if file is None:
        return None

    is_valid, error_msg = validate_image_file(file)
    if not is_valid:
        raise HTTPException(status_code=400, detail=f"{label} validation failed: {error_msg}")

    contents = await file.read()
    max_file_size = config.get_max_file_size()
    if len(contents) > max_file_size:
        raise HTTPException(
            status_code=413,
            detail=f"{label} too large. Maximum size: {max_file_size / (1024*1024):.1f}MB"
        )

    try:
        return await asyncio.to_thread(
            normalize_to_still_image, contents, max_bytes=config.get_max_image_bytes()
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"{label}: {e}")


def require_session(session_id: str) -> StylingSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def result_payload(session: StylingSession, result: RunResult) -> dict:
    payload = result.to_dict()
    payload["session_id"] = session.session_id
    return payload


async def run_session(session: StylingSession, on_progress=None) -> RunResult:
    """Run the stylist on the session's stored inputs. One run per session at a time."""
    if session.running:
        raise HTTPException(status_code=409, detail="A styling run is already in progress for this session")

    session.running = True
    session.last_result = None
    try:
        stylist = Stylist(api_key=session.api_key, on_progress=on_progress)
        result = await stylist.run(session.model_image, session.item_image)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        session.running = False

    session.last_result = result
    logger.info(
        f"Session {session.session_id} run finished: state={result.state.value}, "
        f"attempts={len(result.attempts)}, needs_api_key={result.needs_api_key}"
    )
    return result


async def prepare_session(
    request: Request,
    fashion_item_image: Optional[UploadFile],
    model_image: Optional[UploadFile],
    session_id: Optional[str],
) -> StylingSession:
    ip = get_client_ip(request)
    if not check_rate_limit(f"style:{ip}", limit=10, window_seconds=60):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Please try again shortly.")

    item = await read_upload(fashion_item_image, "Fashion item image")
    model = await read_upload(model_image, "Model image")
    if item is None or model is None:
        raise HTTPException(status_code=400, detail="Please provide both a fashion item and a model image.")

    session = sessions.get_or_create(session_id)
    if session.running:
        raise HTTPException(status_code=409, detail="A styling run is already in progress for this session")
    session.item_image = item
    session.model_image = model
    return session


@app.get("/")
async def root():
    return {"message": "Virtual Stylist API is running"}


@app.post("/api/sessions")
async def create_session():
    session = sessions.create()
    return {"session_id": session.session_id}


@app.post("/api/style")
async def style(
    request: Request,
    fashion_item_image: Optional[UploadFile] = File(None),
    model_image: Optional[UploadFile] = File(None),
    session_id: Optional[str] = Form(None),
):
    """
    Dress the model with the fashion item. Returns the final image, or a list of
    fallback candidates for the user to choose from, or an error, plus the step trace.
    """
    session = await prepare_session(request, fashion_item_image, model_image, session_id)
    logger.info(f"Style request received for session {session.session_id}")
    try:
        result = await run_session(session)
    except HTTPException:
        raise
    except StylistError as e:
        logger.error(f"Error in style endpoint: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    return result_payload(session, result)


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


async def style_stream(session: StylingSession):
    """
    Generator yielding the step trace after every change, then the final result.
    """
    queue: asyncio.Queue = asyncio.Queue()

    def on_progress(steps: List[ProcessStep]):
        queue.put_nowait([step.to_dict() for step in steps])

    task = asyncio.create_task(run_session(session, on_progress=on_progress))
    try:
        while not task.done() or not queue.empty():
            try:
                steps = await asyncio.wait_for(queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield _sse({"type": "steps", "steps": steps})

        result = task.result()
        yield _sse({"type": "complete", "result": result_payload(session, result)})
    except HTTPException as e:
        yield _sse({"type": "error", "error": e.detail})
    except Exception as e:
        logger.error(f"Error in style stream: {e}", exc_info=True)
        yield _sse({"type": "error", "error": str(e)})
    finally:
        # Client went away mid-run
        if not task.done():
            logger.info(f"Stream for session {session.session_id} closed early, cancelling run")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


@app.post("/api/style/stream")
async def style_with_progress(
    request: Request,
    fashion_item_image: Optional[UploadFile] = File(None),
    model_image: Optional[UploadFile] = File(None),
    session_id: Optional[str] = Form(None),
):
    """Same as /api/style, streamed as server-sent events."""
    session = await prepare_session(request, fashion_item_image, model_image, session_id)
    return StreamingResponse(
        style_stream(session),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # Disable buffering for nginx
        }
    )


@app.post("/api/sessions/{session_id}/api-key")
async def submit_api_key(session_id: str, api_key: str = Form(...)):
    """
    Store a user-supplied Gemini key for this session (never persisted) and retry
    the previous run's inputs with it, so the user doesn't have to upload again.
    """
    session = require_session(session_id)
    trimmed = api_key.strip()
    if not trimmed:
        raise HTTPException(status_code=400, detail="API key must not be empty")
    session.api_key = trimmed
    logger.info(f"Session {session_id} API key set")

    if not session.has_inputs:
        return {"session_id": session_id, "rerun": False}

    result = await run_session(session)
    payload = result_payload(session, result)
    payload["rerun"] = True
    return payload


@app.post("/api/sessions/{session_id}/reset")
async def reset_session(session_id: str):
    session = require_session(session_id)
    if session.running:
        raise HTTPException(status_code=409, detail="A styling run is already in progress for this session")
    session.reset()
    return {"session_id": session_id, "has_api_key": session.api_key is not None}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        timeout_keep_alive=600,  # image generation runs can take minutes
    )
