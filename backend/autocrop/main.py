# backend/autocrop/main.py
from fastapi import FastAPI, UploadFile, File, Depends, HTTPException, Form, BackgroundTasks, Body, Query
from fastapi.responses import FileResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool
from datetime import datetime, timezone
from typing import Any, List, Optional
from uuid import uuid4
import os, re, logging, aiofiles

from . import __version__, config
from .batch import BatchCoordinator, ImageSource, normalize_sources
from .db import engine as db_engine
from .engine import CropDecisionEngine
from .errors import NotFoundError, StorageError, ValidationError
from .models import COMPLETED
from .scheduler import CleanupScheduler
from .storage import remove_path, safe_filename
from .store import JobStore
from .worker import process_url_job

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Auto Crop Whitespace API", version=__version__)

# --- SERVICES ---
scheduler = CleanupScheduler()
job_store = JobStore(db_engine, scheduler=scheduler)
coordinator = BatchCoordinator(
    CropDecisionEngine(config.crop_config()),
    config.STORAGE_DIR,
    max_workers=config.MAX_WORKERS,
)


def get_scheduler() -> CleanupScheduler:
    return scheduler


def get_job_store() -> JobStore:
    return job_store


def get_coordinator() -> BatchCoordinator:
    return coordinator


# --- CORS for development ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # open for dev; lock down in prod
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_ALLOWED_TYPES = re.compile(r"jpeg|jpg|png|gif|webp")
_ARCHIVE_NAME = re.compile(r"^cropped-images-([A-Za-z0-9_-]+)\.zip$")
_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@app.on_event("startup")
def startup():
    coordinator.ensure_dirs()
    logger.info("auto-crop service ready, storage at %s", coordinator.storage_dir)


@app.on_event("shutdown")
def shutdown():
    scheduler.shutdown(flush=config.CLEANUP_ON_SHUTDOWN)


def file_url(batch_id: str, name: str) -> str:
    return f"{config.PUBLIC_BASE_URL}/files/{batch_id}/{name}"


def job_url(job_id: str, suffix: str = "") -> str:
    return f"{config.PUBLIC_BASE_URL}/jobs/{job_id}{suffix}"


def schedule_batch_cleanup(sched: CleanupScheduler, coord: BatchCoordinator, batch_id: str, delay: float):
    sched.schedule(f"batch:{batch_id}", delay, lambda: coord.cleanup_batch(batch_id))


def engine_for(coord: BatchCoordinator, tolerance: Optional[int]) -> Optional[CropDecisionEngine]:
    """Per-request engine when the caller overrides the trim tolerance."""
    if tolerance is None:
        return None
    if not 0 <= tolerance <= 255:
        raise HTTPException(status_code=400, detail="tolerance must be between 0 and 255")
    return CropDecisionEngine(coord.engine.config.with_tolerance(tolerance))


def url_sources(payload: Any) -> List[ImageSource]:
    try:
        sources = normalize_sources(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if len(sources) > config.MAX_UPLOAD_FILES:
        raise HTTPException(status_code=400, detail=f"At most {config.MAX_UPLOAD_FILES} images per request")
    return sources


# Save uploaded file in chunks (async)
async def save_upload_file(upload_file: UploadFile, destination: str, max_bytes: int) -> int:
    written = 0
    try:
        async with aiofiles.open(destination, "wb") as out_file:
            while True:
                chunk = await upload_file.read(1024 * 1024)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise ValidationError(f"file exceeds the {max_bytes // (1024 * 1024)}MB limit")
                await out_file.write(chunk)
    finally:
        await upload_file.close()
    return written


async def stage_upload(upload: UploadFile, upload_dir: str) -> ImageSource:
    name = upload.filename or "upload"
    ext = os.path.splitext(name)[1].lower()
    content_type = upload.content_type or ""
    if ext not in config.ALLOWED_EXTENSIONS or not _ALLOWED_TYPES.search(content_type):
        await upload.close()
        return ImageSource(identifier=name, invalid_reason="Supported formats: JPG, PNG, GIF, WEBP")

    temp_path = os.path.join(upload_dir, f"{uuid4().hex}_{safe_filename(name)}")
    try:
        await save_upload_file(upload, temp_path, config.MAX_UPLOAD_BYTES)
    except ValidationError as e:
        remove_path(temp_path)
        return ImageSource(identifier=name, invalid_reason=str(e))
    except OSError as e:
        logger.warning("storing upload %s failed: %s", name, e)
        remove_path(temp_path)
        return ImageSource(identifier=name, invalid_reason=f"upload could not be stored: {e}")
    return ImageSource(identifier=name, path=temp_path)


@app.get("/health")
def health():
    return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/process")
async def process_uploads(
    images: Optional[List[UploadFile]] = File(default=None),
    tolerance: Optional[int] = Form(default=None),
    coord: BatchCoordinator = Depends(get_coordinator),
    sched: CleanupScheduler = Depends(get_scheduler),
):
    """
    Accept:
      - multipart field 'images' (repeated) -> up to MAX_UPLOAD_FILES files
      - form field 'tolerance' -> optional trim tolerance override
    Returns:
      - per-file results plus the zip archive name (if anything succeeded)
    """
    if not images:
        raise HTTPException(status_code=400, detail="No files uploaded")
    if len(images) > config.MAX_UPLOAD_FILES:
        raise HTTPException(status_code=400, detail=f"At most {config.MAX_UPLOAD_FILES} files per request")
    crop_engine = engine_for(coord, tolerance)

    try:
        coord.ensure_dirs()
    except StorageError as e:
        logger.exception("storage unavailable")
        raise HTTPException(status_code=500, detail=f"Server error: {e}")

    sources = [await stage_upload(upload, coord.upload_dir) for upload in images]
    try:
        result = await run_in_threadpool(coord.run_batch, sources, preserve_format=True, engine=crop_engine)
    except StorageError as e:
        logger.exception("batch aborted")
        for source in sources:
            if source.path:
                remove_path(source.path)
        raise HTTPException(status_code=500, detail=f"Server error: {e}")

    schedule_batch_cleanup(sched, coord, result.batch_id, config.BATCH_TTL)
    return result.to_dict(url_for=file_url)


@app.get("/download/{filename}")
def download(
    filename: str,
    background_tasks: BackgroundTasks,
    coord: BatchCoordinator = Depends(get_coordinator),
    sched: CleanupScheduler = Depends(get_scheduler),
):
    match = _ARCHIVE_NAME.match(filename)
    if not match:
        raise HTTPException(status_code=404, detail="File not found")
    batch_id = match.group(1)
    path = coord.archive_path(batch_id)
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="File not found")

    # runs once the response is sent: shrink the batch's lifetime to the download window
    background_tasks.add_task(schedule_batch_cleanup, sched, coord, batch_id, config.DOWNLOAD_CLEANUP_DELAY)
    return FileResponse(path=path, filename=filename, media_type="application/zip")


@app.get("/files/{batch_id}/{filename}")
def get_file(batch_id: str, filename: str, coord: BatchCoordinator = Depends(get_coordinator)):
    if not (_SAFE_SEGMENT.match(batch_id) and _SAFE_SEGMENT.match(filename)):
        raise HTTPException(status_code=404, detail="File not found")
    path = os.path.join(coord.batch_dir(batch_id), filename)
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path=path, filename=filename)


@app.post("/process-url")
async def process_url(
    payload: Any = Body(default=None),
    tolerance: Optional[int] = Query(default=None),
    coord: BatchCoordinator = Depends(get_coordinator),
    sched: CleanupScheduler = Depends(get_scheduler),
):
    """Synchronous URL batch; outputs are always PNG."""
    sources = url_sources(payload)
    crop_engine = engine_for(coord, tolerance)

    try:
        coord.ensure_dirs()
        result = await run_in_threadpool(coord.run_batch, sources, preserve_format=False, engine=crop_engine)
    except StorageError as e:
        logger.exception("url batch aborted")
        raise HTTPException(status_code=500, detail=f"Server error: {e}")

    schedule_batch_cleanup(sched, coord, result.batch_id, config.BATCH_TTL)
    body = result.to_dict(url_for=file_url)
    first = result.first_success
    body["processedUrl"] = file_url(result.batch_id, first.output_name) if first else None
    return body


@app.post("/process-url/async", status_code=202)
@app.post("/n8n/process", status_code=202)
async def process_url_async(
    background_tasks: BackgroundTasks,
    payload: Any = Body(default=None),
    tolerance: Optional[int] = Query(default=None),
    store: JobStore = Depends(get_job_store),
    coord: BatchCoordinator = Depends(get_coordinator),
):
    """
    Accept the same payload shapes as /process-url.
    Returns:
      - {jobId, status, statusUrl} for a single source
      - {jobs: [...]} for a list; entries without a usable url carry an error
    """
    sources = url_sources(payload)
    crop_engine = engine_for(coord, tolerance)

    try:
        coord.ensure_dirs()
    except StorageError as e:
        logger.exception("storage unavailable")
        raise HTTPException(status_code=500, detail=f"Server error: {e}")

    jobs = []
    for source in sources:
        if source.invalid_reason:
            jobs.append({"source": source.identifier, "error": source.invalid_reason})
            continue
        job_id = str(uuid4())
        store.create(job_id, source.url)
        background_tasks.add_task(
            process_url_job,
            job_id,
            source.url,
            store,
            coord,
            config.JOB_TTL,
            crop_engine,
            job_url(job_id, "/result"),
        )
        jobs.append({"jobId": job_id, "status": "processing", "statusUrl": job_url(job_id)})

    if isinstance(payload, list) or len(sources) > 1:
        return {"jobs": jobs}
    if "error" in jobs[0]:
        raise HTTPException(status_code=400, detail=jobs[0]["error"])
    return jobs[0]


@app.get("/jobs/{job_id}")
def get_job(job_id: str, store: JobStore = Depends(get_job_store)):
    try:
        job = store.get(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_status_dict()


@app.get("/jobs/{job_id}/result")
def job_result(job_id: str, store: JobStore = Depends(get_job_store)):
    try:
        job = store.get(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")

    result = job.result_data() if job.status == COMPLETED else None
    if not result or not job.artifact_path:
        raise HTTPException(status_code=404, detail="Result not ready")
    path = os.path.join(job.artifact_path, result["fileName"])
    if not os.path.exists(path):
        raise HTTPException(status_code=404, detail="Result not found")

    return FileResponse(path=path, filename=result["fileName"], media_type="image/png")


def run():
    import uvicorn

    uvicorn.run(app, host=os.environ.get("HOST", "0.0.0.0"), port=int(os.environ.get("PORT", "8000")))
