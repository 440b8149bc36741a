# backend/autocrop/worker.py
import logging
from typing import Optional

from .batch import BatchCoordinator, ImageSource
from .engine import CropDecisionEngine
from .errors import NotFoundError
from .store import JobStore

logger = logging.getLogger(__name__)


def process_url_job(
    job_id: str,
    url: str,
    store: JobStore,
    coordinator: BatchCoordinator,
    job_ttl: float,
    engine: Optional[CropDecisionEngine] = None,
    result_url: Optional[str] = None,
):
    """
    Background task behind the async URL endpoints. Runs the URL as a
    single-item batch in the job's own directory, reports coarse progress
    milestones into the store and always schedules the job's expiry.
    """
    artifact_dir = coordinator.batch_dir(job_id)

    def report(progress: int):
        store.set_progress(job_id, progress)

    try:
        result = coordinator.run_batch(
            [ImageSource(identifier=url, url=url)],
            preserve_format=False,
            make_archive=False,
            progress=report,
            engine=engine,
            batch_id=job_id,
        )
        item = result.items[0]
        if item.success:
            store.complete(
                job_id,
                {
                    "fileName": item.output_name,
                    "outcome": item.outcome,
                    "message": item.message,
                    "width": item.width,
                    "height": item.height,
                    "originalWidth": item.original_width,
                    "originalHeight": item.original_height,
                    "downloadUrl": result_url,
                },
                artifact_path=artifact_dir,
            )
            logger.info("job %s completed (%s)", job_id, item.message)
        else:
            store.fail(job_id, item.message, artifact_path=artifact_dir)
            logger.info("job %s failed: %s", job_id, item.message)

    except Exception as e:
        logger.exception("process_url_job %s error", job_id)
        try:
            store.fail(job_id, f"Server error: {e}", artifact_path=artifact_dir)
        except NotFoundError:
            pass
    finally:
        store.schedule_expiry(job_id, job_ttl)
