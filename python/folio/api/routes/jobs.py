"""Background job polling routes."""

from typing import Annotated

from fastapi import APIRouter, Depends

from folio.api.deps import get_runner
from folio.errors import ApiErrorCode, NotFoundError
from folio.jobs import JobRunner
from folio.responses import success_response
from folio.schemas.job import JobOut

router = APIRouter(prefix="/admin")


@router.get("/jobs/{job_id}")
def get_job(
    job_id: str,
    runner: Annotated[JobRunner, Depends(get_runner)],
) -> dict:
    """Poll a background job.

    Jobs are kept in memory for a limited time after they finish; unknown,
    pruned, and pre-restart jobs all return 404.
    """
    status = runner.get(job_id)
    if status is None:
        raise NotFoundError(ApiErrorCode.E_JOB_NOT_FOUND, "Job not found")
    return success_response(JobOut.model_validate(status.to_dict()).model_dump(mode="json"))
