"""Self-hosted processor endpoint.

  POST /api/functions/generate-images

Accepts the same body as the hosted ``generate-images`` function, answers
202 at once and runs the reference worker in the background. Callers must
present the Supabase service-role key as a bearer token.
"""

import asyncio
import hmac
import logging

from fastapi import APIRouter, Header, HTTPException, status
from pydantic import ValidationError

from app.config import settings
from app.services.job_store import SupabaseJobStore
from app.services.job_worker import GenerationRequest, run_generation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/functions", tags=["functions"])

# Strong references to running generations
_running: set[asyncio.Task] = set()


def _require_service_key(authorization: str | None) -> None:
    expected = settings.supabase_service_role_key
    presented = (authorization or "").removeprefix("Bearer ")
    if not expected or not hmac.compare_digest(presented, expected):
        raise HTTPException(status_code=401, detail="Invalid service key")


@router.post("/generate-images", status_code=status.HTTP_202_ACCEPTED)
async def generate_images(
    body: dict,
    authorization: str | None = Header(None),
) -> dict:
    _require_service_key(authorization)
    try:
        request = GenerationRequest.model_validate(body)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Missing required fields") from exc

    task = asyncio.create_task(run_generation(request, SupabaseJobStore()))
    _running.add(task)
    task.add_done_callback(_running.discard)

    logger.info("Accepted generation for job %s", request.job_id)
    return {"success": True, "message": f"Generation started for job {request.job_id}"}
