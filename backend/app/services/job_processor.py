"""Trigger for the remote job processor (a Supabase edge function).

The call only starts the work. All progress is reported out-of-band through
writes to the ``jobs`` table, which the watchers observe.
"""

import logging
from typing import Any, Awaitable, Callable

from supabase import AsyncClient

from app.config import settings
from app.errors import TriggerInvocationError
from app.models.job import JobData

logger = logging.getLogger(__name__)


def build_processor_request(job: JobData) -> dict[str, Any]:
    """Request body for the processor, built from the stored job."""
    return {
        "jobId": job.id,
        "templateId": job.template_id,
        "templateName": job.template_name,
        "templateDescription": job.template_description,
        "templateImageUrl": job.template_image_url,
        "numVariants": job.variants or 1,
        "dataType": job.data_type,
        "dataContent": job.data_content,
    }


class JobProcessorClient:
    """Invokes the ``generate-images`` function with a job's parameters."""

    def __init__(
        self,
        client: AsyncClient | None = None,
        *,
        client_factory: Callable[[], Awaitable[AsyncClient]] | None = None,
        function_name: str | None = None,
    ) -> None:
        if client_factory is None:
            from app.db.supabase_client import get_supabase

            client_factory = get_supabase
        self._client = client
        self._client_factory = client_factory
        self.function_name = function_name or settings.processor_function

    async def invoke(self, job: JobData) -> Any:
        """Start processing ``job``; returns the function's acknowledgement.

        Raises:
            TriggerInvocationError: the function could not be reached or
                answered with an error status.
        """
        body = build_processor_request(job)
        try:
            if self._client is None:
                self._client = await self._client_factory()
            ack = await self._client.functions.invoke(
                self.function_name,
                invoke_options={"body": body},
            )
        except Exception as exc:
            raise TriggerInvocationError(str(exc) or type(exc).__name__) from exc
        logger.info(
            "Processor %s invoked for job %s",
            self.function_name,
            job.id,
            extra={"variants": body["numVariants"], "data_type": body["dataType"]},
        )
        return ack
