"""Reference job processor - generates prompts and images for one job.

Served by ``POST /api/functions/generate-images`` so the backend can act as
its own processor in development or self-hosted setups. It honours the same
contract as the hosted edge function: acknowledge the request, then report
everything through writes to the ``jobs`` table.

Progress stages:
    10  starting
    20  generating prompts
    40  prompts generated (prompts stored on the job)
    50  generating images
    50..100 one step per finished image
    100 completed

Without an OpenAI API key the worker produces deterministic mock prompts
and placeholder image URLs so the whole lifecycle can be exercised locally.
"""

import asyncio
import logging
import random
import re
from typing import Any, Awaitable, Callable

from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field

from app.config import settings
from app.logging_config import job_context
from app.models.job import (
    DATA_TYPE_CSV,
    DATA_TYPE_NATURAL_LANGUAGE,
    DATA_TYPE_SCRIPT,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_QUEUED,
    GeneratedPrompt,
    can_transition,
    next_progress,
    utcnow,
)
from app.services.job_store import SupabaseJobStore

logger = logging.getLogger(__name__)

_PROMPT_STYLES = [
    "in a minimalist style with clean typography and soft pastel colors",
    "with vibrant colors, bold typography, and eye-catching graphics",
    "in a professional corporate style with blue and gray color scheme",
    "with a youthful energetic feel using bright colors and playful icons",
    "with elegant typography on a gradient background with subtle patterns",
    "using a dark mode aesthetic with neon accents and modern sans-serif fonts",
    "with a vintage filter applied, sepia tones and classic serif typography",
    "in a hand-drawn illustration style with sketched elements and handwritten text",
]

_SYSTEM_PROMPT = """\
You are an expert at creating detailed image generation prompts for social media carousels.

You'll be given a template name and optionally a description and data variables.
Create unique, detailed image prompts that produce visually appealing carousel images.

Each prompt should give clear art direction and style guidance, describe composition,
colors, mood and lighting, and spell out any text that must appear in the image.

Return the prompts as a numbered list, one prompt per item."""

_NUMBERED_ITEM = re.compile(r"^\s*\d+[.)]\s*(.*?)(?=^\s*\d+[.)]|\Z)", re.MULTILINE | re.DOTALL)


class GenerationRequest(BaseModel):
    """Body of a processor invocation."""

    job_id: str = Field(alias="jobId", min_length=1)
    template_id: str = Field(alias="templateId", min_length=1)
    template_name: str = Field(alias="templateName", min_length=1)
    template_description: str | None = Field(default=None, alias="templateDescription")
    template_image_url: str | None = Field(default=None, alias="templateImageUrl")
    num_variants: int = Field(alias="numVariants", ge=1)
    data_type: str = Field(default=DATA_TYPE_SCRIPT, alias="dataType")
    data_content: list[dict[str, Any]] | str | None = Field(default=None, alias="dataContent")

    model_config = ConfigDict(populate_by_name=True)


class InvalidTransition(ValueError):
    """A status report would move a job backwards."""


class ProgressReporter:
    """Writes status/progress for one job, never moving it backwards."""

    def __init__(self, store: SupabaseJobStore, job_id: str) -> None:
        self._store = store
        self.job_id = job_id
        self.status = JOB_STATUS_QUEUED
        self.progress = 0

    async def report(
        self,
        status: str,
        progress: int,
        message: str | None = None,
        *,
        image_urls: list[str] | None = None,
        prompts: list[GeneratedPrompt] | None = None,
    ) -> None:
        if not can_transition(self.status, status):
            raise InvalidTransition(f"Job {self.job_id} cannot move from {self.status} to {status}")
        progress = next_progress(self.status, self.progress, status, progress)
        self.status, self.progress = status, progress

        fields: dict[str, Any] = {
            "status": status,
            "progress": progress,
            "updated_at": utcnow().isoformat(),
        }
        if message is not None:
            fields["message"] = message
        if image_urls is not None:
            fields["image_urls"] = image_urls
        if prompts is not None:
            fields["prompts"] = [p.to_payload() for p in prompts]
        await self._store.update_job(self.job_id, fields)
        logger.debug("Job %s at %s/%d", self.job_id, status, progress)


def is_natural_language(data_type: str, content: Any) -> bool:
    """Detect instructions stored under the ``script`` data type."""
    if data_type == DATA_TYPE_NATURAL_LANGUAGE:
        return isinstance(content, str)
    if data_type != DATA_TYPE_SCRIPT or not isinstance(content, str):
        return False
    return not any(marker in content for marker in ("function", "return", "{", "}"))


def extract_prompts_from_text(text: str) -> list[str]:
    """Split a numbered-list completion into prompts.

    Falls back to blank-line separated paragraphs when no numbering is found.
    """
    matches = [m.group(1).strip() for m in _NUMBERED_ITEM.finditer(text)]
    matches = [m for m in matches if m]
    if matches:
        return matches
    return [chunk.strip() for chunk in re.split(r"\n\s*\n", text) if chunk.strip()]


def _csv_rows(request: GenerationRequest) -> list[dict[str, Any]] | None:
    if request.data_type == DATA_TYPE_CSV and isinstance(request.data_content, list):
        return request.data_content
    return None


def mock_prompts(request: GenerationRequest) -> list[GeneratedPrompt]:
    rows = _csv_rows(request)
    prompts: list[GeneratedPrompt] = []
    for i in range(request.num_variants):
        variables = rows[i % len(rows)] if rows else None
        text = f'Create a visually stunning carousel image for "{request.template_name}"'
        if request.template_description:
            text += f" that {request.template_description}"
        for key, value in (variables or {}).items():
            text += f' with {key}: "{value}"'
        text += f" {_PROMPT_STYLES[i % len(_PROMPT_STYLES)]}."
        prompts.append(
            GeneratedPrompt(
                id=f"prompt-{request.template_id}-{i}",
                prompt=text,
                data_variables=variables,
            )
        )
    return prompts


async def generate_prompts(
    request: GenerationRequest, client: AsyncOpenAI | None
) -> list[GeneratedPrompt]:
    if client is None:
        return mock_prompts(request)

    rows = _csv_rows(request)
    user_prompt = (
        f"Create {request.num_variants} unique image generation prompts for a carousel "
        f'template called "{request.template_name}"'
    )
    if request.template_description:
        user_prompt += f" that {request.template_description}"
    if is_natural_language(request.data_type, request.data_content):
        user_prompt += (
            "\n\nUse the following description to guide the content of your prompts:\n"
            f"{request.data_content}"
        )
    elif rows:
        user_prompt += (
            "\n\nFor each prompt, incorporate these data variables where appropriate:\n"
            f"{rows}\n\nMap each set of variables to a different prompt."
        )

    resp = await client.chat.completions.create(
        model=settings.prompt_model,
        messages=[
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": user_prompt},
        ],
        temperature=0.7,
    )
    texts = extract_prompts_from_text(resp.choices[0].message.content or "")
    return [
        GeneratedPrompt(
            id=f"prompt-{request.template_id}-{i}",
            prompt=text,
            data_variables=rows[i] if rows and i < len(rows) else None,
        )
        for i, text in enumerate(texts)
    ]


async def generate_image(prompt: GeneratedPrompt, client: AsyncOpenAI | None) -> str:
    """Generate one image and return its URL."""
    if client is None:
        return f"https://picsum.photos/seed/{prompt.id}-{random.randint(0, 999)}/1024/1024"

    resp = await client.images.generate(
        model=settings.image_model,
        prompt=prompt.prompt,
        n=1,
        size="1024x1024",
    )
    image = resp.data[0]
    if image.url:
        return image.url
    # gpt-image-1 only returns inline base64
    return f"data:image/png;base64,{image.b64_json}"


def _friendly_error_message(exc: Exception) -> str:
    """Short, user-facing text for a failed run; the raw error is logged."""
    raw = str(exc)
    logger.error("Raw job error: %s", raw)
    lowered = raw.lower()
    if "rate limit" in lowered or "rate_limit" in lowered or "429" in raw:
        return "Generation service is temporarily busy. Please try again in a moment."
    if "invalid_api_key" in lowered or "authentication" in lowered:
        return "Configuration error. Please contact support."
    if "timeout" in lowered or "timed out" in lowered:
        return "Generation timed out. Please try again."
    return f"Generation failed: {raw[:200]}" if raw else "Generation failed. Please try again."


def _openai_client() -> AsyncOpenAI | None:
    if not settings.openai_api_key:
        return None
    return AsyncOpenAI(api_key=settings.openai_api_key, max_retries=3)


async def run_generation(
    request: GenerationRequest,
    store: SupabaseJobStore,
    *,
    client: AsyncOpenAI | None = None,
    use_openai: bool = True,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> list[str] | None:
    """Run the full generation workflow for one job.

    Returns the image URLs, or ``None`` when the run failed (the job is then
    marked failed). Individual image failures are logged and skipped, so a
    job can complete with fewer images than variants.
    """
    if client is None and use_openai:
        client = _openai_client()
    reporter = ProgressReporter(store, request.job_id)

    with job_context(request.job_id):
        try:
            await reporter.report(JOB_STATUS_PROCESSING, 10, "Starting generation process")

            await reporter.report(JOB_STATUS_PROCESSING, 20, "Generating prompts")
            prompts = await generate_prompts(request, client)
            await reporter.report(
                JOB_STATUS_PROCESSING,
                40,
                "Prompts generated, starting image generation",
                prompts=prompts,
            )

            await reporter.report(JOB_STATUS_PROCESSING, 50, "Generating images")
            image_urls: list[str] = []
            total = len(prompts)
            batch_size = max(1, settings.image_batch_size)

            async def _one(prompt: GeneratedPrompt) -> None:
                try:
                    url = await generate_image(prompt, client)
                except Exception:
                    logger.exception("Error generating image for prompt %s", prompt.id)
                    return
                image_urls.append(url)
                done = len(image_urls)
                await reporter.report(
                    JOB_STATUS_PROCESSING,
                    50 + (done * 50) // total,
                    f"Generated image {done} of {total}",
                    image_urls=list(image_urls),
                )

            for start in range(0, total, batch_size):
                results = await asyncio.gather(
                    *(_one(p) for p in prompts[start:start + batch_size]),
                    return_exceptions=True,
                )
                # Progress writes that failed surface only after the batch settles
                errors = [r for r in results if isinstance(r, BaseException)]
                if errors:
                    raise errors[0]
                if start + batch_size < total:
                    await sleep(settings.image_batch_pause_seconds)

            await reporter.report(
                JOB_STATUS_COMPLETED,
                100,
                f"Successfully generated {len(image_urls)} images",
                image_urls=image_urls,
                prompts=prompts,
            )
            logger.info("Job %s finished with %d images", request.job_id, len(image_urls))
            return image_urls

        except Exception as exc:
            logger.exception("Job %s failed", request.job_id)
            message = _friendly_error_message(exc)
            try:
                await reporter.report(JOB_STATUS_FAILED, reporter.progress, message)
            except Exception:
                logger.exception("Could not mark job %s as failed", request.job_id)
            return None
