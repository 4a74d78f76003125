"""Tests for the reference job processor (prompt + image generation)."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import ValidationError

from app.config import settings
from app.errors import StoreWriteError
from app.models.job import (
    _STATUS_RANK,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_QUEUED,
    GeneratedPrompt,
)
from app.services.job_worker import (
    GenerationRequest,
    InvalidTransition,
    ProgressReporter,
    extract_prompts_from_text,
    generate_image,
    generate_prompts,
    is_natural_language,
    mock_prompts,
    run_generation,
)

from conftest import FakeJobStore, make_row


def _request(**overrides) -> GenerationRequest:
    body = {
        "jobId": "job-1",
        "templateId": "t1",
        "templateName": "Launch",
        "templateDescription": "announces a product",
        "numVariants": 3,
        "dataType": "csv",
        "dataContent": [{"title": "Mug"}, {"title": "Cap"}],
    }
    body.update(overrides)
    return GenerationRequest.model_validate(body)


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------


def test_request_requires_core_fields():
    with pytest.raises(ValidationError):
        GenerationRequest.model_validate({"jobId": "job-1", "templateId": "t1", "numVariants": 2})
    with pytest.raises(ValidationError):
        _request(numVariants=0)


# ---------------------------------------------------------------------------
# ProgressReporter
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reporter_refuses_status_regressions(store):
    reporter = ProgressReporter(store, "job-1")
    await reporter.report(JOB_STATUS_PROCESSING, 10)

    with pytest.raises(InvalidTransition):
        await reporter.report(JOB_STATUS_QUEUED, 0)

    await reporter.report(JOB_STATUS_COMPLETED, 100)
    with pytest.raises(InvalidTransition):
        await reporter.report(JOB_STATUS_PROCESSING, 50)


@pytest.mark.asyncio
async def test_reporter_never_lowers_progress(store):
    reporter = ProgressReporter(store, "job-1")
    await reporter.report(JOB_STATUS_PROCESSING, 60)
    await reporter.report(JOB_STATUS_PROCESSING, 40, "late update")

    assert [fields["progress"] for _, fields in store.updates] == [60, 60]
    assert store.updates[1][1]["message"] == "late update"


# ---------------------------------------------------------------------------
# Prompt helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "data_type,content,expected",
    [
        ("script", "Five slides about autumn baking", True),
        ("script", "function slides() { return [] }", False),
        ("natural-language", "anything goes", True),
        ("csv", [{"a": "1"}], False),
    ],
)
def test_is_natural_language(data_type, content, expected):
    assert is_natural_language(data_type, content) is expected


def test_extract_numbered_prompts():
    text = "Here you go:\n1. First idea\n2. Second idea\nspanning lines\n3) Third idea"
    assert extract_prompts_from_text(text) == [
        "First idea",
        "Second idea\nspanning lines",
        "Third idea",
    ]


def test_extract_falls_back_to_paragraphs():
    assert extract_prompts_from_text("Alpha prompt\n\nBeta prompt\n") == [
        "Alpha prompt",
        "Beta prompt",
    ]


def test_mock_prompts_cycle_rows_and_styles():
    prompts = mock_prompts(_request())

    assert [p.id for p in prompts] == ["prompt-t1-0", "prompt-t1-1", "prompt-t1-2"]
    assert [p.data_variables for p in prompts] == [
        {"title": "Mug"},
        {"title": "Cap"},
        {"title": "Mug"},
    ]
    assert 'title: "Cap"' in prompts[1].prompt
    assert prompts[0].prompt != prompts[2].prompt


@pytest.mark.asyncio
async def test_generate_prompts_with_openai():
    client = MagicMock()
    completion = MagicMock()
    completion.choices[0].message.content = "1. A mug on a desk\n2. A cap on a hook"
    client.chat.completions.create = AsyncMock(return_value=completion)

    prompts = await generate_prompts(_request(numVariants=2), client)

    assert [p.prompt for p in prompts] == ["A mug on a desk", "A cap on a hook"]
    assert prompts[1].data_variables == {"title": "Cap"}
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == settings.prompt_model
    assert "Create 2 unique image generation prompts" in kwargs["messages"][1]["content"]


@pytest.mark.asyncio
async def test_generate_image_accepts_inline_base64():
    client = MagicMock()
    client.images.generate = AsyncMock(
        return_value=MagicMock(data=[MagicMock(url=None, b64_json="aGVsbG8=")])
    )

    url = await generate_image(GeneratedPrompt(id="p1", prompt="draw"), client)

    assert url == "data:image/png;base64,aGVsbG8="


@pytest.mark.asyncio
async def test_generate_image_placeholder_without_client():
    url = await generate_image(GeneratedPrompt(id="p1", prompt="draw"), None)
    assert url.startswith("https://picsum.photos/seed/p1-")


# ---------------------------------------------------------------------------
# run_generation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_generation_reports_every_stage(store):
    store.rows["job-1"] = make_row("job-1")

    urls = await run_generation(_request(), store, use_openai=False, sleep=AsyncMock())

    assert len(urls) == 3
    progress = [fields["progress"] for _, fields in store.updates]
    assert progress == [10, 20, 40, 50, 66, 83, 100, 100]
    assert "prompts" in store.updates[2][1]

    row = store.rows["job-1"]
    assert row["status"] == JOB_STATUS_COMPLETED
    assert row["message"] == "Successfully generated 3 images"
    assert row["image_urls"] == urls
    assert len(row["prompts"]) == 3


@pytest.mark.asyncio
async def test_observed_statuses_never_regress(store):
    store.rows["job-1"] = make_row("job-1")

    await run_generation(_request(), store, use_openai=False, sleep=AsyncMock())

    ranks = [_STATUS_RANK[fields["status"]] for _, fields in store.updates]
    assert ranks == sorted(ranks)


@pytest.mark.asyncio
async def test_run_generation_pauses_between_batches(store):
    store.rows["job-1"] = make_row("job-1")
    sleep = AsyncMock()

    urls = await run_generation(_request(numVariants=7), store, use_openai=False, sleep=sleep)

    assert len(urls) == 7
    sleep.assert_awaited_once_with(settings.image_batch_pause_seconds)


@pytest.mark.asyncio
async def test_failed_images_are_skipped(store):
    store.rows["job-1"] = make_row("job-1")

    async def flaky(prompt, client):
        if prompt.id.endswith("-1"):
            raise RuntimeError("content policy")
        return f"https://img/{prompt.id}.png"

    with patch("app.services.job_worker.generate_image", side_effect=flaky):
        urls = await run_generation(_request(), store, use_openai=False, sleep=AsyncMock())

    assert urls == ["https://img/prompt-t1-0.png", "https://img/prompt-t1-2.png"]
    assert store.rows["job-1"]["status"] == JOB_STATUS_COMPLETED
    assert store.rows["job-1"]["message"] == "Successfully generated 2 images"


@pytest.mark.asyncio
async def test_run_generation_marks_job_failed(store):
    store.rows["job-1"] = make_row("job-1")

    with patch(
        "app.services.job_worker.generate_prompts",
        new_callable=AsyncMock,
        side_effect=RuntimeError("Rate limit reached for requests"),
    ):
        result = await run_generation(_request(), store, use_openai=False, sleep=AsyncMock())

    assert result is None
    row = store.rows["job-1"]
    assert row["status"] == JOB_STATUS_FAILED
    assert row["progress"] == 20
    assert row["message"].startswith("Generation service is temporarily busy")


class _FailingProgressStore(FakeJobStore):
    """Rejects the first per-image progress write."""

    async def update_job(self, job_id, fields):
        if fields.get("message") == "Generated image 1 of 3":
            raise StoreWriteError("disk full")
        await super().update_job(job_id, fields)


@pytest.mark.asyncio
async def test_failed_progress_write_fails_job_after_batch_settles():
    store = _FailingProgressStore()
    store.rows["job-1"] = make_row("job-1")
    finished = []

    async def staggered(prompt, client):
        if not prompt.id.endswith("-0"):
            await asyncio.sleep(0.01)
        finished.append(prompt.id)
        return f"https://img/{prompt.id}.png"

    with patch("app.services.job_worker.generate_image", side_effect=staggered):
        result = await run_generation(_request(), store, use_openai=False, sleep=AsyncMock())

    assert result is None
    assert len(finished) == 3
    statuses = [fields["status"] for _, fields in store.updates]
    assert statuses.count(JOB_STATUS_FAILED) == 1
    assert statuses[-1] == JOB_STATUS_FAILED
    assert store.updates[-2][1]["message"] == "Generated image 3 of 3"
    assert store.rows["job-1"]["message"] == "Generation failed: disk full"
