"""Batch image generation for characters, backgrounds and cuts.

Items that already have an image are skipped unless they were requested
explicitly. Cut images pull their character/background reference images
through a shared ``ReferenceImageCache`` so each reference is downloaded
once per run.
"""

import logging
from typing import Any, Iterable, Optional

from genpipe.config import Settings
from genpipe.errors import GenPipeError, MalformedResponseError
from genpipe.pipeline.common import (
    BACKGROUNDS_TABLE,
    CHARACTERS_TABLE,
    CUTS_TABLE,
    build_request,
)
from genpipe.schemas.generation import InlinePart, Modality, Provider
from genpipe.services.batch import BatchReport, run_batch
from genpipe.services.images import closest_aspect_ratio, parse_ratio, seedream_size
from genpipe.services.reference_cache import (
    ReferenceImageCache,
    background_key,
    character_key,
)
from genpipe.services.resilience import ResilientInvoker
from genpipe.services.storage import BlobStore, RecordStore

logger = logging.getLogger(__name__)

IMAGE_PROVIDERS = (Provider.IMAGE_MODEL_A, Provider.IMAGE_MODEL_B)


def _image_config(provider: Provider, aspect_ratio: Optional[str]) -> dict[str, Any]:
    """Provider config for ``aspect_ratio``, snapped to a ratio the model supports."""
    if not aspect_ratio:
        return {}
    ratio = closest_aspect_ratio(*parse_ratio(aspect_ratio), provider)
    if provider == Provider.IMAGE_MODEL_A:
        return {"image_config": {"aspect_ratio": ratio}}
    return {"size": seedream_size(*parse_ratio(ratio))}


async def _generate_image(
    invoker: ResilientInvoker,
    settings: Settings,
    provider: Provider,
    prompt: str,
    references: list[InlinePart],
    aspect_ratio: Optional[str],
):
    if provider not in IMAGE_PROVIDERS:
        raise ValueError(f"{provider.value} is not an image provider")
    request = build_request(
        settings,
        provider,
        Modality.IMAGE,
        prompt,
        parts=list(references),
        config=_image_config(provider, aspect_ratio),
    )
    result = (await invoker.invoke(request)).unwrap()
    if result.data is None:
        raise MalformedResponseError("Image model returned text instead of an image")
    return result


async def generate_reference_images(
    invoker: ResilientInvoker,
    settings: Settings,
    blobs: BlobStore,
    records: RecordStore,
    *,
    project_id: str,
    table: str = CHARACTERS_TABLE,
    ids: Optional[Iterable[str]] = None,
    provider: Provider = Provider.IMAGE_MODEL_A,
    aspect_ratio: Optional[str] = "1:1",
) -> BatchReport:
    """Generate a reference image for each character or background row.

    Rows carry ``id``, ``name``, ``description`` and optionally ``prompt``
    and ``imagePath``; rows are keyed ``(project_id, id)``.

    Args:
        table: ``characters`` or ``backgrounds``.
        ids: Regenerate exactly these rows, even if they have an image.

    Returns:
        Batch report keyed by item name.
    """
    if table not in (CHARACTERS_TABLE, BACKGROUNDS_TABLE):
        raise ValueError(f"Unsupported reference table: {table}")
    provider = Provider(provider)

    rows = await records.query(table, projectId=project_id)
    forced = set(ids) if ids is not None else None
    if forced is not None:
        rows = [r for r in rows if r["id"] in forced]

    report = BatchReport()
    jobs = []
    for row in rows:
        name = row.get("name") or row["id"]
        if row.get("imagePath") and forced is None:
            report.record_skip(name)
            continue

        async def _job(row=row, name=name) -> str:
            prompt = row.get("prompt") or row.get("description")
            if not prompt:
                raise GenPipeError(f"{name} has no description to draw from")
            result = await _generate_image(invoker, settings, provider, prompt, [], aspect_ratio)
            url = await blobs.put(
                result.data, result.mime_type, key=f"{project_id}/{table}/{row['id']}.png",
            )
            await records.upsert(table, (project_id, row["id"]), {"imagePath": url})
            return url

        jobs.append((name, _job))

    logger.info(
        "Project %s: generating %d %s image(s), %d skipped",
        project_id, len(jobs), table, report.skipped,
    )
    return await run_batch(jobs, concurrency=settings.pipeline.concurrency, report=report)


async def generate_cut_images(
    invoker: ResilientInvoker,
    settings: Settings,
    blobs: BlobStore,
    records: RecordStore,
    *,
    project_id: str,
    ids: Optional[Iterable[str]] = None,
    provider: Provider = Provider.IMAGE_MODEL_A,
    aspect_ratio: Optional[str] = "9:16",
    cache: Optional[ReferenceImageCache] = None,
) -> BatchReport:
    """Generate one image per cut, using character/background references.

    Cut rows carry ``id``, ``cutIndex``, ``imagePrompt``, ``characters``
    (names), ``backgroundId`` and optionally ``imagePath``; rows are keyed
    ``(project_id, id)``.
    """
    provider = Provider(provider)
    cache = cache or ReferenceImageCache(blobs)
    characters = {
        row["name"]: row.get("imagePath")
        for row in await records.query(CHARACTERS_TABLE, projectId=project_id)
    }
    backgrounds = {
        row["id"]: row.get("imagePath")
        for row in await records.query(BACKGROUNDS_TABLE, projectId=project_id)
    }

    rows = await records.query(CUTS_TABLE, projectId=project_id)
    forced = set(ids) if ids is not None else None
    if forced is not None:
        rows = [r for r in rows if r["id"] in forced]
    rows.sort(key=lambda r: r.get("cutIndex", 0))

    async def _references(row: dict[str, Any]) -> list[InlinePart]:
        refs = []
        for name in row.get("characters") or []:
            data = await cache.get(character_key(name), characters.get(name))
            if data:
                refs.append(InlinePart(data=data, role="reference"))
        background_id = row.get("backgroundId")
        if background_id:
            data = await cache.get(background_key(background_id), backgrounds.get(background_id))
            if data:
                refs.append(InlinePart(data=data, role="reference"))
        return refs

    report = BatchReport()
    jobs = []
    for row in rows:
        key = f"cut-{row.get('cutIndex', row['id'])}"
        if row.get("imagePath") and forced is None:
            report.record_skip(key)
            continue

        async def _job(row=row, key=key) -> str:
            if not row.get("imagePrompt"):
                raise GenPipeError(f"{key} has no image prompt")
            refs = await _references(row)
            logger.info("Project %s: %s with %d reference(s)", project_id, key, len(refs))
            result = await _generate_image(
                invoker, settings, provider, row["imagePrompt"], refs, aspect_ratio,
            )
            url = await blobs.put(
                result.data, result.mime_type, key=f"{project_id}/cuts/{row['id']}.png",
            )
            await records.upsert(CUTS_TABLE, (project_id, row["id"]), {"imagePath": url})
            return url

        jobs.append((key, _job))

    return await run_batch(jobs, concurrency=settings.pipeline.concurrency, report=report)
