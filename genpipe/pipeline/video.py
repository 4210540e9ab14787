"""Scene video generation.

For each scene: mark it generating, load its start frame (and end frame in
cut-to-cut mode), invoke the video model with the snapped duration, store
the clip, and mark the scene completed or errored. Scenes run concurrently
under a semaphore; a failing scene never stops the others. The project
status is rolled up from all scene statuses at the end.
"""

import logging
from typing import Any, Optional

from genpipe.config import Settings
from genpipe.errors import GenPipeError, MalformedResponseError
from genpipe.pipeline.common import PROJECTS_TABLE, SCENES_TABLE, build_request
from genpipe.pipeline.grid import scene_key
from genpipe.schemas.generation import InlinePart, Modality, Provider
from genpipe.schemas.scenes import SceneStatus, VideoMode
from genpipe.services.batch import BatchReport, run_batch
from genpipe.services.providers.veo import END_FRAME, START_FRAME
from genpipe.services.resilience import ResilientInvoker
from genpipe.services.scenes import ProjectStatus, rollup_status, snap_duration
from genpipe.services.storage import BlobStore, RecordStore

logger = logging.getLogger(__name__)

# Scenes picked up by a full run; a single-scene run ignores status.
RUNNABLE_STATUSES = {SceneStatus.PENDING.value, SceneStatus.ERROR.value}

DEFAULT_ASPECT_RATIO = "9:16"


async def generate_scene_videos(
    invoker: ResilientInvoker,
    settings: Settings,
    blobs: BlobStore,
    records: RecordStore,
    *,
    project_id: str,
    mode: VideoMode | str,
    scene_index: Optional[int] = None,
    aspect_ratio: str = DEFAULT_ASPECT_RATIO,
) -> BatchReport:
    """Generate clips for the project's runnable scenes.

    Args:
        invoker: Shared invoker.
        settings: Process settings (durations, concurrency).
        blobs: Where panels live and clips go.
        records: Scene and project records.
        project_id: Project whose scenes to render.
        mode: The project's video mode; end frames are used only in
            cut-to-cut mode.
        scene_index: Render only this scene, regardless of its status.
        aspect_ratio: Output aspect ratio.

    Returns:
        Batch report keyed by ``scene-{index}``.
    """
    mode = VideoMode(mode)
    rows = await records.query(SCENES_TABLE, projectId=project_id)
    if scene_index is not None:
        rows = [r for r in rows if r["sceneIndex"] == scene_index]
    else:
        rows = [r for r in rows if r.get("status") in RUNNABLE_STATUSES]
    rows.sort(key=lambda r: r["sceneIndex"])

    if not rows:
        logger.info("Project %s: no scenes to render", project_id)
        return BatchReport()

    await records.upsert(PROJECTS_TABLE, project_id, {"status": ProjectStatus.VIDEO_GENERATING.value})

    async def _render(row: dict[str, Any]) -> str:
        index = row["sceneIndex"]
        key = scene_key(project_id, index)
        await records.upsert(
            SCENES_TABLE, key, {"status": SceneStatus.GENERATING.value, "errorMessage": None},
        )
        try:
            url = await _render_scene(invoker, settings, blobs, project_id, mode, row, aspect_ratio)
        except Exception as e:
            message = e.user_message if isinstance(e, GenPipeError) and not str(e) else str(e)
            await records.upsert(
                SCENES_TABLE, key, {"status": SceneStatus.ERROR.value, "errorMessage": message},
            )
            raise

        await records.upsert(
            SCENES_TABLE, key, {"status": SceneStatus.COMPLETED.value, "videoPath": url},
        )
        logger.info("Project %s: scene %d completed", project_id, index)
        return url

    report = await run_batch(
        [(f"scene-{row['sceneIndex']}", lambda row=row: _render(row)) for row in rows],
        concurrency=settings.pipeline.concurrency,
    )

    all_rows = await records.query(SCENES_TABLE, projectId=project_id)
    status = rollup_status(r["status"] for r in all_rows)
    await records.upsert(PROJECTS_TABLE, project_id, {"status": status.value})
    logger.info("Project %s: video status %s", project_id, status.value)
    return report


async def _render_scene(
    invoker: ResilientInvoker,
    settings: Settings,
    blobs: BlobStore,
    project_id: str,
    mode: VideoMode,
    row: dict[str, Any],
    aspect_ratio: str,
) -> str:
    index = row["sceneIndex"]
    if not row.get("startPanelPath"):
        raise GenPipeError(f"Scene {index} has no start panel")
    prompt = row.get("videoPrompt")
    if not prompt:
        raise GenPipeError(f"Scene {index} has no video prompt")

    parts = [
        InlinePart(data=await blobs.get(row["startPanelPath"]), role=START_FRAME),
    ]
    if mode == VideoMode.CUT_TO_CUT and row.get("endPanelPath"):
        parts.append(InlinePart(data=await blobs.get(row["endPanelPath"]), role=END_FRAME))

    duration = snap_duration(
        row.get("duration"),
        allowed=settings.pipeline.allowed_durations,
        default=settings.pipeline.default_duration,
    )
    logger.info(
        "Project %s: scene %d duration %ds (requested %s), %d frame(s)",
        project_id, index, duration, row.get("duration"), len(parts),
    )

    request = build_request(
        settings,
        Provider.VIDEO_MODEL,
        Modality.VIDEO,
        prompt,
        parts=parts,
        config={"aspect_ratio": aspect_ratio, "duration_seconds": duration},
    )
    result = (await invoker.invoke(request)).unwrap()
    if result.data is None:
        raise MalformedResponseError(f"Scene {index}: video model returned no clip")

    return await blobs.put(
        result.data, result.mime_type, key=f"{project_id}/video-scene-{index}.mp4",
    )
