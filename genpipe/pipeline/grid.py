"""Composite grid generation and panel replacement.

One image-model call produces a 2x2 or 3x3 composite; the composite is split
into panels, every panel and the composite are stored, and scene records are
written for the project's video mode.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from genpipe.config import Settings
from genpipe.errors import MalformedResponseError
from genpipe.pipeline.common import SCENES_TABLE, build_request
from genpipe.schemas.generation import InlinePart, Modality, Provider
from genpipe.schemas.scenes import GridImage, GridLayout, Scene, SceneStatus, VideoMode
from genpipe.services.grid import GridDecomposer
from genpipe.services.resilience import ResilientInvoker
from genpipe.services.scenes import (
    PanelSlot,
    SceneAssembler,
    scenes_for_panel,
    snap_duration,
    to_record,
)
from genpipe.services.storage import BlobStore, RecordStore

logger = logging.getLogger(__name__)


@dataclass
class GridRun:
    grid: GridImage
    grid_url: str
    panel_urls: list[str] = field(default_factory=list)
    scenes: list[Scene] = field(default_factory=list)


def panel_key(project_id: str, index: int) -> str:
    return f"{project_id}/panel-{index}.png"


def scene_key(project_id: str, scene_index: int) -> tuple[str, int]:
    return (project_id, scene_index)


async def generate_grid_scenes(
    invoker: ResilientInvoker,
    settings: Settings,
    blobs: BlobStore,
    records: RecordStore,
    *,
    project_id: str,
    prompt: str,
    layout: GridLayout | str = GridLayout.THREE_BY_THREE,
    mode: VideoMode | str = VideoMode.PER_CUT,
    reference_images: Sequence[InlinePart] = (),
    durations: Optional[Mapping[int, int]] = None,
    prompts: Optional[Mapping[int, str]] = None,
    config: Optional[dict[str, Any]] = None,
) -> GridRun:
    """Generate a composite, split it, and persist panels and scenes.

    Raises:
        ExhaustedRetriesError: The image model failed on every attempt.
        DimensionError: The composite could not be split.
    """
    layout = GridLayout(layout)
    mode = VideoMode(mode)

    request = build_request(
        settings,
        Provider.IMAGE_MODEL_A,
        Modality.IMAGE,
        prompt,
        parts=list(reference_images),
        config=config,
    )
    result = (await invoker.invoke(request)).unwrap()
    if result.data is None:
        raise MalformedResponseError("Image model returned text instead of an image")

    grid, panels = GridDecomposer().split(result.data, layout)
    grid_url = await blobs.put(result.data, result.mime_type, key=f"{project_id}/grid.png")

    panel_urls = []
    for panel in panels:
        panel_urls.append(
            await blobs.put(panel.data, panel.mime_type, key=panel_key(project_id, panel.index))
        )

    assembler = SceneAssembler(
        default_duration=settings.pipeline.default_duration,
        allowed_durations=settings.pipeline.allowed_durations,
    )
    scenes = assembler.assemble(panels, mode, durations=durations, prompts=prompts)

    for scene in scenes:
        end_url = panel_urls[scene.end_panel_index] if scene.end_panel_index is not None else None
        record = to_record(scene, panel_urls[scene.start_panel_index], end_url)
        await records.upsert(
            SCENES_TABLE,
            scene_key(project_id, scene.scene_index),
            {"projectId": project_id, **record.to_wire()},
        )

    logger.info(
        "Project %s: %s grid -> %d panels -> %d scenes (%s)",
        project_id, layout.value, len(panels), len(scenes), mode.value,
    )
    return GridRun(grid=grid, grid_url=grid_url, panel_urls=panel_urls, scenes=scenes)


async def replace_panel(
    blobs: BlobStore,
    records: RecordStore,
    settings: Settings,
    *,
    project_id: str,
    panel_index: int,
    data: bytes,
    mode: VideoMode | str,
    panel_count: Optional[int] = None,
    mime_type: str = "image/png",
) -> str:
    """Store a regenerated panel and repoint the scenes that use it.

    per-cut: scene ``n`` gets the new start frame, and is created as a
    pending scene if it does not exist yet. cut-to-cut: existing scene ``n``
    gets a new start frame and existing scene ``n-1`` a new end frame.

    Returns:
        URL of the stored panel.
    """
    mode = VideoMode(mode)
    url = await blobs.put(data, mime_type, key=panel_key(project_id, panel_index))

    for scene_index, slot in scenes_for_panel(panel_index, mode, panel_count):
        existing = await records.query(SCENES_TABLE, projectId=project_id, sceneIndex=scene_index)
        field_name = "startPanelPath" if slot == PanelSlot.START else "endPanelPath"

        if existing:
            await records.upsert(
                SCENES_TABLE, scene_key(project_id, scene_index), {field_name: url},
            )
            logger.info(
                "Project %s: panel %d -> scene %d %s",
                project_id, panel_index, scene_index, slot.value,
            )
        elif mode == VideoMode.PER_CUT:
            scene = Scene(
                scene_index=scene_index,
                start_panel_index=panel_index,
                duration_seconds=snap_duration(
                    None, settings.pipeline.allowed_durations, settings.pipeline.default_duration
                ),
                status=SceneStatus.PENDING,
            )
            await records.upsert(
                SCENES_TABLE,
                scene_key(project_id, scene_index),
                {"projectId": project_id, **to_record(scene, url).to_wire()},
            )
            logger.info("Project %s: created scene %d for panel %d", project_id, scene_index, panel_index)

    return url
