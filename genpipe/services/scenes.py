"""Turn an ordered panel sequence into video scene descriptors.

Two segmentation policies, fixed per project:

- ``per-cut``: one scene per panel, start frame only.
- ``cut-to-cut``: one scene per consecutive pair of panels, interpolating
  from panel ``i`` to panel ``i+1``.

Switching policy invalidates every existing scene; callers regenerate the
full set rather than patching.
"""

from enum import Enum
from typing import Iterable, Mapping, Optional, Sequence

from genpipe.schemas.scenes import Panel, Scene, SceneRecord, SceneStatus, VideoMode

DEFAULT_DURATION = 4
DEFAULT_ALLOWED_DURATIONS = (4, 6, 8)


class PanelSlot(str, Enum):
    START = "start"
    END = "end"


class ProjectStatus(str, Enum):
    COMPLETED = "completed"
    ERROR = "error"
    VIDEO_GENERATING = "video_generating"


def snap_duration(
    seconds: Optional[float],
    allowed: Sequence[int] = DEFAULT_ALLOWED_DURATIONS,
    default: int = DEFAULT_DURATION,
) -> int:
    """Map a requested clip length onto the provider's discrete set.

    Values snap to the nearest allowed duration, ties going down; with the
    default set that is ``<=5 -> 4``, ``<=7 -> 6``, anything longer ``-> 8``.
    A missing or non-positive request uses ``default`` first.
    """
    allowed = sorted(allowed)
    raw = seconds if seconds and seconds > 0 else default
    for shorter, longer in zip(allowed, allowed[1:]):
        if raw <= (shorter + longer) / 2:
            return shorter
    return allowed[-1]


class SceneAssembler:
    """Builds ``Scene`` lists from panels under a ``VideoMode``."""

    def __init__(
        self,
        default_duration: int = DEFAULT_DURATION,
        allowed_durations: Sequence[int] = DEFAULT_ALLOWED_DURATIONS,
    ):
        self.default_duration = default_duration
        self.allowed_durations = tuple(allowed_durations)

    def assemble(
        self,
        panels: Iterable[Panel],
        mode: VideoMode | str,
        durations: Optional[Mapping[int, int]] = None,
        prompts: Optional[Mapping[int, str]] = None,
    ) -> list[Scene]:
        """Assemble scenes from ``panels`` (sorted by index first).

        Args:
            panels: Panels from one grid.
            mode: Segmentation policy.
            durations: Caller-supplied durations keyed by scene index,
                snapped onto ``allowed_durations``.
            prompts: Caller-supplied video prompts keyed by scene index.
        """
        mode = VideoMode(mode)
        ordered = sorted(panels, key=lambda p: p.index)
        durations = durations or {}
        prompts = prompts or {}

        if mode == VideoMode.PER_CUT:
            spans = [(p.index, None) for p in ordered]
        else:
            spans = [(a.index, b.index) for a, b in zip(ordered, ordered[1:])]

        return [
            Scene(
                scene_index=i,
                start_panel_index=start,
                end_panel_index=end,
                duration_seconds=snap_duration(
                    durations.get(i), self.allowed_durations, self.default_duration
                ),
                prompt=prompts.get(i),
                status=SceneStatus.PENDING,
            )
            for i, (start, end) in enumerate(spans)
        ]


def scene_count(panel_count: int, mode: VideoMode | str) -> int:
    if VideoMode(mode) == VideoMode.PER_CUT:
        return panel_count
    return max(panel_count - 1, 0)


def scenes_for_panel(
    panel_index: int, mode: VideoMode | str, panel_count: Optional[int] = None
) -> list[tuple[int, PanelSlot]]:
    """Scene slots that reference panel ``panel_index``.

    per-cut: the panel is scene ``n``'s start frame. cut-to-cut: it is scene
    ``n``'s start frame (when scene ``n`` exists) and scene ``n-1``'s end
    frame (when ``n > 0``).
    """
    if VideoMode(mode) == VideoMode.PER_CUT:
        return [(panel_index, PanelSlot.START)]

    slots = []
    if panel_count is None or panel_index < scene_count(panel_count, mode):
        slots.append((panel_index, PanelSlot.START))
    if panel_index > 0:
        slots.append((panel_index - 1, PanelSlot.END))
    return slots


def to_record(scene: Scene, start_url: str, end_url: Optional[str] = None) -> SceneRecord:
    return SceneRecord(
        scene_index=scene.scene_index,
        start_panel_path=start_url,
        end_panel_path=end_url,
        video_prompt=scene.prompt,
        duration=scene.duration_seconds,
        status=scene.status,
        error_message=scene.error_message,
    )


def rollup_status(statuses: Iterable[SceneStatus | str]) -> ProjectStatus:
    """Project status from its scene statuses."""
    statuses = [SceneStatus(s) for s in statuses]
    if statuses and all(s == SceneStatus.COMPLETED for s in statuses):
        return ProjectStatus.COMPLETED
    if any(s == SceneStatus.ERROR for s in statuses):
        return ProjectStatus.ERROR
    return ProjectStatus.VIDEO_GENERATING
