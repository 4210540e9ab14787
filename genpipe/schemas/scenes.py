"""Panel and scene models produced from a composite grid image."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class GridLayout(str, Enum):
    """Supported composite layouts, named ``{cols}x{rows}``."""

    TWO_BY_TWO = "2x2"
    THREE_BY_THREE = "3x3"

    @property
    def rows(self) -> int:
        return int(self.value.split("x")[1])

    @property
    def cols(self) -> int:
        return int(self.value.split("x")[0])

    @property
    def panel_count(self) -> int:
        return self.rows * self.cols


class VideoMode(str, Enum):
    """Scene segmentation policy, fixed per project."""

    CUT_TO_CUT = "cut-to-cut"
    PER_CUT = "per-cut"


class SceneStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"


class GridImage(BaseModel):
    width: int
    height: int
    rows: int
    cols: int

    @property
    def panel_width(self) -> int:
        return self.width // self.cols

    @property
    def panel_height(self) -> int:
        return self.height // self.rows


class Panel(BaseModel):
    """One sub-image of a grid. ``index = row * cols + col``."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    row: int = Field(ge=0)
    col: int = Field(ge=0)
    data: bytes = Field(repr=False)
    mime_type: str = "image/png"
    width: int
    height: int


class Scene(BaseModel):
    """Unit of video generation work referencing one or two panels."""

    scene_index: int = Field(ge=0)
    start_panel_index: int = Field(ge=0)
    end_panel_index: Optional[int] = None
    duration_seconds: int = Field(default=4, gt=0)
    prompt: Optional[str] = None
    status: SceneStatus = SceneStatus.PENDING
    error_message: Optional[str] = None


class SceneRecord(BaseModel):
    """Persisted scene row (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    scene_index: int = Field(alias="sceneIndex")
    start_panel_path: str = Field(alias="startPanelPath")
    end_panel_path: Optional[str] = Field(default=None, alias="endPanelPath")
    video_prompt: Optional[str] = Field(default=None, alias="videoPrompt")
    duration: int
    status: SceneStatus = SceneStatus.PENDING
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    video_path: Optional[str] = Field(default=None, alias="videoPath")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")
