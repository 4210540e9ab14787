"""Pydantic schemas for structured model output.

These describe the storyboard and character-analysis documents persisted
verbatim into the record store's JSON column. Field names are snake_case in
Python and camelCase on the wire.

Each document schema declares which of its top-level fields are arrays of
named items; ``StructuredExtractor`` validates those item by item so that one
bad cut does not sink the whole storyboard.
"""

from typing import Annotated, Any, ClassVar, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


def _coerce_to_str(v: Any) -> str:
    """Coerce list/non-str values to comma-separated string.

    Models occasionally return arrays for fields declared as string.
    """
    if isinstance(v, list):
        return ", ".join(str(item) for item in v)
    if v is None:
        return ""
    return v


def _coerce_to_list(v: Any) -> list:
    """Accept a bare string where a list of names is expected."""
    if v is None:
        return []
    if isinstance(v, str):
        return [name.strip() for name in v.split(",") if name.strip()]
    return v


CoercedStr = Annotated[str, BeforeValidator(_coerce_to_str)]
NameList = Annotated[list[str], BeforeValidator(_coerce_to_list)]


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class CutItem(_WireModel):
    """One storyboard cut. ``cut_number`` is the identity field."""

    cut_number: int = Field(alias="cutNumber")
    title: CoercedStr = ""
    background: CoercedStr = ""
    description: CoercedStr = ""
    dialogue: Optional[CoercedStr] = None
    characters_in_cut: NameList = Field(default_factory=list, alias="charactersInCut")


class CharacterItem(_WireModel):
    """A named character. ``name`` is the identity field."""

    name: str = Field(min_length=1)
    description: CoercedStr = ""


class StructuredSchema(_WireModel):
    """Base for documents made of arrays of named items.

    Subclasses list their item arrays in ``item_fields`` (field name to item
    model). Identity fields are the required fields of each item model.
    """

    item_fields: ClassVar[dict[str, type[BaseModel]]] = {}


class StoryboardDocument(StructuredSchema):
    """``{cuts:[...], characters:[...]}`` storyboard contract."""

    cuts: list[CutItem] = Field(default_factory=list)
    characters: list[CharacterItem] = Field(default_factory=list)

    item_fields: ClassVar[dict[str, type[BaseModel]]] = {
        "cuts": CutItem,
        "characters": CharacterItem,
    }


class CharacterAnalysis(StructuredSchema):
    """``{characters:[...]}`` character analysis contract."""

    characters: list[CharacterItem] = Field(default_factory=list)

    item_fields: ClassVar[dict[str, type[BaseModel]]] = {
        "characters": CharacterItem,
    }


SCHEMAS: dict[str, type[StructuredSchema]] = {
    "storyboard": StoryboardDocument,
    "characters": CharacterAnalysis,
}
