"""Composition payload sent by the editor.

Field names follow the editor's camelCase JSON; unknown fields are kept so
the whole design can be handed to the frame renderer untouched.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TimeRange(BaseModel):
    """A [from, to) range in milliseconds."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    from_ms: float | None = Field(default=None, alias="from")
    to_ms: float | None = Field(default=None, alias="to")


class TrackItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    type: str
    name: str | None = None
    display: TimeRange | None = None
    trim: TimeRange | None = None
    duration: float | None = None
    playback_rate: float | None = Field(default=None, alias="playbackRate")
    details: dict[str, Any] = Field(default_factory=dict)


class Composition(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    duration: float | None = None  # composition-level default, ms
    timeline_duration: float | None = Field(default=None, alias="timelineDuration")
    track_item_ids: list[str] = Field(default_factory=list, alias="trackItemIds")
    track_items_map: dict[str, TrackItem] = Field(default_factory=dict, alias="trackItemsMap")

    def ordered_items(self) -> list[TrackItem]:
        """Track items in timeline order, skipping ids with no item."""
        return [self.track_items_map[i] for i in self.track_item_ids if i in self.track_items_map]

    def to_payload(self) -> dict[str, Any]:
        """Dump in the editor's JSON shape."""
        return self.model_dump(by_alias=True, exclude_none=True)
