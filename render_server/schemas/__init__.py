from render_server.schemas.composition import Composition, TimeRange, TrackItem
from render_server.schemas.render import (
    JobView,
    OutputOptions,
    RenderRequest,
    SaveRequest,
    SaveResponse,
    SubmitResponse,
)

__all__ = [
    "Composition",
    "TimeRange",
    "TrackItem",
    "JobView",
    "OutputOptions",
    "RenderRequest",
    "SaveRequest",
    "SaveResponse",
    "SubmitResponse",
]
