from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


# --- Channel messages: controller ↔ worker ---

class MessageType(str, Enum):
    inference_request = "INFERENCE_REQUEST"
    cancel_request = "CANCEL_REQUEST"
    loading = "LOADING"
    downloading = "DOWNLOADING"
    result_partial = "RESULT_PARTIAL"
    result = "RESULT"
    inference_done = "INFERENCE_DONE"
    error = "ERROR"


class InferenceRequest(BaseModel):
    type: Literal["INFERENCE_REQUEST"] = "INFERENCE_REQUEST"
    model_name: str
    # samples follow as a float32 binary frame when omitted
    audio: Optional[list[float]] = None


class CancelRequest(BaseModel):
    type: Literal["CANCEL_REQUEST"] = "CANCEL_REQUEST"


InboundMessage = Annotated[Union[InferenceRequest, CancelRequest], Field(discriminator="type")]


class LoadingStatus(str, Enum):
    loading = "loading"
    success = "success"
    error = "error"


class ProcessedSegment(BaseModel):
    index: int = Field(ge=0)
    text: str
    start: int = Field(ge=0)
    end: int

    @model_validator(mode="after")
    def _end_not_before_start(self) -> ProcessedSegment:
        if self.end < self.start:
            raise ValueError(f"segment end {self.end} is before start {self.start}")
        return self


class PartialResult(BaseModel):
    text: str
    start: int
    end: Optional[int] = None


class LoadingMessage(BaseModel):
    type: Literal["LOADING"] = "LOADING"
    status: LoadingStatus
    message: Optional[str] = None


class DownloadingMessage(BaseModel):
    type: Literal["DOWNLOADING"] = "DOWNLOADING"
    file: str
    progress: float = 0.0
    loaded: int = 0
    total: int = 0


class PartialResultMessage(BaseModel):
    type: Literal["RESULT_PARTIAL"] = "RESULT_PARTIAL"
    result: PartialResult


class ResultMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["RESULT"] = "RESULT"
    results: list[ProcessedSegment]
    is_done: bool = Field(default=False, alias="isDone")
    completed_until_timestamp: int = Field(default=0, alias="completedUntilTimestamp")


class InferenceDoneMessage(BaseModel):
    type: Literal["INFERENCE_DONE"] = "INFERENCE_DONE"


class ErrorMessage(BaseModel):
    type: Literal["ERROR"] = "ERROR"
    reason: str


TranscriptionEvent = Annotated[
    Union[
        LoadingMessage,
        DownloadingMessage,
        PartialResultMessage,
        ResultMessage,
        InferenceDoneMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)
_event_adapter: TypeAdapter[TranscriptionEvent] = TypeAdapter(TranscriptionEvent)


def parse_inbound(raw: str | bytes) -> InferenceRequest | CancelRequest:
    """Validate a JSON text frame sent by the controller."""
    return _inbound_adapter.validate_json(raw)


def parse_event(raw: str | bytes) -> TranscriptionEvent:
    """Validate a JSON text frame sent by the worker."""
    return _event_adapter.validate_json(raw)


def dump_event(event: BaseModel) -> str:
    return event.model_dump_json(by_alias=True)


def is_terminal(event: BaseModel) -> bool:
    """True for the last event a request can produce."""
    if isinstance(event, (InferenceDoneMessage, ErrorMessage)):
        return True
    return isinstance(event, LoadingMessage) and event.status == LoadingStatus.error
