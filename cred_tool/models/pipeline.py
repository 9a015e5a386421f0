from enum import Enum


class PipelineState(str, Enum):
    IDLE = "idle"
    SIGNING = "signing"
    EXCHANGING = "exchanging"
    REQUESTING_TOKEN = "requesting_token"
    DELIVERING = "delivering"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.FAILED)
